"""Shared enumerations used by the coordinator and the installer container."""

from __future__ import annotations

from enum import StrEnum

# -- Configuration -----------------------------------------------------------


class Environment(StrEnum):
    """Deployment environment tier."""

    DEVELOPMENT = "dev"
    STAGING = "staging"
    PRODUCTION = "prod"


class SSLProvider(StrEnum):
    LETSENCRYPT = "letsencrypt"
    SELF_SIGNED = "self-signed"
    CUSTOM = "custom"


# -- Pipeline ----------------------------------------------------------------


class PhaseName(StrEnum):
    """Named steps of the installation pipeline, in execution order."""

    VALIDATION = "validation"
    PREPARATION = "preparation"
    SUPABASE = "supabase"
    APPLICATION = "application"
    VERIFICATION = "verification"
    COMPLETE = "complete"


# -- Errors ------------------------------------------------------------------


class ErrorCode(StrEnum):
    """Fixed failure taxonomy.  Callers branch on these, never on message text."""

    SYSTEM_REQUIREMENTS = "SYSTEM_REQUIREMENTS"
    PORT_CONFLICT = "PORT_CONFLICT"
    DOCKER_INSTALL_FAILED = "DOCKER_INSTALL_FAILED"
    SUPABASE_SETUP_FAILED = "SUPABASE_SETUP_FAILED"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CONFIG_INVALID = "CONFIG_INVALID"
    UNSUPPORTED_OS = "UNSUPPORTED_OS"
    INVALID_FORMAT = "INVALID_FORMAT"
    CANCELLED = "CANCELLED"
