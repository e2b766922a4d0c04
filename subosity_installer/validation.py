"""Installation config building, defaulting and validation.

Validation failures raise ``InstallError`` with ``CONFIG_INVALID``.
"""

from __future__ import annotations

import re
from email.utils import parseaddr
from pathlib import Path
from urllib.parse import urlparse

from pydantic import ValidationError

from subosity_installer.constants import APP_VERSION, CONFIG_ENV_VAR
from subosity_installer.errors import InstallError, config_error
from subosity_installer.models.config import InstallationConfig, SSLConfig
from subosity_installer.models.enums import Environment, ErrorCode, SSLProvider

_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
DOMAIN_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})+$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_DOMAIN_LENGTH = 253
DEV_DEFAULT_DOMAIN = "subosity.local"


def build_config(
    *,
    environment: str,
    domain: str = "",
    email: str = "",
    ssl_provider: str | None = None,
    config_file: Path | None = None,
) -> InstallationConfig:
    """Build a validated config from CLI values and an optional JSON file.

    Values given explicitly win over the file.  Environment defaults are
    applied first, then the domain is sanitized, then the whole config is
    validated.
    """
    base: dict = {}
    if config_file is not None:
        base = _load_config_file(config_file)

    try:
        env = Environment(environment or base.get("environment", ""))
    except ValueError:
        raise config_error(
            "invalid environment",
            "must be one of: " + ", ".join(e.value for e in Environment),
        ) from None

    ssl_base = dict(base.get("ssl") or {})
    if ssl_provider:
        try:
            ssl_base["provider"] = SSLProvider(ssl_provider)
        except ValueError:
            raise _invalid_provider() from None

    try:
        config = InstallationConfig(
            environment=env,
            domain=domain or base.get("domain", ""),
            email=email or base.get("email", ""),
            ssl=SSLConfig.model_validate(ssl_base),
            version=APP_VERSION,
        )
    except ValidationError as exc:
        raise config_error("invalid configuration", str(exc)) from exc

    config = apply_defaults(config)
    config = config.model_copy(update={"domain": sanitize_domain(config.domain)})
    validate_config(config)
    return config


def _load_config_file(path: Path) -> dict:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise config_error("could not read configuration file", str(exc)) from exc
    try:
        # Validate shape early, but keep a plain dict so CLI flags can override.
        partial = InstallationConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise InstallError(
            ErrorCode.INVALID_FORMAT,
            "configuration file is not valid",
            component="config",
            operation="load",
            details=str(exc),
            suggestions=[f"Check {path} is a JSON document matching the installation config format"],
            cause=exc,
        ) from exc
    return partial.model_dump(mode="json", exclude={"created_at", "version"})


def apply_defaults(config: InstallationConfig) -> InstallationConfig:
    """Return a copy with environment-specific defaults filled in."""
    provider = config.ssl.provider
    domain = config.domain
    if config.environment == Environment.DEVELOPMENT:
        provider = provider or SSLProvider.SELF_SIGNED
        auto_renew = False
        domain = domain or DEV_DEFAULT_DOMAIN
    else:
        provider = provider or SSLProvider.LETSENCRYPT
        auto_renew = True

    ssl_email = config.ssl.email
    if provider == SSLProvider.LETSENCRYPT and not ssl_email:
        ssl_email = config.email

    ssl = config.ssl.model_copy(update={"provider": provider, "auto_renew": auto_renew, "email": ssl_email})
    return config.model_copy(update={"ssl": ssl, "domain": domain})


def validate_config(config: InstallationConfig | None) -> None:
    if config is None:
        raise config_error("configuration cannot be None")

    validate_domain(config.domain)

    if config.email:
        validate_email(config.email)
    elif config.environment == Environment.PRODUCTION:
        raise config_error(
            "email is required for production environment",
            "email is needed for SSL certificate generation",
        )

    validate_ssl_config(config.ssl)


def validate_domain(domain: str) -> None:
    if not domain:
        raise config_error("domain is required")

    domain = domain.strip().lower()

    # localhost and .local domains are allowed for development
    if domain == "localhost" or domain.endswith(".local"):
        return

    if len(domain) > MAX_DOMAIN_LENGTH:
        raise config_error("domain too long", f"domain name must not exceed {MAX_DOMAIN_LENGTH} characters")

    if not DOMAIN_RE.match(domain):
        raise config_error("invalid domain format", f"domain '{domain}' is not a valid FQDN")


def validate_email(email: str) -> None:
    _, address = parseaddr(email)
    if not address or address != email.strip() or not EMAIL_RE.match(address):
        raise config_error("invalid email format", f"email '{email}' is not valid")


def validate_ssl_config(ssl: SSLConfig) -> None:
    match ssl.provider:
        case SSLProvider.LETSENCRYPT:
            if not ssl.email:
                raise config_error(
                    "email required for Let's Encrypt",
                    "Let's Encrypt requires a valid email address for certificate registration",
                )
            validate_email(ssl.email)
        case SSLProvider.CUSTOM:
            if not ssl.custom_cert or not ssl.custom_key:
                raise config_error(
                    "custom SSL requires both certificate and key",
                    "both custom_cert and custom_key must be provided for custom SSL",
                )
        case _:
            # self-signed needs nothing; unset is filled by apply_defaults
            pass


def sanitize_domain(domain: str) -> str:
    """Normalise a user-supplied domain (case, whitespace, URL scheme)."""
    domain = domain.strip().lower()
    if domain.startswith(("http://", "https://")):
        domain = urlparse(domain).hostname or ""
    validate_domain(domain)
    return domain


def _invalid_provider() -> InstallError:
    return config_error(
        "invalid SSL provider",
        "SSL provider must be one of: " + ", ".join(p.value for p in SSLProvider),
    )


def parse_config_payload(raw: str | None) -> InstallationConfig:
    """Decode and validate the config handed to the installer container."""
    if not raw:
        raise config_error(f"{CONFIG_ENV_VAR} environment variable is required")
    try:
        config = InstallationConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise config_error("failed to parse configuration", str(exc)) from exc
    validate_config(config)
    return config
