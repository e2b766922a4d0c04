"""Data models shared across the delegation boundary."""

from subosity_installer.models.config import InstallationConfig, SSLConfig
from subosity_installer.models.enums import Environment, ErrorCode, PhaseName, SSLProvider
from subosity_installer.models.host import HostMetadata
from subosity_installer.models.progress import ProgressUpdate
from subosity_installer.models.result import ErrorContext, ErrorDetails, InstallationResult, ServiceInfo

__all__ = [
    # Enums
    "Environment",
    # Results
    "ErrorCode",
    "ErrorContext",
    "ErrorDetails",
    # Host
    "HostMetadata",
    # Config
    "InstallationConfig",
    "InstallationResult",
    "PhaseName",
    # Progress
    "ProgressUpdate",
    "SSLConfig",
    "SSLProvider",
    "ServiceInfo",
]
