"""Installer configuration loaded from SUBOSITY_* environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from subosity_installer.constants import CONTAINER_IMAGE_DEV, DEFAULT_INSTALL_PATH


class InstallerSettings(BaseSettings):
    """Subosity installer settings.

    All fields are read from environment variables with the ``SUBOSITY_``
    prefix.  For example, ``SUBOSITY_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    The installation config itself (``SUBOSITY_CONFIG``) is **not** a setting:
    it is the payload handed from the coordinator to the container and is read
    directly by the container entrypoint.
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBOSITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Host layout -----------------------------------------------------------
    install_path: Path = Path(DEFAULT_INSTALL_PATH)
    """Persistent workspace on the host, mounted into the container.

    The coordinator forwards its value to the container so that files
    rendered there (compose file, systemd unit) reference host paths.
    """

    docker_socket: Path = Path("/var/run/docker.sock")

    # -- Container -------------------------------------------------------------
    image: str = CONTAINER_IMAGE_DEV
    pull_image: bool = True
    """Pull the installer image when it is not present locally."""

    container_data_dir: Path = Path("/app/data")
    """Where the workspace is mounted inside the container."""

    # -- Timeouts (seconds) ----------------------------------------------------
    install_timeout: float = 15 * 60
    docker_timeout: float = 5 * 60
    health_timeout: float = 30
    status_timeout: float = 30


@lru_cache(maxsize=1)
def get_settings() -> InstallerSettings:
    """Return a cached settings instance.

    Call ``get_settings.cache_clear()`` in tests to force a re-read after
    overriding env vars.
    """
    return InstallerSettings()
