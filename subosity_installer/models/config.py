"""Installation configuration.

The whole ``InstallationConfig`` is serialized to JSON and handed to the
installer container, so every field must survive a JSON round-trip unchanged.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from subosity_installer.models.enums import Environment, SSLProvider


class SSLConfig(BaseModel):
    """TLS settings.  ``provider`` may be left unset; defaults fill it in."""

    model_config = ConfigDict(frozen=True)

    provider: SSLProvider | None = None
    email: str = ""
    custom_cert: str = ""
    """PEM certificate material (only for the ``custom`` provider)."""

    custom_key: str = ""
    """PEM private key material (only for the ``custom`` provider)."""

    auto_renew: bool = False


class InstallationConfig(BaseModel):
    """Complete configuration for one installation run.  Immutable."""

    model_config = ConfigDict(frozen=True)

    environment: Environment
    domain: str
    email: str = ""
    ssl: SSLConfig = Field(default_factory=SSLConfig)
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    version: str = ""

    @property
    def access_url(self) -> str:
        """Public URL of the installation.

        Development installs with self-signed certificates are served over
        plain HTTP; everything else over HTTPS.
        """
        scheme = "https"
        if self.environment == Environment.DEVELOPMENT and self.ssl.provider == SSLProvider.SELF_SIGNED:
            scheme = "http"
        return f"{scheme}://{self.domain}"
