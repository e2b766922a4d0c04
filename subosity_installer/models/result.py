"""Error records and the final installation result."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from subosity_installer.models.enums import Environment, ErrorCode

# -- Errors ------------------------------------------------------------------


class ErrorContext(BaseModel):
    """Where an error originated."""

    component: str
    operation: str
    phase: str | None = None
    environment: Environment | None = None
    metadata: dict[str, Any] | None = None


class ErrorDetails(BaseModel):
    """Wire form of an ``InstallError``, written as one line on stderr.

    Unknown fields are rejected so that progress payloads never decode as
    errors.
    """

    model_config = ConfigDict(extra="forbid")

    code: ErrorCode
    message: str
    details: str = ""
    suggestions: list[str] = Field(default_factory=list)
    context: ErrorContext | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


# -- Result ------------------------------------------------------------------


class ServiceInfo(BaseModel):
    name: str
    status: str
    port: int | None = None
    url: str | None = None
    healthy: bool = False


class InstallationResult(BaseModel):
    """Outcome of one delegated run (or a status query)."""

    success: bool
    phase: str
    error: ErrorDetails | None = None
    services: dict[str, ServiceInfo] = Field(default_factory=dict)
    urls: dict[str, str] = Field(default_factory=dict)
    duration_ms: int = 0

    @model_validator(mode="after")
    def _check_outcome(self) -> InstallationResult:
        if self.success and self.error is not None:
            msg = "a successful result cannot carry an error"
            raise ValueError(msg)
        if not self.success and self.error is None:
            msg = "a failed result must carry an error"
            raise ValueError(msg)
        return self
