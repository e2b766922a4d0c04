"""Host system snapshot captured by preflight detection."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class HostMetadata(BaseModel):
    os: str
    version: str = ""
    architecture: str
    docker_version: str = ""
    available_ram: int = 0
    """Bytes.  Zero means the measurement failed."""

    available_disk: int = 0
    """Bytes.  Zero means the measurement failed."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
