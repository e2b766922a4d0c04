"""Progress updates emitted by the installer container on stdout."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProgressUpdate(BaseModel):
    """One structured progress line.

    ``progress`` is the cumulative weight of all completed phases, so it
    never decreases over a single run.  Unknown fields are rejected so that
    other JSON payloads on the same stream never decode as progress.
    """

    model_config = ConfigDict(extra="forbid")

    phase: str
    step: str | None = None
    progress: float = Field(ge=0.0, le=1.0)
    message: str
    metadata: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
