"""Structured signal protocol between the coordinator and the container.

The container writes line-delimited UTF-8 text on two streams:

- **stdout**: each line is either a JSON ``ProgressUpdate`` or free text
  (an informational log line).
- **stderr**: each line is either a JSON ``ErrorDetails`` or free text
  (an error log line).

Decoding is a tagged variant: a line is tried against the structured shape
for its stream and falls back to ``PlainLine`` if it does not validate in
full.  A line is never dropped and a bad line never fails the stream.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, TextIO

from pydantic import BaseModel, ValidationError

from subosity_installer.models.progress import ProgressUpdate
from subosity_installer.models.result import ErrorDetails

if TYPE_CHECKING:
    from typing import TypeVar

    _M = TypeVar("_M", bound=BaseModel)


# -- Variants -----------------------------------------------------------------


@dataclass(frozen=True)
class ProgressSignal:
    update: ProgressUpdate


@dataclass(frozen=True)
class ErrorSignal:
    error: ErrorDetails


@dataclass(frozen=True)
class PlainLine:
    text: str


# -- Decode -------------------------------------------------------------------


def _try_decode(line: str, model: type[_M]) -> _M | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        return model.model_validate_json(stripped)
    except ValidationError:
        return None


def decode_stdout_line(line: str) -> ProgressSignal | PlainLine:
    update = _try_decode(line, ProgressUpdate)
    if update is not None:
        return ProgressSignal(update)
    return PlainLine(line)


def decode_stderr_line(line: str) -> ErrorSignal | PlainLine:
    error = _try_decode(line, ErrorDetails)
    if error is not None:
        return ErrorSignal(error)
    return PlainLine(line)


# -- Encode -------------------------------------------------------------------


def encode_progress(update: ProgressUpdate) -> str:
    return update.model_dump_json(exclude_none=True)


def encode_error(error: ErrorDetails) -> str:
    return error.model_dump_json(exclude_none=True)


class SignalWriter:
    """Writes structured signals from inside the container.

    Each signal is a single line, flushed immediately so the coordinator sees
    it while the phase is still running.
    """

    def __init__(self, stdout: TextIO | None = None, stderr: TextIO | None = None) -> None:
        self._stdout = stdout or sys.stdout
        self._stderr = stderr or sys.stderr

    def progress(self, update: ProgressUpdate) -> None:
        self._write(self._stdout, encode_progress(update))

    def error(self, error: ErrorDetails) -> None:
        self._write(self._stderr, encode_error(error))

    @staticmethod
    def _write(stream: TextIO, line: str) -> None:
        stream.write(line + "\n")
        stream.flush()
