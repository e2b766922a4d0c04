"""Thin async wrapper around external commands (docker, sudo, openssl, ...)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandError(RuntimeError):
    """Raised when an external command cannot start, fails, or times out."""

    def __init__(self, args: Sequence[str], message: str) -> None:
        self.command = tuple(args)
        super().__init__(message)


async def run_command(
    *args: str,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    check: bool = True,
) -> CommandResult:
    """Run a command to completion and capture its output.

    Raises ``CommandError`` if the executable is missing, the timeout
    expires (the process is killed), or -- when *check* is true -- the exit
    code is non-zero.
    """
    logger.debug("exec: {}", " ".join(args))
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
    except OSError as exc:
        msg = f"failed to start {args[0]}: {exc}"
        raise CommandError(args, msg) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        msg = f"{args[0]} timed out after {timeout}s"
        raise CommandError(args, msg) from exc

    result = CommandResult(
        args=tuple(args),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if check and result.returncode != 0:
        msg = f"{' '.join(args)} exited with code {result.returncode}"
        if result.output:
            msg += f", output: {result.output}"
        raise CommandError(args, msg)
    return result
