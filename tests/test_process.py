"""Unit tests for the external-command wrapper (real child processes)."""

from __future__ import annotations

import sys

import pytest

from subosity_installer.process import CommandError, run_command


async def test_output_is_captured() -> None:
    result = await run_command(sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)")
    assert result.returncode == 0
    assert result.stdout.strip() == "out"
    assert result.output == "out\nerr"


async def test_non_zero_exit_raises_with_command() -> None:
    args = (sys.executable, "-c", "import sys; print('boom'); sys.exit(3)")
    with pytest.raises(CommandError) as exc_info:
        await run_command(*args)
    assert exc_info.value.command == args
    assert "exited with code 3" in str(exc_info.value)
    assert "boom" in str(exc_info.value)


async def test_unchecked_exit_returns_result() -> None:
    result = await run_command(sys.executable, "-c", "import sys; sys.exit(3)", check=False)
    assert result.returncode == 3


async def test_missing_executable() -> None:
    with pytest.raises(CommandError, match="failed to start") as exc_info:
        await run_command("/nonexistent/binary", "--version")
    assert exc_info.value.command == ("/nonexistent/binary", "--version")


async def test_timeout_kills_the_command() -> None:
    with pytest.raises(CommandError, match="timed out"):
        await run_command(sys.executable, "-c", "import time; time.sleep(30)", timeout=0.3)
