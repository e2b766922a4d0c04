"""Unit tests for the delegation runner.

The installer container is replaced by a short Python child process that
writes protocol lines and exits with a chosen code, so no Docker daemon is
needed.
"""

from __future__ import annotations

import asyncio
import sys
import textwrap
from unittest.mock import AsyncMock, Mock, patch

import pytest

from subosity_installer.constants import CONFIG_ENV_VAR
from subosity_installer.coordinator.runner import DelegationRunner, Mount, container_mounts, render_progress
from subosity_installer.errors import InstallError
from subosity_installer.models.enums import ErrorCode
from subosity_installer.models.progress import ProgressUpdate
from subosity_installer.models.result import ServiceInfo
from subosity_installer.process import CommandResult
from subosity_installer.protocol import encode_error, encode_progress
from subosity_installer.settings import InstallerSettings


def _progress(phase: str, progress: float, message: str = "", **kwargs) -> str:
    return encode_progress(ProgressUpdate(phase=phase, progress=progress, message=message or phase, **kwargs))


def _error(code: ErrorCode, message: str, phase: str | None = None) -> str:
    err = InstallError(code, message, component="test", operation="test", phase=phase)
    return encode_error(err.to_details())


def _script(*, stdout=(), stderr=(), exit_code: int = 0, sleep: float = 0.0) -> str:
    return textwrap.dedent(
        f"""
        import sys, time
        for line in {list(stdout)!r}:
            print(line, flush=True)
        for line in {list(stderr)!r}:
            print(line, file=sys.stderr, flush=True)
        time.sleep({sleep})
        sys.exit({exit_code})
        """
    )


@pytest.fixture
def make_runner(settings, captured_log):
    log, _ = captured_log

    def factory(script: str, **kwargs) -> DelegationRunner:
        runner = DelegationRunner(settings, log=log, **kwargs)
        runner.build_command = lambda config, name: [sys.executable, "-c", script]
        runner._try_command = AsyncMock(return_value=None)
        return runner

    return factory


@pytest.fixture
def captured(captured_log):
    return captured_log[1]


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


async def test_exit_zero_is_success(make_runner, dev_config) -> None:
    result = await make_runner(_script()).run(dev_config, timeout=30)
    assert result.success
    assert result.error is None
    assert result.urls == {"app": dev_config.access_url}


async def test_success_uses_final_metadata(make_runner, dev_config) -> None:
    metadata = {
        "services": {"supabase": ServiceInfo(name="Supabase", status="running", healthy=True).model_dump(mode="json")},
        "urls": {"app": "http://subosity.local", "supabase": "http://localhost:8000"},
    }
    lines = [
        _progress("validation", 0.0, "Starting validation phase..."),
        _progress("validation", 0.1, "Completed validation phase"),
        _progress("complete", 0.9, "Starting complete phase..."),
        _progress("complete", 1.0, "Completed complete phase", metadata=metadata),
    ]
    result = await make_runner(_script(stdout=lines)).run(dev_config, timeout=30)
    assert result.success
    assert result.phase == "complete"
    assert result.services["supabase"].healthy
    assert result.urls["supabase"] == "http://localhost:8000"


async def test_progress_then_exit_code_is_mapped(make_runner, dev_config) -> None:
    lines = [_progress("supabase", 0.2, "Starting supabase phase...")]
    result = await make_runner(_script(stdout=lines, exit_code=4)).run(dev_config, timeout=30)
    assert not result.success
    assert result.error is not None
    assert result.error.code == ErrorCode.SUPABASE_SETUP_FAILED
    assert result.phase == "supabase"


async def test_unmapped_exit_code(make_runner, dev_config) -> None:
    result = await make_runner(_script(exit_code=42)).run(dev_config, timeout=30)
    assert result.error is not None
    assert result.error.code == ErrorCode.SYSTEM_REQUIREMENTS
    assert "42" in result.error.message


async def test_structured_error_wins_over_exit_code(make_runner, dev_config) -> None:
    script = _script(stderr=[_error(ErrorCode.PORT_CONFLICT, "Port 80 is already in use", "validation")], exit_code=1)
    result = await make_runner(script).run(dev_config, timeout=30)
    assert result.error is not None
    assert result.error.code == ErrorCode.PORT_CONFLICT
    assert result.error.message == "Port 80 is already in use"
    assert result.phase == "validation"


async def test_structured_error_terminates_container(make_runner, dev_config) -> None:
    script = _script(stderr=[_error(ErrorCode.SUPABASE_SETUP_FAILED, "supabase start failed", "supabase")], sleep=60)
    runner = make_runner(script)
    async with asyncio.timeout(20):
        result = await runner.run(dev_config, timeout=120)
    assert result.error is not None
    assert result.error.code == ErrorCode.SUPABASE_SETUP_FAILED
    assert result.duration_ms < 20_000
    runner._try_command.assert_awaited()
    assert runner._try_command.await_args.args[:3] == ("docker", "rm", "-f")


async def test_timeout_is_cancelled(make_runner, dev_config) -> None:
    runner = make_runner(_script(stdout=[_progress("supabase", 0.2)], sleep=60))
    async with asyncio.timeout(20):
        result = await runner.run(dev_config, timeout=1)
    assert not result.success
    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    assert "timed out" in result.error.message


async def test_cancel_event_is_cancelled(make_runner, dev_config) -> None:
    cancel_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.5, cancel_event.set)
    async with asyncio.timeout(20):
        result = await make_runner(_script(sleep=60)).run(dev_config, timeout=120, cancel_event=cancel_event)
    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    assert "cancelled" in result.error.message


# ---------------------------------------------------------------------------
# Interruption before launch
# ---------------------------------------------------------------------------


async def test_cancel_before_run_never_launches(make_runner, dev_config, captured) -> None:
    runner = make_runner(_script())
    runner.build_command = Mock(side_effect=runner.build_command)
    cancel_event = asyncio.Event()
    cancel_event.set()

    result = await runner.run(dev_config, timeout=30, cancel_event=cancel_event)

    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    assert result.phase == "preparation"
    runner.build_command.assert_not_called()
    runner._try_command.assert_not_awaited()
    assert "Running installer container..." not in captured.messages("INFO")


async def test_expired_deadline_never_launches(make_runner, dev_config) -> None:
    runner = make_runner(_script())
    runner.build_command = Mock(side_effect=runner.build_command)
    result = await runner.execute(dev_config, timeout=0)
    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    assert "timed out" in result.error.message
    runner.build_command.assert_not_called()


def _slow_pull(started: asyncio.Event, stopped: asyncio.Event):
    async def pull(image: str) -> None:
        started.set()
        try:
            await asyncio.sleep(60)
        finally:
            stopped.set()

    return pull


async def test_cancel_during_pull(make_runner, settings, dev_config) -> None:
    settings.pull_image = True
    runner = make_runner(_script())
    runner.build_command = Mock(side_effect=runner.build_command)
    runner._try_command = AsyncMock(return_value=_inspect(returncode=1))
    pull_started, pull_stopped = asyncio.Event(), asyncio.Event()
    runner._pull = _slow_pull(pull_started, pull_stopped)
    cancel_event = asyncio.Event()

    async with asyncio.timeout(20):
        task = asyncio.create_task(runner.run(dev_config, timeout=120, cancel_event=cancel_event))
        await pull_started.wait()
        cancel_event.set()
        result = await task

    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    assert "cancelled" in result.error.message
    assert result.phase == "preparation"
    assert pull_stopped.is_set()
    runner.build_command.assert_not_called()


async def test_deadline_during_pull(make_runner, settings, dev_config) -> None:
    settings.pull_image = True
    runner = make_runner(_script())
    runner.build_command = Mock(side_effect=runner.build_command)
    runner._try_command = AsyncMock(return_value=_inspect(returncode=1))
    pull_started, pull_stopped = asyncio.Event(), asyncio.Event()
    runner._pull = _slow_pull(pull_started, pull_stopped)

    async with asyncio.timeout(20):
        result = await runner.run(dev_config, timeout=0.5)

    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    assert "timed out" in result.error.message
    assert pull_stopped.is_set()
    runner.build_command.assert_not_called()


# ---------------------------------------------------------------------------
# Stream handling
# ---------------------------------------------------------------------------


async def test_plain_lines_are_forwarded(make_runner, dev_config, captured) -> None:
    script = _script(stdout=["Installing Supabase CLI..."], stderr=["warning: something odd"])
    result = await make_runner(script).run(dev_config, timeout=30)
    assert result.success
    assert "Installing Supabase CLI..." in captured.messages("INFO")
    assert "warning: something odd" in captured.messages("ERROR")


async def test_every_progress_update_is_rendered_in_order(make_runner, dev_config, captured) -> None:
    lines = [_progress("phase", i / 20, f"step {i}") for i in range(21)]
    result = await make_runner(_script(stdout=lines), queue_size=1).run(dev_config, timeout=30)
    assert result.success
    rendered = [m for m in captured.messages("INFO") if m.startswith("phase ")]
    assert [m.rsplit(" - ", 1)[1] for m in rendered] == [f"step {i}" for i in range(21)]


async def test_backwards_progress_is_warned(make_runner, dev_config, captured) -> None:
    lines = [_progress("supabase", 0.6), _progress("supabase", 0.2)]
    await make_runner(_script(stdout=lines)).run(dev_config, timeout=30)
    assert any("backwards" in m for m in captured.messages("WARNING"))


async def test_oversized_line_does_not_break_the_stream(make_runner, dev_config, captured) -> None:
    script = "import sys\nsys.stdout.write('x' * (2 * 1024 * 1024) + '\\n')\nprint('after', flush=True)\n"
    result = await make_runner(script).run(dev_config, timeout=30)
    assert result.success
    assert "after" in captured.messages("INFO")
    assert any("truncated" in m for m in captured.messages("INFO"))


async def test_config_reaches_child_through_environment(make_runner, dev_config, captured) -> None:
    script = f"import os\nprint('domain=' + os.environ[{CONFIG_ENV_VAR!r}])\n"
    result = await make_runner(script).run(dev_config, timeout=30)
    assert result.success
    assert any(m.startswith("domain=") and dev_config.domain in m for m in captured.messages("INFO"))


# ---------------------------------------------------------------------------
# Preparation & launch failures
# ---------------------------------------------------------------------------


async def test_unwritable_workspace_is_permission_denied(tmp_path, dev_config) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    settings = InstallerSettings(install_path=blocker / "subosity", pull_image=False)
    result = await DelegationRunner(settings).run(dev_config, timeout=30)
    assert result.error is not None
    assert result.error.code == ErrorCode.PERMISSION_DENIED
    assert result.phase == "preparation"
    assert result.error.context is not None
    assert result.error.context.environment == dev_config.environment


async def test_missing_executable_fails_cleanly(make_runner, dev_config) -> None:
    runner = make_runner("")
    runner.build_command = lambda config, name: ["/nonexistent/docker-binary"]
    result = await runner.run(dev_config, timeout=30)
    assert result.error is not None
    assert result.error.code == ErrorCode.SYSTEM_REQUIREMENTS
    assert result.error.context is not None
    assert result.error.context.operation == "launch"


# ---------------------------------------------------------------------------
# Image pull
# ---------------------------------------------------------------------------


def _inspect(returncode: int) -> CommandResult:
    return CommandResult(args=("docker", "image", "inspect"), returncode=returncode, stdout="", stderr="")


def _fake_docker(script: str):
    """``create_subprocess_exec`` stand-in that runs *script* instead of docker."""
    real_exec = asyncio.create_subprocess_exec

    async def exec_(*args, **kwargs):
        return await real_exec(sys.executable, "-c", script, **kwargs)

    return exec_


async def test_present_image_is_not_pulled(make_runner, settings) -> None:
    runner = make_runner("")
    runner._try_command = AsyncMock(return_value=_inspect(returncode=0))
    runner._pull = AsyncMock()

    await runner.ensure_image()

    assert runner._try_command.await_args.args == ("docker", "image", "inspect", settings.image)
    runner._pull.assert_not_awaited()


async def test_failed_pull_is_network_timeout(make_runner, settings, captured) -> None:
    runner = make_runner("")
    runner._try_command = AsyncMock(return_value=_inspect(returncode=1))
    script = "import sys\nprint('pull access denied', flush=True)\nsys.exit(1)\n"

    with (
        patch.object(asyncio, "create_subprocess_exec", _fake_docker(script)),
        pytest.raises(InstallError) as exc_info,
    ):
        await runner.ensure_image()

    err = exc_info.value
    assert err.code == ErrorCode.NETWORK_TIMEOUT
    assert err.context.operation == "pull"
    assert f"Try pulling manually: docker pull {settings.image}" in err.suggestions
    assert "exited with code 1" in err.details
    assert "[PULL] pull access denied" in captured.messages("DEBUG")


async def test_slow_pull_is_network_timeout(make_runner, settings, dev_config) -> None:
    settings.pull_image = True
    settings.docker_timeout = 0.3
    runner = make_runner(_script())
    runner.build_command = Mock(side_effect=runner.build_command)
    runner._try_command = AsyncMock(return_value=_inspect(returncode=1))

    with patch.object(asyncio, "create_subprocess_exec", _fake_docker("import time\ntime.sleep(30)\n")):
        async with asyncio.timeout(20):
            result = await runner.run(dev_config, timeout=60)

    assert result.error is not None
    assert result.error.code == ErrorCode.NETWORK_TIMEOUT
    assert result.phase == "preparation"
    assert result.error.context is not None
    assert result.error.context.operation == "pull"
    runner.build_command.assert_not_called()


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


def test_build_command_keeps_config_out_of_argv(settings, prod_config) -> None:
    runner = DelegationRunner(settings)
    argv = runner.build_command(prod_config, "subosity-installer-test")
    serialized = prod_config.model_dump_json()

    assert argv[:2] == ["docker", "run"]
    assert argv[-3:] == [settings.image, "container", "install"]
    assert ["-e", CONFIG_ENV_VAR] == argv[argv.index(CONFIG_ENV_VAR) - 1 : argv.index(CONFIG_ENV_VAR) + 1]
    assert not any(serialized in arg or "admin@example.com" in arg for arg in argv)
    assert "--network" in argv
    assert argv[argv.index("--network") + 1] == "host"
    assert runner.build_env(prod_config)[CONFIG_ENV_VAR] == serialized


def test_container_mounts(settings) -> None:
    mounts = container_mounts(settings)
    assert mounts[0] == Mount(str(settings.install_path), str(settings.container_data_dir))
    assert Mount("/etc/os-release", "/app/host-etc/os-release", read_only=True) in mounts
    assert all(m.read_only for m in mounts[2:])
    assert mounts[2].as_arg().endswith(":ro")


@pytest.mark.parametrize(
    ("progress", "filled", "percent"),
    [(0.0, 0, 0), (0.2, 4, 20), (0.5, 10, 50), (1.0, 20, 100)],
)
def test_render_progress(progress: float, filled: int, percent: int) -> None:
    line = render_progress(ProgressUpdate(phase="supabase", progress=progress, message="working"))
    assert line == f"supabase {'▓' * filled}{'░' * (20 - filled)} {percent}% - working"
