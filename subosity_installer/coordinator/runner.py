"""Delegation runner -- launches and supervises the installer container.

The runner owns one delegated run end to end:

1. **Prepare**: create the workspace tree, make sure the image is present.
   The deadline and the cancel event already apply here; an interrupted
   preparation never launches the container
2. **Launch**: ``docker run`` with the serialized config in the child
   environment (never in argv), the workspace and Docker socket mounted,
   and host networking
3. **Supervise**: drain stdout and stderr concurrently, classify every line
   through the signal protocol, render progress, and race process exit
   against a structured error, the deadline and the cancel event
4. **Resolve**: turn whichever outcome fired first into one
   ``InstallationResult``

Outcomes are mutually exclusive; the first to fire wins:

- the process exits -> any structured error already written wins, else exit
  code 0 is success and other codes go through ``error_for_exit_code``
- a structured error arrives on stderr -> the container is terminated and
  that error is the result
- the deadline passes or the cancel event is set -> the container is
  terminated and the result is a ``CANCELLED`` error

Progress updates pass through a bounded queue to a single renderer.  When
the renderer falls behind, the stdout drainer blocks on the queue, which in
turn blocks the container on its pipe.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from anyio import to_thread
from pydantic import ValidationError

from subosity_installer.constants import CONFIG_ENV_VAR
from subosity_installer.coordinator.workspace import InstallWorkspace
from subosity_installer.errors import InstallError, error_for_exit_code
from subosity_installer.log import component_logger
from subosity_installer.models.enums import ErrorCode, PhaseName
from subosity_installer.models.result import InstallationResult, ServiceInfo
from subosity_installer.process import CommandError, CommandResult, run_command
from subosity_installer.protocol import ErrorSignal, ProgressSignal, decode_stderr_line, decode_stdout_line

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from loguru import Logger

    from subosity_installer.models.config import InstallationConfig
    from subosity_installer.models.progress import ProgressUpdate
    from subosity_installer.models.result import ErrorDetails
    from subosity_installer.settings import InstallerSettings

LINE_LIMIT = 1024 * 1024
"""Longest protocol line accepted from the container (bytes)."""

BAR_WIDTH = 20
PROGRESS_QUEUE_SIZE = 10


# ---------------------------------------------------------------------------
# Container invocation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = False

    def as_arg(self) -> str:
        spec = f"{self.source}:{self.target}"
        return f"{spec}:ro" if self.read_only else spec


def container_mounts(settings: InstallerSettings) -> list[Mount]:
    """Workspace and Docker socket (rw) plus the narrow host paths (ro)."""
    return [
        Mount(str(settings.install_path), str(settings.container_data_dir)),
        Mount(str(settings.docker_socket), "/var/run/docker.sock"),
        Mount("/etc/os-release", "/app/host-etc/os-release", read_only=True),
        Mount("/run/systemd/system", "/run/systemd/system", read_only=True),
        Mount("/usr/bin/systemctl", "/usr/bin/systemctl", read_only=True),
    ]


def render_progress(update: ProgressUpdate, width: int = BAR_WIDTH) -> str:
    """One progress line: phase, proportional bar, percentage, message."""
    filled = int(width * update.progress)
    bar = "▓" * filled + "░" * (width - filled)
    return f"{update.phase} {bar} {int(update.progress * 100)}% - {update.message}"


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass
class _RunState:
    """Observations collected while supervising one container."""

    last_update: ProgressUpdate | None = None


class DelegationRunner:
    """Runs the installer container for one ``InstallationConfig``."""

    def __init__(
        self,
        settings: InstallerSettings,
        *,
        workspace: InstallWorkspace | None = None,
        log: Logger | None = None,
        queue_size: int = PROGRESS_QUEUE_SIZE,
        drain_timeout: float = 5.0,
    ) -> None:
        self._settings = settings
        self._workspace = workspace or InstallWorkspace(settings.install_path)
        self._log = component_logger("container", log)
        self._queue_size = queue_size
        self._drain_timeout = drain_timeout

    # -- Entry point -----------------------------------------------------------

    async def run(
        self,
        config: InstallationConfig,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> InstallationResult:
        """Prepare, launch and supervise.  Always returns a typed result.

        The cancel event and the deadline are observed from the start:
        an interrupted preparation (or image pull) never launches the
        container.
        """
        self._log.info("Starting container-based installation...")
        started = time.monotonic()
        try:
            prepared = await self._unless_interrupted(self.prepare(), timeout=timeout, cancel_event=cancel_event)
        except InstallError as err:
            err.context.environment = config.environment
            return self._failure(err, PhaseName.PREPARATION, started)
        if not prepared:
            return self._failure(_interrupted(config, timeout, cancel_event), PhaseName.PREPARATION, started)

        remaining = None if timeout is None else max(0.0, timeout - (time.monotonic() - started))
        result = await self.execute(config, timeout=remaining, cancel_event=cancel_event, started=started)
        if result.success:
            self._log.success("Container-based installation completed successfully")
        return result

    async def _unless_interrupted(
        self,
        aw: Awaitable[None],
        *,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> bool:
        """Await *aw* unless the cancel event or the deadline comes first.

        Returns ``False`` when interrupted; *aw* is then cancelled and awaited
        so the subprocesses it started are cleaned up.
        """
        task = asyncio.ensure_future(aw)
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        racers: set[asyncio.Future] = {task}
        if cancel_task is not None:
            racers.add(cancel_task)
        try:
            done, _ = await asyncio.wait(racers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (task, cancel_task):
                if pending is not None and not pending.done():
                    pending.cancel()
        if task in done:
            task.result()
            return True

        self._log.warning("Installation interrupted during preparation")
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return False

    # -- Prepare ---------------------------------------------------------------

    async def prepare(self) -> None:
        try:
            await to_thread.run_sync(self._workspace.ensure)
        except OSError as exc:
            raise InstallError.wrap(
                exc,
                ErrorCode.PERMISSION_DENIED,
                "failed to create data directory",
                component="container",
                operation="preparation",
                suggestions=[
                    f"Ensure you can write to {self._workspace.root} (run with sudo)",
                    "Check the parent directory permissions",
                ],
            ) from exc
        self._log.debug("Created data directory structure at {}", self._workspace.root)

        if self._settings.pull_image:
            await self.ensure_image()

    async def ensure_image(self) -> None:
        image = self._settings.image
        inspect = await self._try_command("docker", "image", "inspect", image)
        if inspect is not None and inspect.returncode == 0:
            self._log.debug("Installer image {} already present", image)
            return

        self._log.info("Pulling installer container image...")
        try:
            await self._pull(image)
        except (CommandError, OSError, TimeoutError) as exc:
            raise InstallError.wrap(
                exc,
                ErrorCode.NETWORK_TIMEOUT,
                "failed to pull installer image",
                component="container",
                operation="pull",
                suggestions=[
                    "Verify internet connectivity",
                    f"Try pulling manually: docker pull {image}",
                ],
            ) from exc
        self._log.info("Successfully pulled installer container image")

    async def _pull(self, image: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            "pull",
            image,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            limit=LINE_LIMIT,
        )
        try:
            async with asyncio.timeout(self._settings.docker_timeout):
                async for line in _read_lines(proc.stdout):
                    self._log.debug("[PULL] {}", line)
                returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        if returncode != 0:
            msg = f"docker pull exited with code {returncode}"
            raise CommandError(("docker", "pull", image), msg)

    # -- Launch ----------------------------------------------------------------

    def build_command(self, config: InstallationConfig, container_name: str) -> list[str]:
        """``docker run`` argv.  The config is referenced by name only."""
        args = ["docker", "run", "--rm", "--name", container_name]
        for mount in container_mounts(self._settings):
            args += ["-v", mount.as_arg()]
        args += ["-e", CONFIG_ENV_VAR]
        # Files rendered in the container point at the workspace as the host sees it.
        args += ["-e", f"SUBOSITY_INSTALL_PATH={self._settings.install_path}"]
        args += ["--network", "host"]
        args += [self._settings.image, "container", "install"]
        return args

    def build_env(self, config: InstallationConfig) -> dict[str, str]:
        """Child environment: ours plus the serialized config."""
        return {**os.environ, CONFIG_ENV_VAR: config.model_dump_json()}

    # -- Supervise -------------------------------------------------------------

    async def execute(
        self,
        config: InstallationConfig,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        started: float | None = None,
    ) -> InstallationResult:
        """Launch the container and supervise it to a single outcome."""
        started = time.monotonic() if started is None else started
        if (cancel_event is not None and cancel_event.is_set()) or (timeout is not None and timeout <= 0):
            return self._failure(_interrupted(config, timeout, cancel_event), PhaseName.PREPARATION, started)

        container_name = f"subosity-installer-{uuid.uuid4().hex[:12]}"
        argv = self.build_command(config, container_name)

        self._log.info("Running installer container...")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(config),
                limit=LINE_LIMIT,
            )
        except OSError as exc:
            err = InstallError.wrap(
                exc,
                ErrorCode.SYSTEM_REQUIREMENTS,
                "failed to start installer container",
                component="container",
                operation="launch",
                environment=config.environment,
                suggestions=["Ensure Docker is installed and on PATH"],
            )
            return self._failure(err, PhaseName.PREPARATION, started)

        state = _RunState()
        queue: asyncio.Queue[ProgressUpdate | None] = asyncio.Queue(maxsize=self._queue_size)
        structured_error: asyncio.Future[ErrorDetails] = asyncio.get_running_loop().create_future()

        stdout_task = asyncio.create_task(self._drain_stdout(proc.stdout, queue))
        stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr, structured_error))
        render_task = asyncio.create_task(self._render(queue, state))
        wait_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        racers: set[asyncio.Future] = {wait_task, structured_error}
        if cancel_task is not None:
            racers.add(cancel_task)

        try:
            done, _ = await asyncio.wait(racers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if structured_error in done:
                await self._terminate(proc, container_name)
                err = InstallError.from_details(structured_error.result())
            elif wait_task in done:
                # Let the drainers reach EOF so an error written just before
                # exit is not lost to the race.
                await asyncio.wait({stdout_task, stderr_task}, timeout=self._drain_timeout)
                if structured_error.done():
                    err = InstallError.from_details(structured_error.result())
                else:
                    err = self._exit_code_error(wait_task.result(), config)
            elif cancel_task is not None and cancel_task in done:
                await self._terminate(proc, container_name)
                err = _interrupted(config, timeout, cancel_event)
            else:
                await self._terminate(proc, container_name)
                err = _interrupted(config, timeout, None)
        finally:
            if proc.returncode is None:
                await self._terminate(proc, container_name)
            for task in (stdout_task, stderr_task, cancel_task, wait_task):
                if task is not None and not task.done():
                    task.cancel()
            if not structured_error.done():
                structured_error.cancel()
            await queue.put(None)
            await render_task

        if err is None:
            return self._success(config, state, started)
        return self._failure(err, self._failed_phase(err, state), started)

    async def _drain_stdout(
        self,
        stream: asyncio.StreamReader | None,
        queue: asyncio.Queue[ProgressUpdate | None],
    ) -> None:
        async for line in _read_lines(stream):
            signal = decode_stdout_line(line)
            if isinstance(signal, ProgressSignal):
                await queue.put(signal.update)
            else:
                self._log.info(signal.text)

    async def _drain_stderr(
        self,
        stream: asyncio.StreamReader | None,
        structured_error: asyncio.Future[ErrorDetails],
    ) -> None:
        async for line in _read_lines(stream):
            signal = decode_stderr_line(line)
            if isinstance(signal, ErrorSignal):
                if not structured_error.done():
                    structured_error.set_result(signal.error)
                else:
                    self._log.error("[{}] {}", signal.error.code, signal.error.message)
            else:
                self._log.error(signal.text)

    async def _render(self, queue: asyncio.Queue[ProgressUpdate | None], state: _RunState) -> None:
        while (update := await queue.get()) is not None:
            previous = state.last_update
            if previous is not None and update.progress < previous.progress:
                self._log.warning(
                    "Progress went backwards ({} -> {}) in phase {}",
                    previous.progress,
                    update.progress,
                    update.phase,
                )
            state.last_update = update
            self._log.info(render_progress(update))

    async def _terminate(self, proc: asyncio.subprocess.Process, container_name: str) -> None:
        if proc.returncode is None:
            self._log.warning("Terminating installer container {}", container_name)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        # Killing the docker client does not stop the container itself.
        removal = await self._try_command("docker", "rm", "-f", container_name)
        if removal is None:
            self._log.warning("Could not remove container {}", container_name)

    async def _try_command(self, *args: str) -> CommandResult | None:
        try:
            return await run_command(*args, timeout=self._settings.docker_timeout, check=False)
        except CommandError as exc:
            self._log.debug("{} unavailable: {}", " ".join(exc.command), exc)
            return None

    # -- Resolve ---------------------------------------------------------------

    def _exit_code_error(self, exit_code: int, config: InstallationConfig) -> InstallError | None:
        err = error_for_exit_code(exit_code)
        if err is not None:
            err.context.environment = config.environment
            self._log.debug("Container exited with code {} -> {}", exit_code, err.code)
        return err

    @staticmethod
    def _failed_phase(err: InstallError, state: _RunState) -> str:
        if err.context.phase:
            return err.context.phase
        if state.last_update is not None:
            return state.last_update.phase
        return PhaseName.PREPARATION

    def _success(self, config: InstallationConfig, state: _RunState, started: float) -> InstallationResult:
        metadata = (state.last_update.metadata if state.last_update else None) or {}
        services: dict[str, ServiceInfo] = {}
        try:
            for key, raw in (metadata.get("services") or {}).items():
                services[key] = ServiceInfo.model_validate(raw)
        except ValidationError as exc:
            self._log.warning("Ignoring malformed service report: {}", exc)
            services = {}
        urls = {str(k): str(v) for k, v in (metadata.get("urls") or {}).items()} or {"app": config.access_url}
        return InstallationResult(
            success=True,
            phase=state.last_update.phase if state.last_update else PhaseName.COMPLETE,
            services=services,
            urls=urls,
            duration_ms=_elapsed_ms(started),
        )

    def _failure(self, err: InstallError, phase: str, started: float) -> InstallationResult:
        for depth, cause in enumerate(err.chain()):
            self._log.debug("{}cause: {!r}", "  " * depth, cause)
        return InstallationResult(
            success=False,
            phase=phase,
            error=err.to_details(),
            duration_ms=_elapsed_ms(started),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _read_lines(stream: asyncio.StreamReader | None) -> AsyncIterator[str]:
    """Yield decoded lines until EOF, without the trailing newline."""
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Over LINE_LIMIT: asyncio has already discarded the oversized chunk.
            yield "<line exceeded protocol limit and was truncated>"
            continue
        if not raw:
            return
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


def _cancelled(message: str, details: str, config: InstallationConfig) -> InstallError:
    return InstallError(
        ErrorCode.CANCELLED,
        message,
        component="container",
        operation="execution",
        details=details,
        environment=config.environment,
        suggestions=[
            "Re-run the installer; no partial state is recorded",
            "Increase --timeout if the installation needs more time",
        ],
    )


def _interrupted(config: InstallationConfig, timeout: float | None, cancel_event: asyncio.Event | None) -> InstallError:
    if cancel_event is not None and cancel_event.is_set():
        return _cancelled("installation cancelled", "cancellation requested by the caller", config)
    details = f"deadline of {timeout:.0f}s exceeded" if timeout else "deadline exceeded"
    return _cancelled("installation timed out", details, config)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

