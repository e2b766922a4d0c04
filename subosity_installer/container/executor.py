"""Phase pipeline executor (runs inside the installer container).

A pipeline is a fixed, ordered list of phases.  Each phase carries the
cumulative progress reached when it completes, so a phase's weight is its
progress minus the previous phase's.  Phases run strictly one after another:
each depends on artifacts the previous one produced.

For every phase the executor emits:

- a "starting" update at the phase's *starting* value (the previous phase's
  completion value, ``0.0`` for the first phase),
- any step updates the action reports, at that same starting value,
- a "completed" update at the phase's completion value.

So the reported progress always equals the weight of the phases completed so
far and reaches ``1.0`` only after the last phase succeeds.

The first failing phase aborts the run.  Its error is wrapped with the phase
name and re-raised; nothing is rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from subosity_installer.errors import InstallError
from subosity_installer.log import component_logger
from subosity_installer.models.enums import ErrorCode
from subosity_installer.models.progress import ProgressUpdate

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from loguru import Logger

    from subosity_installer.models.config import InstallationConfig
    from subosity_installer.protocol import SignalWriter
    from subosity_installer.settings import InstallerSettings


class PhaseAction(Protocol):
    async def __call__(self, ctx: PhaseContext) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class Phase:
    """One named pipeline step.

    ``progress`` is cumulative: the overall progress once this phase is done.
    An action may return metadata, attached to the phase's completion update.
    """

    name: str
    progress: float
    action: PhaseAction
    error_code: ErrorCode = ErrorCode.SYSTEM_REQUIREMENTS


@dataclass
class PhaseContext:
    """What a phase action gets to work with."""

    config: InstallationConfig
    settings: InstallerSettings
    log: Logger
    data_dir: Path
    """Workspace as mounted in the container."""

    host_dir: Path
    """The same workspace as the host sees it."""

    _reporter: Any = field(default=None, repr=False)

    def step(self, step: str, message: str) -> None:
        """Report a step within the current phase (progress unchanged)."""
        self.log.info(message)
        if self._reporter is not None:
            self._reporter(step, message)


class PhasePipeline:
    def __init__(self, phases: Sequence[Phase], *, writer: SignalWriter, log: Logger | None = None) -> None:
        validate_phases(phases)
        self.phases = tuple(phases)
        self._writer = writer
        self._log = component_logger("pipeline", log)
        self._progress = 0.0

    @property
    def weights(self) -> dict[str, float]:
        """Per-phase weight (share of overall progress)."""
        weights: dict[str, float] = {}
        previous = 0.0
        for phase in self.phases:
            weights[phase.name] = phase.progress - previous
            previous = phase.progress
        return weights

    @property
    def progress(self) -> float:
        """Cumulative progress of the phases completed so far."""
        return self._progress

    async def run(self, ctx: PhaseContext) -> str:
        """Run all phases in order.  Returns the terminal phase name.

        Raises ``InstallError`` naming the first phase that failed.
        """
        self._progress = 0.0
        for phase in self.phases:
            start = self._progress
            self._emit(phase.name, start, f"Starting {phase.name} phase...")
            ctx._reporter = partial(self._step, phase.name, start)
            try:
                metadata = await phase.action(ctx)
            except Exception as exc:
                raise self._phase_error(phase, exc, ctx) from exc
            finally:
                ctx._reporter = None

            self._progress = phase.progress
            self._emit(phase.name, phase.progress, f"Completed {phase.name} phase", metadata=metadata)
        return self.phases[-1].name

    def _step(self, phase: str, progress: float, step: str, message: str) -> None:
        self._emit(phase, progress, message, step=step)

    def _emit(
        self,
        phase: str,
        progress: float,
        message: str,
        *,
        step: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        update = ProgressUpdate(phase=phase, step=step, progress=progress, message=message, metadata=metadata)
        self._writer.progress(update)

    def _phase_error(self, phase: Phase, exc: Exception, ctx: PhaseContext) -> InstallError:
        code = exc.code if isinstance(exc, InstallError) else phase.error_code
        self._log.error("Phase {} failed: {}", phase.name, exc)
        return InstallError.wrap(
            exc,
            code,
            f"phase {phase.name} failed",
            component="pipeline",
            operation=phase.name,
            phase=phase.name,
            environment=ctx.config.environment,
        )


def validate_phases(phases: Sequence[Phase]) -> None:
    """Reject pipeline definitions whose progress values are inconsistent.

    Cumulative values must be strictly increasing within ``(0, 1]`` and end
    at exactly ``1.0``; names must be unique.
    """
    if not phases:
        msg = "a pipeline needs at least one phase"
        raise ValueError(msg)
    names = [phase.name for phase in phases]
    if len(set(names)) != len(names):
        msg = f"duplicate phase names: {names}"
        raise ValueError(msg)
    previous = 0.0
    for phase in phases:
        if not previous < phase.progress <= 1.0:
            msg = f"phase {phase.name}: progress {phase.progress} must be in ({previous}, 1.0]"
            raise ValueError(msg)
        previous = phase.progress
    if phases[-1].progress != 1.0:
        msg = f"last phase must complete at 1.0, not {phases[-1].progress}"
        raise ValueError(msg)
