"""Error taxonomy, structured install errors, and the exit-code mapper.

Every failure that reaches a caller is an ``InstallError`` carrying exactly
one ``ErrorCode``.  Low-level exceptions are wrapped with the owning
component and operation (``InstallError.wrap``) before crossing a module
boundary; the original exception stays reachable through ``cause``.

When the installer container exits non-zero without writing a structured
error, ``error_for_exit_code`` translates the bare exit code.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime

from subosity_installer.models.enums import Environment, ErrorCode
from subosity_installer.models.result import ErrorContext, ErrorDetails


class InstallError(Exception):
    """A typed installation failure."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        component: str,
        operation: str,
        details: str = "",
        suggestions: list[str] | None = None,
        phase: str | None = None,
        environment: Environment | None = None,
        cause: BaseException | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.suggestions = list(suggestions or [])
        self.context = ErrorContext(
            component=component,
            operation=operation,
            phase=phase,
            environment=environment,
        )
        self.cause = cause
        self.timestamp = timestamp or datetime.now(tz=UTC)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    # -- Chaining --------------------------------------------------------------

    @classmethod
    def wrap(
        cls,
        err: BaseException,
        code: ErrorCode,
        message: str,
        *,
        component: str,
        operation: str,
        phase: str | None = None,
        environment: Environment | None = None,
        suggestions: list[str] | None = None,
    ) -> InstallError:
        """Wrap *err* with installation context.

        The wrapped error's text becomes ``details``.  Suggestions default to
        the inner error's when *err* is itself an ``InstallError``.
        """
        if suggestions is None and isinstance(err, InstallError):
            suggestions = err.suggestions
        return cls(
            code,
            message,
            component=component,
            operation=operation,
            details=str(err),
            suggestions=suggestions,
            phase=phase,
            environment=environment,
            cause=err,
        )

    def chain(self) -> Iterator[BaseException]:
        """Yield this error followed by every nested cause, outermost first."""
        current: BaseException | None = self
        seen: set[int] = set()
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            yield current
            if isinstance(current, InstallError):
                current = current.cause
            else:
                current = current.__cause__

    def root_cause(self) -> BaseException:
        *_, last = self.chain()
        return last

    # -- Wire conversion -------------------------------------------------------

    def to_details(self) -> ErrorDetails:
        return ErrorDetails(
            code=self.code,
            message=self.message,
            details=self.details,
            suggestions=self.suggestions,
            context=self.context,
            timestamp=self.timestamp,
        )

    @classmethod
    def from_details(cls, record: ErrorDetails) -> InstallError:
        context = record.context or ErrorContext(component="unknown", operation="unknown")
        err = cls(
            record.code,
            record.message,
            component=context.component,
            operation=context.operation,
            details=record.details,
            suggestions=record.suggestions,
            phase=context.phase,
            environment=context.environment,
            timestamp=record.timestamp,
        )
        err.context = context
        return err


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def config_error(message: str, details: str = "") -> InstallError:
    return InstallError(
        ErrorCode.CONFIG_INVALID,
        message,
        component="config",
        operation="validation",
        details=details,
        suggestions=[
            "Check configuration file syntax",
            "Verify all required fields are present",
            "Validate field formats (email, domain, etc.)",
        ],
    )


def system_error(
    message: str,
    details: str = "",
    suggestions: list[str] | None = None,
    *,
    code: ErrorCode = ErrorCode.SYSTEM_REQUIREMENTS,
) -> InstallError:
    """Build a host-validation error (component ``system``)."""
    if not suggestions:
        suggestions = [
            "Check system requirements documentation",
            "Ensure sufficient resources are available",
            "Verify operating system compatibility",
        ]
    return InstallError(
        code,
        message,
        component="system",
        operation="validation",
        details=details,
        suggestions=suggestions,
    )


DOCKER_SUGGESTIONS = [
    "Verify internet connectivity",
    "Check if running with sufficient privileges (sudo)",
    "Ensure package repositories are accessible",
    "Try manual Docker installation: https://docs.docker.com/install/",
]


def docker_error(err: BaseException, message: str, operation: str) -> InstallError:
    return InstallError.wrap(
        err,
        ErrorCode.DOCKER_INSTALL_FAILED,
        message,
        component="docker",
        operation=operation,
        suggestions=DOCKER_SUGGESTIONS,
    )


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_CODE_TABLE: dict[int, tuple[ErrorCode, str]] = {
    1: (ErrorCode.CONFIG_INVALID, "container installation failed with configuration error"),
    2: (ErrorCode.SYSTEM_REQUIREMENTS, "container installation failed with system requirements error"),
    3: (ErrorCode.DOCKER_INSTALL_FAILED, "container installation failed with Docker setup error"),
    4: (ErrorCode.SUPABASE_SETUP_FAILED, "container installation failed with Supabase setup error"),
}
"""Exit codes with a dedicated taxonomy member.  All others are generic."""

GENERIC_EXIT_CODE = 2


def error_for_exit_code(exit_code: int) -> InstallError | None:
    """Translate a container exit code into an ``InstallError``.

    ``0`` means success and returns ``None``.  Codes outside the table
    (including negative codes for signal deaths) map to a generic
    ``SYSTEM_REQUIREMENTS`` error whose message contains the literal code.
    """
    if exit_code == 0:
        return None
    code, message = EXIT_CODE_TABLE.get(
        exit_code,
        (ErrorCode.SYSTEM_REQUIREMENTS, f"container installation failed with exit code {exit_code}"),
    )
    return InstallError(
        code,
        message,
        component="container",
        operation="execution",
        details=f"exit code {exit_code}",
    )


def exit_code_for(code: ErrorCode) -> int:
    """Inverse of the exit-code table: the process exit code for *code*."""
    for exit_code, (mapped, _) in EXIT_CODE_TABLE.items():
        if mapped == code:
            return exit_code
    return GENERIC_EXIT_CODE


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


def format_error(err: InstallError) -> str:
    """Render an error for the terminal: code, message, details, suggestions."""
    result = f"Error [{err.code}]: {err.message}"
    if err.details:
        result += f"\nDetails: {err.details}"
    if err.suggestions:
        result += "\n\nSuggestions:"
        for suggestion in err.suggestions:
            result += f"\n  • {suggestion}"
    return result
