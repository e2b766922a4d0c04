"""Preflight validation of the host machine.

Detects the host (OS, architecture, memory, disk, Docker) into a
``HostMetadata`` snapshot and checks it against ``SystemRequirements``:

1. Supported OS and version (``/etc/os-release``)
2. Supported CPU architecture
3. Minimum available RAM and disk -- only when the measurement succeeded
4. Required ports free on the loopback interface
5. Elevated privileges (root, or passwordless ``sudo``)

Failures are returned as typed ``InstallError`` values in a
``PreflightReport``; nothing here aborts the process.

A failed RAM or disk measurement is recorded as ``0`` with a warning.  A zero
reading is never treated as "insufficient": it means "unknown".
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import platform
import re
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread

from subosity_installer import constants
from subosity_installer.errors import InstallError, system_error
from subosity_installer.log import component_logger
from subosity_installer.models.enums import ErrorCode
from subosity_installer.models.host import HostMetadata
from subosity_installer.process import CommandError, run_command

if TYPE_CHECKING:
    from loguru import Logger

DOCKER_VERSION_RE = re.compile(r"Docker version ([^,\s]+)")


# ---------------------------------------------------------------------------
# Requirements & report
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SystemRequirements:
    supported_oses: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(constants.SUPPORTED_OSES))
    architectures: tuple[str, ...] = constants.SUPPORTED_ARCHITECTURES
    min_ram: int = constants.MIN_RAM_BYTES
    min_disk: int = constants.MIN_DISK_BYTES
    ports: tuple[int, ...] = constants.REQUIRED_PORTS
    require_privileges: bool = True


@dataclass
class PreflightReport:
    metadata: HostMetadata
    errors: list[InstallError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    def raise_for_failure(self) -> None:
        """Raise the first error, if any."""
        if self.errors:
            raise self.errors[0]


@dataclass(frozen=True)
class OSInfo:
    name: str
    version: str


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class SystemDetector:
    """Detects and validates the host system.

    Host sources are constructor parameters so tests can point them at
    temporary files.
    """

    def __init__(
        self,
        requirements: SystemRequirements | None = None,
        *,
        log: Logger | None = None,
        os_release_path: Path = Path("/etc/os-release"),
        meminfo_path: Path = Path("/proc/meminfo"),
        disk_path: Path = Path("/"),
        port_timeout: float = 1.0,
    ) -> None:
        self.requirements = requirements or SystemRequirements()
        self._log = component_logger("system", log)
        self._os_release_path = os_release_path
        self._meminfo_path = meminfo_path
        self._disk_path = disk_path
        self._port_timeout = port_timeout
        self._warnings: list[str] = []

    # -- Detection -------------------------------------------------------------

    async def detect(self) -> HostMetadata:
        """Capture a ``HostMetadata`` snapshot.

        Raises ``InstallError`` only when the OS cannot be identified.
        """
        self._log.info("Detecting system environment...")
        self._warnings = []

        try:
            os_info = await to_thread.run_sync(partial(read_os_release, self._os_release_path))
        except (OSError, ValueError) as exc:
            raise InstallError.wrap(
                exc,
                ErrorCode.SYSTEM_REQUIREMENTS,
                "failed to detect operating system",
                component="system",
                operation="detection",
                suggestions=[
                    "Ensure /etc/os-release exists and contains ID and VERSION_ID",
                    "Use a supported Linux distribution (Ubuntu 20.04+, Debian 11+)",
                ],
            ) from exc

        try:
            ram = await to_thread.run_sync(partial(read_available_ram, self._meminfo_path))
        except (OSError, ValueError) as exc:
            self._warn(f"Could not detect RAM: {exc}")
            ram = 0

        try:
            disk = await to_thread.run_sync(partial(read_available_disk, self._disk_path))
        except OSError as exc:
            self._warn(f"Could not detect disk space: {exc}")
            disk = 0

        return HostMetadata(
            os=os_info.name,
            version=os_info.version,
            architecture=normalize_architecture(platform.machine()),
            docker_version=await self.docker_version(),
            available_ram=ram,
            available_disk=disk,
        )

    async def docker_version(self) -> str:
        """Installed Docker version, or an empty string if unavailable."""
        try:
            result = await run_command("docker", "--version", timeout=10)
        except CommandError:
            return ""
        match = DOCKER_VERSION_RE.search(result.stdout)
        return match.group(1) if match else ""

    # -- Validation ------------------------------------------------------------

    async def validate(self, metadata: HostMetadata) -> PreflightReport:
        """Check *metadata* and the live host against the requirements."""
        self._log.info("Validating system requirements...")
        report = PreflightReport(metadata=metadata, warnings=list(self._warnings))

        for check in (
            self.check_os(metadata.os, metadata.version),
            self.check_architecture(metadata.architecture),
            self.check_ram(metadata.available_ram),
            self.check_disk(metadata.available_disk),
        ):
            if check is not None:
                report.errors.append(check)

        report.errors.extend(await self.check_ports())

        if self.requirements.require_privileges:
            privilege_error = await self.check_privileges()
            if privilege_error is not None:
                report.errors.append(privilege_error)

        if metadata.available_ram == 0:
            report.warnings.append("RAM could not be measured; minimum memory not enforced")
        if metadata.available_disk == 0:
            report.warnings.append("Disk space could not be measured; minimum disk not enforced")

        if report.passed:
            self._log.info("System requirements validation passed")
        else:
            for err in report.errors:
                self._log.error("Preflight check failed: {} [{}]", err, err.code)
        return report

    async def run(self) -> PreflightReport:
        """Detect then validate.  Detection failure becomes a failed report."""
        try:
            metadata = await self.detect()
        except InstallError as err:
            unknown = HostMetadata(os="", architecture=normalize_architecture(platform.machine()))
            return PreflightReport(metadata=unknown, errors=[err], warnings=list(self._warnings))
        return await self.validate(metadata)

    def check_os(self, name: str, version: str) -> InstallError | None:
        supported = self.requirements.supported_oses.get(name)
        if supported is None:
            return system_error(
                "unsupported operating system",
                f"OS '{name}' is not supported",
                [
                    "Use a supported Linux distribution (Ubuntu 20.04+, Debian 11+)",
                    "Check the documentation for the full list of supported systems",
                ],
                code=ErrorCode.UNSUPPORTED_OS,
            )
        if not any(version == v or version.startswith(v + ".") for v in supported):
            return system_error(
                "unsupported OS version",
                f"OS version '{name} {version}' is not supported",
                [
                    f"Use a supported version of {name}: {', '.join(supported)}",
                    "Upgrade your operating system to a supported version",
                ],
                code=ErrorCode.UNSUPPORTED_OS,
            )
        return None

    def check_architecture(self, arch: str) -> InstallError | None:
        if normalize_architecture(arch) in self.requirements.architectures:
            return None
        return system_error(
            "unsupported architecture",
            f"Architecture '{arch}' is not supported",
            [
                "Use a system with x86_64 (amd64) or ARM64 (aarch64) architecture",
                "Check your system architecture with: uname -m",
            ],
        )

    def check_ram(self, available: int) -> InstallError | None:
        if available <= 0 or available >= self.requirements.min_ram:
            return None
        return system_error(
            "insufficient RAM",
            f"Available RAM: {available // (1024 * 1024)} MB, Required: {self.requirements.min_ram // (1024 * 1024)} MB",
            [
                "Add more RAM to your system",
                "Close other applications to free up memory",
                "Consider using a system with at least 2GB RAM",
            ],
        )

    def check_disk(self, available: int) -> InstallError | None:
        if available <= 0 or available >= self.requirements.min_disk:
            return None
        return system_error(
            "insufficient disk space",
            f"Available disk space: {available // constants.GIB} GB, Required: {self.requirements.min_disk // constants.GIB} GB",
            [
                "Free up disk space by removing unnecessary files",
                "Consider using a system with at least 10GB free space",
                "Move the installation to a different partition with more space",
            ],
        )

    async def check_ports(self) -> list[InstallError]:
        in_use = await asyncio.gather(*(self.is_port_in_use(port) for port in self.requirements.ports))
        return [
            system_error(
                "port conflict",
                f"Port {port} is already in use",
                [
                    f"Stop the service using port {port}",
                    f"Use 'sudo ss -tlnp | grep :{port}' to identify the conflicting process",
                    "Consider changing the configuration to use different ports",
                ],
                code=ErrorCode.PORT_CONFLICT,
            )
            for port, busy in zip(self.requirements.ports, in_use, strict=True)
            if busy
        ]

    async def is_port_in_use(self, port: int) -> bool:
        """A successful loopback connection means something is listening."""
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection("127.0.0.1", port), self._port_timeout)
        except (OSError, TimeoutError):
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    async def check_privileges(self) -> InstallError | None:
        if os.geteuid() == 0:
            return None
        try:
            await run_command("sudo", "-n", "true", timeout=10)
        except CommandError as exc:
            err = system_error(
                "insufficient privileges",
                "sudo access is required for system modifications",
                [
                    "Run the installer with sudo privileges",
                    "Ensure your user is in the sudo group",
                    "Configure passwordless sudo for your user",
                ],
                code=ErrorCode.PERMISSION_DENIED,
            )
            err.cause = exc
            return err
        return None

    def _warn(self, message: str) -> None:
        self._log.warning(message)
        self._warnings.append(message)


# ---------------------------------------------------------------------------
# Host readers (sync, run in a worker thread)
# ---------------------------------------------------------------------------


def read_os_release(path: Path) -> OSInfo:
    name = version = ""
    for line in path.read_text(encoding="utf-8").splitlines():
        if line.startswith("ID="):
            name = line.removeprefix("ID=").strip().strip('"')
        elif line.startswith("VERSION_ID="):
            version = line.removeprefix("VERSION_ID=").strip().strip('"')
    if not name:
        msg = "could not determine OS name"
        raise ValueError(msg)
    return OSInfo(name=name, version=version)


def read_available_ram(path: Path) -> int:
    """``MemAvailable`` from ``/proc/meminfo``, in bytes."""
    for line in path.read_text(encoding="utf-8").splitlines():
        if line.startswith("MemAvailable:"):
            fields = line.split()
            if len(fields) >= 2:
                return int(fields[1]) * 1024
    msg = f"could not find MemAvailable in {path}"
    raise ValueError(msg)


def read_available_disk(path: Path) -> int:
    stat = os.statvfs(path)
    return stat.f_bavail * stat.f_frsize


def normalize_architecture(arch: str) -> str:
    arch = arch.lower()
    return constants.ARCHITECTURE_ALIASES.get(arch, arch)
