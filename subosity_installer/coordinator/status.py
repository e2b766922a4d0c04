"""Installation status query from the host.

The detailed report comes from running the installer image with
``container status``, which prints one ``InstallationResult`` JSON line.
When that fails, a basic report is assembled from systemd and ``docker ps``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

from subosity_installer.constants import SYSTEMD_UNIT_NAME
from subosity_installer.coordinator.runner import Mount
from subosity_installer.errors import InstallError
from subosity_installer.log import component_logger
from subosity_installer.models.enums import ErrorCode
from subosity_installer.models.result import InstallationResult, ServiceInfo
from subosity_installer.process import CommandError, run_command

if TYPE_CHECKING:
    from loguru import Logger

    from subosity_installer.settings import InstallerSettings


class StatusReporter:
    def __init__(self, settings: InstallerSettings, *, log: Logger | None = None) -> None:
        self._settings = settings
        self._log = component_logger("status", log)

    @property
    def is_installed(self) -> bool:
        return self._settings.install_path.is_dir()

    async def query(self) -> InstallationResult:
        """Detailed status from the container, falling back to a basic report.

        Raises ``InstallError`` when nothing is installed.
        """
        if not self.is_installed:
            raise InstallError(
                ErrorCode.SYSTEM_REQUIREMENTS,
                "Subosity is not installed",
                component="status",
                operation="query",
                details=f"{self._settings.install_path} does not exist",
                suggestions=["Run 'subosity-installer setup' to install Subosity"],
            )
        try:
            return await self.container_status()
        except (CommandError, ValueError) as exc:
            self._log.warning("Could not get detailed status: {}", exc)
        return await self.basic_status()

    async def container_status(self) -> InstallationResult:
        mounts = [
            Mount(str(self._settings.install_path), str(self._settings.container_data_dir)),
            Mount(str(self._settings.docker_socket), "/var/run/docker.sock"),
        ]
        args = ["docker", "run", "--rm"]
        for mount in mounts:
            args += ["-v", mount.as_arg()]
        args += ["--network", "host", self._settings.image, "container", "status"]

        result = await run_command(*args, timeout=self._settings.status_timeout)
        return parse_status_output(result.stdout)

    async def basic_status(self) -> InstallationResult:
        """Best-effort report from systemd and ``docker ps``."""
        services: dict[str, ServiceInfo] = {}

        systemd = await _probe("systemctl", "is-active", SYSTEMD_UNIT_NAME)
        if systemd is not None:
            services["systemd"] = ServiceInfo(name=SYSTEMD_UNIT_NAME, status=systemd, healthy=systemd == "active")

        containers = await _probe("docker", "ps", "--filter", "name=subosity", "--format", "{{.Names}}\t{{.Status}}")
        for line in (containers or "").splitlines():
            name, _, status = line.partition("\t")
            if name:
                services[name] = ServiceInfo(name=name, status=status, healthy=status.startswith("Up"))

        healthy = bool(services) and all(s.healthy for s in services.values())
        if healthy:
            return InstallationResult(success=True, phase="installed", services=services)
        return InstallationResult(
            success=False,
            phase="installed",
            services=services,
            error=InstallError(
                ErrorCode.SUPABASE_SETUP_FAILED,
                "one or more services are not running",
                component="status",
                operation="basic_status",
            ).to_details(),
        )


def parse_status_output(stdout: str) -> InstallationResult:
    """The last non-empty line of the container output is the report."""
    lines = [line for line in stdout.splitlines() if line.strip()]
    if not lines:
        msg = "container status produced no output"
        raise ValueError(msg)
    try:
        return InstallationResult.model_validate_json(lines[-1])
    except ValidationError as exc:
        msg = f"unexpected status output: {exc}"
        raise ValueError(msg) from exc


async def _probe(*args: str) -> str | None:
    try:
        result = await run_command(*args, timeout=10, check=False)
    except CommandError:
        return None
    return result.stdout.strip()
