"""Docker CE presence check and installation on the host.

Installation follows Docker's apt repository procedure.  Every step failure
is wrapped as ``DOCKER_INSTALL_FAILED`` naming the step.  Adding the invoking
user to the ``docker`` group is optional and only warns on failure.
"""

from __future__ import annotations

import getpass
import shutil
from typing import TYPE_CHECKING

from subosity_installer import constants
from subosity_installer.errors import docker_error
from subosity_installer.log import component_logger
from subosity_installer.process import CommandError, run_command

if TYPE_CHECKING:
    from loguru import Logger


class DockerService:
    def __init__(self, *, timeout: float = 300, distro: str = "ubuntu", log: Logger | None = None) -> None:
        self._timeout = timeout
        self._distro = distro
        self._log = component_logger("docker", log)

    async def is_installed(self) -> bool:
        """True when the CLI exists and the daemon answers ``docker info``."""
        if shutil.which("docker") is None:
            return False
        try:
            await run_command("docker", "info", timeout=30)
        except CommandError:
            return False
        return True

    async def version(self) -> str:
        result = await run_command("docker", "--version", timeout=10)
        return result.stdout.strip()

    async def ensure(self) -> None:
        """Install Docker unless it is already available."""
        self._log.info("Checking Docker availability...")
        if await self.is_installed():
            self._log.info("Docker is already installed: {}", await self.version())
            return
        self._log.info("Docker not found, installing...")
        await self.install()

    async def install(self) -> None:
        self._log.info("Installing Docker CE and Docker Compose...")

        await self._remove_conflicting_packages()

        steps = (
            ("repository", "failed to setup Docker repository", self._setup_repository),
            ("installation", "failed to install Docker packages", self._install_packages),
            ("verification", "Docker installation verification failed", self._verify),
        )
        for operation, message, step in steps:
            try:
                await step()
            except CommandError as exc:
                raise docker_error(exc, message, operation) from exc

        await self._configure_user()
        self._log.success("Docker CE and Docker Compose installed successfully")

    # -- Steps -----------------------------------------------------------------

    async def _sudo(self, *args: str) -> None:
        await run_command("sudo", *args, timeout=self._timeout)

    async def _remove_conflicting_packages(self) -> None:
        self._log.info("Removing potentially conflicting packages...")
        result = await run_command(
            "sudo",
            "apt-get",
            "remove",
            "-y",
            *constants.DOCKER_CONFLICTING_PACKAGES,
            timeout=self._timeout,
            check=False,
        )
        # Packages that were never installed make apt-get exit non-zero.
        if result.returncode != 0:
            self._log.debug("Package removal output: {}", result.output)

    async def _setup_repository(self) -> None:
        self._log.info("Setting up Docker repository...")
        await self._sudo("apt-get", "update")
        await self._sudo("apt-get", "install", "-y", "ca-certificates", "curl")
        await self._sudo("install", "-m", "0755", "-d", "/etc/apt/keyrings")
        await self._sudo(
            "curl",
            "-fsSL",
            constants.DOCKER_GPG_KEY_URL.format(distro=self._distro),
            "-o",
            constants.DOCKER_GPG_KEY_PATH,
        )
        await self._sudo("chmod", "a+r", constants.DOCKER_GPG_KEY_PATH)

        arch = (await run_command("dpkg", "--print-architecture", timeout=10)).stdout.strip()
        codename = (await run_command("sh", "-c", ". /etc/os-release && echo $VERSION_CODENAME", timeout=10)).stdout
        repo = (
            f"deb [arch={arch} signed-by={constants.DOCKER_GPG_KEY_PATH}] "
            f"https://download.docker.com/linux/{self._distro} {codename.strip()} stable"
        )
        await self._sudo("sh", "-c", f"echo '{repo}' > {constants.DOCKER_LIST_PATH}")
        await self._sudo("apt-get", "update")

    async def _install_packages(self) -> None:
        self._log.info("Installing Docker packages...")
        await self._sudo("apt-get", "install", "-y", *constants.DOCKER_PACKAGES)
        await self._sudo("systemctl", "enable", "--now", "docker")

    async def _verify(self) -> None:
        await self._sudo("docker", "run", "--rm", "hello-world")
        await run_command("docker", "compose", "version", timeout=30)

    async def _configure_user(self) -> None:
        user = getpass.getuser()
        if user == "root":
            return
        try:
            await self._sudo("usermod", "-aG", "docker", user)
        except CommandError as exc:
            self._log.warning("Could not add {} to the docker group: {}", user, exc)
        else:
            self._log.info("Added {} to the docker group (log out and back in to apply)", user)
