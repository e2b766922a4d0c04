"""Fixed installer constants."""

from __future__ import annotations

APP_NAME = "subosity-installer"
APP_VERSION = "1.0.0-dev"

# -- Container ---------------------------------------------------------------

CONTAINER_IMAGE_DEV = "subosity/installer:dev"

CONFIG_ENV_VAR = "SUBOSITY_CONFIG"
"""Environment variable carrying the serialized ``InstallationConfig``."""

# -- Paths -------------------------------------------------------------------

DEFAULT_INSTALL_PATH = "/opt/subosity"
WORKSPACE_SUBDIRECTORIES = ("data", "logs", "configs", "backups", "docker")
SYSTEMD_UNIT_NAME = "subosity.service"

# -- System requirements -----------------------------------------------------

GIB = 1024 * 1024 * 1024

MIN_RAM_BYTES = 2 * GIB
MIN_DISK_BYTES = 10 * GIB

REQUIRED_PORTS = (80, 443, 5432, 8000, 3000)

SUPPORTED_OSES: dict[str, tuple[str, ...]] = {
    "ubuntu": ("20.04", "22.04", "24.04"),
    "debian": ("11", "12"),
}

SUPPORTED_ARCHITECTURES = ("x86_64", "aarch64")
ARCHITECTURE_ALIASES = {"amd64": "x86_64", "arm64": "aarch64"}

# -- Docker installation -----------------------------------------------------

DOCKER_GPG_KEY_URL = "https://download.docker.com/linux/{distro}/gpg"
DOCKER_GPG_KEY_PATH = "/etc/apt/keyrings/docker.asc"
DOCKER_LIST_PATH = "/etc/apt/sources.list.d/docker.list"
DOCKER_CONFLICTING_PACKAGES = (
    "docker.io",
    "docker-doc",
    "docker-compose",
    "docker-compose-v2",
    "podman-docker",
    "containerd",
    "runc",
)
DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)

# -- Services ----------------------------------------------------------------

SUPABASE_URL = "http://localhost:8000"
FRONTEND_URL = "http://localhost:3000"
