"""The installation phases run inside the installer container.

Each action receives a ``PhaseContext`` and either returns (optionally with
metadata for its completion update) or raises.  Low-level failures are
wrapped into ``InstallError`` with the owning component and operation; the
pipeline then adds the phase name.

All paths below are inside the container, under ``ctx.data_dir`` (the
mounted host workspace).  Rendered files that the host reads back refer to
``ctx.host_dir`` instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import tempfile
from functools import partial
from typing import TYPE_CHECKING, Any

import httpx
from anyio import to_thread

from subosity_installer.constants import FRONTEND_URL, SUPABASE_URL, SYSTEMD_UNIT_NAME
from subosity_installer.container.executor import Phase, PhasePipeline
from subosity_installer.container.templates import render_compose_file, render_env_file, render_systemd_unit
from subosity_installer.errors import InstallError
from subosity_installer.models.enums import ErrorCode, PhaseName, SSLProvider
from subosity_installer.models.result import ServiceInfo
from subosity_installer.process import CommandError, run_command
from subosity_installer.validation import validate_config

if TYPE_CHECKING:
    from pathlib import Path

    from loguru import Logger

    from subosity_installer.container.executor import PhaseContext
    from subosity_installer.protocol import SignalWriter

SUPABASE_INSTALL_SCRIPT = "curl -fsSL https://supabase.com/install.sh | sh"
SUPABASE_BIN_DIR = "/root/.local/bin"
SYSTEMD_SYSTEM_DIR = "/etc/systemd/system"
CONTAINER_DOCKER_SOCKET = "/var/run/docker.sock"

PREPARATION_DIRECTORIES = ("supabase", "app", "logs", "configs")
APPLICATION_DIRECTORIES = ("app/frontend", "app/backend", "configs/nginx", "configs/systemd", "certs")

HEALTH_RETRY_INTERVAL = 2.0


# ---------------------------------------------------------------------------
# validation
# ---------------------------------------------------------------------------


async def validate_environment(ctx: PhaseContext) -> None:
    ctx.step("mounts", "Checking container mounts...")
    if not await to_thread.run_sync(ctx.data_dir.is_dir):
        raise _missing_mount(ctx, "data directory not mounted", str(ctx.data_dir))
    if not await to_thread.run_sync(os.path.exists, CONTAINER_DOCKER_SOCKET):
        raise _missing_mount(ctx, "Docker socket not accessible", CONTAINER_DOCKER_SOCKET)

    ctx.step("config", "Re-validating installation configuration...")
    validate_config(ctx.config)


def _missing_mount(ctx: PhaseContext, message: str, path: str) -> InstallError:
    return InstallError(
        ErrorCode.SYSTEM_REQUIREMENTS,
        message,
        component="container",
        operation="validation",
        details=f"{path} does not exist",
        environment=ctx.config.environment,
        suggestions=["Run the installer through 'subosity-installer setup', which provides the mounts"],
    )


# ---------------------------------------------------------------------------
# preparation
# ---------------------------------------------------------------------------


async def prepare_workspace(ctx: PhaseContext) -> None:
    ctx.step("directories", "Creating installation directories...")
    await _make_dirs(ctx, PREPARATION_DIRECTORIES, operation="preparation")


async def _make_dirs(ctx: PhaseContext, names: tuple[str, ...], *, operation: str) -> None:
    for name in names:
        path = ctx.data_dir / name
        try:
            await to_thread.run_sync(partial(path.mkdir, parents=True, exist_ok=True))
        except OSError as exc:
            raise InstallError.wrap(
                exc,
                ErrorCode.PERMISSION_DENIED,
                f"failed to create directory {path}",
                component="container",
                operation=operation,
                environment=ctx.config.environment,
            ) from exc


# ---------------------------------------------------------------------------
# supabase
# ---------------------------------------------------------------------------


async def setup_supabase(ctx: PhaseContext) -> None:
    project_dir = ctx.data_dir / "supabase"
    env = supabase_env()

    ctx.step("cli", "Installing Supabase CLI...")
    if shutil.which("supabase", path=env["PATH"]) is None:
        await _supabase(ctx, "install", "sh", "-c", SUPABASE_INSTALL_SCRIPT, env=env)
    version = await _supabase(ctx, "install", "supabase", "--version", env=env)
    ctx.log.debug("Supabase CLI {}", version.strip())

    ctx.step("init", "Initializing Supabase project...")
    if await to_thread.run_sync((project_dir / "supabase" / "config.toml").exists):
        ctx.log.info("Supabase project already initialized")
    else:
        await _supabase(ctx, "init", "supabase", "init", env=env, cwd=project_dir)

    ctx.step("start", "Starting Supabase services...")
    await _supabase(ctx, "start", "supabase", "start", env=env, cwd=project_dir)


def supabase_env() -> dict[str, str]:
    """Process environment with the Supabase CLI install dir on ``PATH``."""
    path = os.environ.get("PATH", "")
    return {**os.environ, "PATH": f"{SUPABASE_BIN_DIR}:{path}", "DEBIAN_FRONTEND": "noninteractive"}


async def _supabase(
    ctx: PhaseContext,
    operation: str,
    *args: str,
    env: dict[str, str],
    cwd: Path | None = None,
) -> str:
    try:
        result = await run_command(*args, env=env, cwd=cwd, timeout=ctx.settings.install_timeout)
    except CommandError as exc:
        raise InstallError.wrap(
            exc,
            ErrorCode.SUPABASE_SETUP_FAILED,
            f"Supabase {operation} failed",
            component="supabase",
            operation=operation,
            environment=ctx.config.environment,
            suggestions=[
                "Check that the Docker daemon is reachable from the installer container",
                "Verify internet connectivity",
                "Inspect the Supabase containers with 'docker ps -a'",
            ],
        ) from exc
    return result.stdout


# ---------------------------------------------------------------------------
# application
# ---------------------------------------------------------------------------


async def deploy_application(ctx: PhaseContext) -> None:
    ctx.step("structure", "Creating application structure...")
    await _make_dirs(ctx, APPLICATION_DIRECTORIES, operation="application")

    ctx.step("config", "Generating configuration files...")
    await _write(ctx, ctx.data_dir / "configs" / ".env", render_env_file(ctx.config, ctx.host_dir))

    ctx.step("tls", "Setting up SSL certificates...")
    await setup_certificates(ctx)

    ctx.step("compose", "Creating Docker Compose configuration...")
    await _write(ctx, ctx.data_dir / "docker-compose.yml", render_compose_file(ctx.config, ctx.host_dir))


async def setup_certificates(ctx: PhaseContext) -> None:
    """Custom material is written as given; every other provider gets a self-signed pair.

    Let's Encrypt issuance needs the stack reachable on the public domain, so
    installs start with a self-signed certificate in its place.
    """
    cert_dir = ctx.data_dir / "certs"
    cert_path = cert_dir / "server.crt"
    key_path = cert_dir / "server.key"
    ssl = ctx.config.ssl

    if ssl.provider == SSLProvider.CUSTOM:
        await _write(ctx, cert_path, ssl.custom_cert)
        await _write(ctx, key_path, ssl.custom_key, mode=0o600)
        return

    if ssl.provider == SSLProvider.LETSENCRYPT:
        ctx.log.warning("Let's Encrypt issuance is not automated yet; installing a self-signed certificate")

    subject = f"/C=US/ST=Local/L=Local/O=Subosity/CN={ctx.config.domain}"
    try:
        await run_command("openssl", "genrsa", "-out", str(key_path), "2048", timeout=60)
        await run_command(
            "openssl",
            "req",
            "-new",
            "-x509",
            "-key",
            str(key_path),
            "-out",
            str(cert_path),
            "-days",
            "365",
            "-subj",
            subject,
            timeout=60,
        )
    except CommandError as exc:
        raise InstallError.wrap(
            exc,
            ErrorCode.SUPABASE_SETUP_FAILED,
            "failed to generate self-signed certificate",
            component="application",
            operation="tls",
            environment=ctx.config.environment,
            suggestions=["Ensure openssl is available in the installer image"],
        ) from exc


async def _write(ctx: PhaseContext, path: Path, content: str, *, mode: int = 0o644) -> None:
    try:
        await to_thread.run_sync(partial(atomic_write, path, content, mode=mode))
    except OSError as exc:
        raise InstallError.wrap(
            exc,
            ErrorCode.PERMISSION_DENIED,
            f"failed to write {path.name}",
            component="application",
            operation="write",
            environment=ctx.config.environment,
        ) from exc
    ctx.log.debug("Wrote {}", path)


def atomic_write(path: Path, data: str, *, mode: int = 0o644) -> None:
    """Write data atomically: temp file + rename.

    Ensures readers never see a partially-written file.  The temp file is
    created in the same directory so ``os.replace`` is atomic on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


# ---------------------------------------------------------------------------
# verification
# ---------------------------------------------------------------------------

REQUIRED_ARTIFACTS = (
    "configs/.env",
    "certs/server.crt",
    "certs/server.key",
    "docker-compose.yml",
)


async def verify_installation(ctx: PhaseContext) -> None:
    ctx.step("artifacts", "Checking generated files...")
    missing = [name for name in REQUIRED_ARTIFACTS if not await to_thread.run_sync((ctx.data_dir / name).is_file)]
    if missing:
        raise InstallError(
            ErrorCode.SUPABASE_SETUP_FAILED,
            "installation artifacts are missing",
            component="verification",
            operation="artifacts",
            details=", ".join(missing),
            environment=ctx.config.environment,
        )

    ctx.step("health", "Verifying Supabase API health...")
    await wait_for_http(ctx, SUPABASE_URL, timeout=ctx.settings.health_timeout)


async def wait_for_http(ctx: PhaseContext, url: str, *, timeout: float) -> None:
    """Poll *url* until it answers (any status below 500) or *timeout* passes."""
    last_error: Exception | None = None
    try:
        async with asyncio.timeout(timeout), httpx.AsyncClient(timeout=5.0) as client:
            while True:
                try:
                    response = await client.get(url)
                except httpx.HTTPError as exc:
                    last_error = exc
                else:
                    if response.status_code < 500:
                        return
                    last_error = httpx.HTTPStatusError(
                        f"{url} returned {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                ctx.log.debug("{} not ready yet: {}", url, last_error)
                await asyncio.sleep(HEALTH_RETRY_INTERVAL)
    except TimeoutError as exc:
        raise InstallError.wrap(
            last_error or exc,
            ErrorCode.NETWORK_TIMEOUT,
            f"{url} did not become healthy within {timeout:.0f}s",
            component="verification",
            operation="health",
            environment=ctx.config.environment,
            suggestions=["Inspect the Supabase containers with 'docker ps -a'"],
        ) from exc


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


async def finalize_installation(ctx: PhaseContext) -> dict[str, Any]:
    ctx.step("systemd", "Creating systemd service...")
    unit_path = ctx.data_dir / "configs" / "systemd" / SYSTEMD_UNIT_NAME
    await _write(ctx, unit_path, render_systemd_unit(ctx.config, ctx.host_dir))
    try:
        await to_thread.run_sync(shutil.copyfile, unit_path, os.path.join(SYSTEMD_SYSTEM_DIR, SYSTEMD_UNIT_NAME))
    except OSError as exc:
        ctx.log.warning("Could not copy systemd service to {}: {}", SYSTEMD_SYSTEM_DIR, exc)

    ctx.step("start", "Starting services...")
    try:
        await run_command("docker", "compose", "up", "-d", cwd=ctx.data_dir, timeout=ctx.settings.docker_timeout)
    except CommandError as exc:
        raise InstallError.wrap(
            exc,
            ErrorCode.SUPABASE_SETUP_FAILED,
            "failed to start services",
            component="application",
            operation="start",
            environment=ctx.config.environment,
            suggestions=["Check 'docker compose logs' in the installation directory"],
        ) from exc

    ctx.step("enable", "Enabling services for auto-start...")
    for args in (("systemctl", "enable", SYSTEMD_UNIT_NAME), ("systemctl", "daemon-reload")):
        try:
            await run_command(*args, timeout=30)
        except CommandError as exc:
            ctx.log.warning("Could not run {}: {}", " ".join(args), exc)

    return installed_services(ctx)


def installed_services(ctx: PhaseContext) -> dict[str, Any]:
    """Metadata for the completion update: service map and access URLs."""
    services = {
        "supabase": ServiceInfo(name="Supabase", status="running", url=SUPABASE_URL, healthy=True),
        "frontend": ServiceInfo(name="Subosity App", status="running", url=FRONTEND_URL, healthy=True),
    }
    return {
        "services": {key: service.model_dump(mode="json") for key, service in services.items()},
        "urls": {"app": ctx.config.access_url, "supabase": SUPABASE_URL},
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


PHASES = (
    (PhaseName.VALIDATION, 0.1, validate_environment, ErrorCode.CONFIG_INVALID),
    (PhaseName.PREPARATION, 0.2, prepare_workspace, ErrorCode.PERMISSION_DENIED),
    (PhaseName.SUPABASE, 0.6, setup_supabase, ErrorCode.SUPABASE_SETUP_FAILED),
    (PhaseName.APPLICATION, 0.8, deploy_application, ErrorCode.SUPABASE_SETUP_FAILED),
    (PhaseName.VERIFICATION, 0.9, verify_installation, ErrorCode.SUPABASE_SETUP_FAILED),
    (PhaseName.COMPLETE, 1.0, finalize_installation, ErrorCode.SUPABASE_SETUP_FAILED),
)
"""Name, cumulative progress, action and default error code, in execution order."""


def default_phases() -> list[Phase]:
    return [Phase(name.value, progress, action, code) for name, progress, action, code in PHASES]


def build_pipeline(writer: SignalWriter, log: Logger | None = None) -> PhasePipeline:
    return PhasePipeline(default_phases(), writer=writer, log=log)
