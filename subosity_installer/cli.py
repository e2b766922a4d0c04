from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click
from loguru import logger

from subosity_installer.constants import APP_NAME, APP_VERSION, CONFIG_ENV_VAR
from subosity_installer.errors import InstallError, exit_code_for, format_error
from subosity_installer.log import CONTAINER_FORMAT, setup_logging
from subosity_installer.models.enums import Environment, SSLProvider
from subosity_installer.settings import get_settings

if TYPE_CHECKING:
    from subosity_installer.models.config import InstallationConfig
    from subosity_installer.models.result import InstallationResult
    from subosity_installer.protocol import SignalWriter
    from subosity_installer.settings import InstallerSettings


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable verbose output.")
@click.option("--log-level", default=None, help="Log level (default: from SUBOSITY_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, verbose: bool, log_level: str | None) -> None:
    """Subosity Installer - turnkey self-hosting for Subosity.

    A thin host binary validates the machine and delegates the installation
    to a specialised container image.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["log_level"] = log_level or get_settings().log_level


def _host_logging(ctx: click.Context) -> None:
    setup_logging(ctx.obj["log_level"], verbose=ctx.obj["verbose"])


def _fail(err: InstallError) -> NoReturn:
    click.echo(format_error(err), err=True)
    sys.exit(exit_code_for(err.code))


# ---------------------------------------------------------------------------
# Host commands
# ---------------------------------------------------------------------------


@main.command()
@click.option(
    "--env",
    "environment",
    type=click.Choice([e.value for e in Environment], case_sensitive=False),
    default=None,
    help="Environment (dev, staging, prod).",
)
@click.option("--domain", default="", help="Domain name for the installation.")
@click.option("--email", default="", help="Email address for SSL certificates and notifications.")
@click.option(
    "--ssl-provider",
    type=click.Choice([p.value for p in SSLProvider], case_sensitive=False),
    default=None,
    help="SSL provider (letsencrypt, self-signed, custom).",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON configuration file.  Flags override its values.",
)
@click.option("--timeout", type=int, default=None, help="Installation timeout in minutes (default: 15).")
@click.pass_context
def setup(
    ctx: click.Context,
    environment: str | None,
    domain: str,
    email: str,
    ssl_provider: str | None,
    config_file: Path | None,
    timeout: int | None,
) -> None:
    """Install and configure Subosity on this host.

    \b
    Examples:
      subosity-installer setup --env prod --domain myapp.com --email admin@myapp.com
      subosity-installer setup --env dev --domain myapp.local
    """
    from subosity_installer.validation import build_config

    _host_logging(ctx)
    settings = get_settings()

    logger.info("Starting Subosity installation...")
    try:
        config = build_config(
            environment=(environment or "").lower(),
            domain=domain,
            email=email,
            ssl_provider=ssl_provider.lower() if ssl_provider else None,
            config_file=config_file,
        )
    except InstallError as err:
        _fail(err)
    logger.info("Configuration validated for {} environment on domain {}", config.environment, config.domain)

    deadline = timeout * 60 if timeout is not None else settings.install_timeout
    try:
        result = asyncio.run(_install(config, settings, deadline))
    except InstallError as err:
        _fail(err)

    if not result.success:
        _fail(InstallError.from_details(result.error))
    _display_success(config, result)


main.add_command(setup, name="install")


async def _install(config: InstallationConfig, settings: InstallerSettings, timeout: float) -> InstallationResult:
    from subosity_installer.coordinator.docker import DockerService
    from subosity_installer.coordinator.preflight import SystemDetector
    from subosity_installer.coordinator.runner import DelegationRunner

    report = await SystemDetector().run()
    for warning in report.warnings:
        logger.warning(warning)
    report.raise_for_failure()
    meta = report.metadata
    logger.info("Detected system: {} {} ({})", meta.os, meta.version, meta.architecture)

    await DockerService(timeout=settings.docker_timeout, distro=meta.os or "ubuntu").ensure()

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, _request_cancel, cancel_event)
    try:
        return await DelegationRunner(settings).run(config, timeout=timeout, cancel_event=cancel_event)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def _request_cancel(cancel_event: asyncio.Event) -> None:
    logger.warning("Received shutdown signal, cancelling installation...")
    cancel_event.set()


def _display_success(config: InstallationConfig, result: InstallationResult) -> None:
    click.echo()
    click.secho("Subosity installation completed successfully!", fg="green", bold=True)
    click.echo()
    click.echo(f"Environment: {config.environment}")
    click.echo(f"Domain: {config.domain}")
    click.echo(f"Access URL: {result.urls.get('app', config.access_url)}")
    for name, url in sorted(result.urls.items()):
        if name != "app":
            click.echo(f"  {name}: {url}")
    click.echo()
    click.echo("Next steps:")
    click.echo("1. Configure your domain's DNS to point to this server")
    click.echo("2. Access the application at the URL above")
    click.echo("3. Complete the initial setup in the web interface")
    click.echo(f"\nFinished in {result.duration_ms / 1000:.1f}s")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Check the status of the Subosity installation."""
    from subosity_installer.coordinator.status import StatusReporter

    _host_logging(ctx)
    logger.info("Checking Subosity installation status...")
    try:
        result = asyncio.run(StatusReporter(get_settings()).query())
    except InstallError as err:
        _fail(err)
    _display_status(result)
    if not result.success:
        sys.exit(1)


def _display_status(result: InstallationResult) -> None:
    click.echo("Subosity Status Report")
    click.echo("======================")
    overall = click.style("Healthy", fg="green") if result.success else click.style("Issues Detected", fg="red")
    click.echo(f"Overall Status: {overall}")
    if result.services:
        click.echo("\nServices:")
        for key, service in sorted(result.services.items()):
            mark = click.style("ok", fg="green") if service.healthy else click.style("!!", fg="red")
            line = f"  [{mark}] {key} ({service.status})"
            if service.url:
                line += f" - {service.url}"
            click.echo(line)
    if result.urls:
        click.echo("\nURLs:")
        for name, url in sorted(result.urls.items()):
            click.echo(f"  {name}: {url}")
    if result.error is not None:
        click.echo()
        click.echo(format_error(InstallError.from_details(result.error)), err=True)


@main.command()
def version() -> None:
    """Print version information."""
    click.echo(f"{APP_NAME} version {APP_VERSION}")


# ---------------------------------------------------------------------------
# Container entrypoints
# ---------------------------------------------------------------------------


@main.group()
def container() -> None:
    """Entrypoints run inside the installer container."""


@container.command("install")
def container_install() -> None:
    """Run the installation phases, reporting over stdout/stderr."""
    from subosity_installer.protocol import SignalWriter
    from subosity_installer.validation import parse_config_payload

    settings = get_settings()
    # stdout carries progress lines; plain log lines there are forwarded as info.
    setup_logging(settings.log_level, sink=sys.stdout, fmt=CONTAINER_FORMAT)
    writer = SignalWriter()
    try:
        config = parse_config_payload(os.environ.get(CONFIG_ENV_VAR))
        asyncio.run(_run_phases(config, settings, writer))
    except InstallError as err:
        logger.error("Installation failed: {}", err)
        writer.error(err.to_details())
        sys.exit(exit_code_for(err.code))


async def _run_phases(config: InstallationConfig, settings: InstallerSettings, writer: SignalWriter) -> None:
    from subosity_installer.container.executor import PhaseContext
    from subosity_installer.container.phases import build_pipeline

    log = logger.bind(component="installer")
    ctx = PhaseContext(
        config=config,
        settings=settings,
        log=log,
        data_dir=settings.container_data_dir,
        host_dir=settings.install_path,
    )
    await build_pipeline(writer, log).run(ctx)
    log.success("Installation phases completed")


@container.command("status")
def container_status() -> None:
    """Print the service status report as one JSON line."""
    from subosity_installer.container.status import collect_status

    setup_logging(get_settings().log_level, sink=sys.stderr, fmt=CONTAINER_FORMAT)
    result = asyncio.run(collect_status())
    click.echo(result.model_dump_json())


if __name__ == "__main__":
    main()
