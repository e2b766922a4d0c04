"""Service status report produced inside the installer container.

``container status`` prints the result of ``collect_status`` as a single
``InstallationResult`` JSON line, which the host parses.
"""

from __future__ import annotations

import asyncio
import time

import httpx

from subosity_installer.constants import FRONTEND_URL, SUPABASE_URL
from subosity_installer.errors import InstallError
from subosity_installer.models.enums import ErrorCode
from subosity_installer.models.result import InstallationResult, ServiceInfo

SERVICES: dict[str, tuple[str, str]] = {
    "supabase": ("Supabase", SUPABASE_URL),
    "frontend": ("Subosity App", FRONTEND_URL),
}


async def probe_service(client: httpx.AsyncClient, name: str, url: str) -> ServiceInfo:
    try:
        response = await client.get(url)
    except httpx.HTTPError as exc:
        return ServiceInfo(name=name, status=f"unreachable ({type(exc).__name__})", url=url)
    healthy = response.status_code < 500
    return ServiceInfo(
        name=name,
        status="running" if healthy else f"error ({response.status_code})",
        port=httpx.URL(url).port,
        url=url,
        healthy=healthy,
    )


async def collect_status(*, timeout: float = 5.0) -> InstallationResult:
    started = time.monotonic()
    async with httpx.AsyncClient(timeout=timeout) as client:
        probed = await asyncio.gather(*(probe_service(client, name, url) for name, url in SERVICES.values()))
    services = dict(zip(SERVICES, probed, strict=True))
    urls = {"app": FRONTEND_URL, "supabase": SUPABASE_URL}
    duration_ms = int((time.monotonic() - started) * 1000)

    unhealthy = [key for key, service in services.items() if not service.healthy]
    if not unhealthy:
        return InstallationResult(success=True, phase="installed", services=services, urls=urls, duration_ms=duration_ms)
    error = InstallError(
        ErrorCode.SUPABASE_SETUP_FAILED,
        "one or more services are not healthy",
        component="status",
        operation="probe",
        details=", ".join(unhealthy),
        suggestions=["Check 'docker compose ps' in the installation directory"],
    )
    return InstallationResult(
        success=False,
        phase="installed",
        error=error.to_details(),
        services=services,
        urls=urls,
        duration_ms=duration_ms,
    )
