"""Shared test fixtures.

Nothing here needs Docker: external commands are mocked or replaced by
short Python child processes, and host files live under ``tmp_path``.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest
from loguru import logger

from subosity_installer.models.config import InstallationConfig, SSLConfig
from subosity_installer.models.enums import Environment, SSLProvider
from subosity_installer.settings import InstallerSettings, get_settings

if TYPE_CHECKING:
    from loguru import Logger


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@dataclass
class CapturedLog:
    """Messages logged through one bound logger, as ``(level, message)``."""

    records: list[tuple[str, str]] = field(default_factory=list)

    def messages(self, level: str | None = None) -> list[str]:
        return [msg for lvl, msg in self.records if level is None or lvl == level]


@pytest.fixture
def captured_log() -> Iterator[tuple[Logger, CapturedLog]]:
    """A loguru logger bound to a unique id, plus what it recorded."""
    capture_id = uuid.uuid4().hex
    captured = CapturedLog()

    def sink(message) -> None:
        record = message.record
        captured.records.append((record["level"].name, record["message"]))

    handler_id = logger.add(sink, level="DEBUG", filter=lambda r: r["extra"].get("capture_id") == capture_id)
    try:
        yield logger.bind(capture_id=capture_id), captured
    finally:
        logger.remove(handler_id)


@pytest.fixture
def settings(tmp_path) -> InstallerSettings:
    return InstallerSettings(
        install_path=tmp_path / "opt" / "subosity",
        container_data_dir=tmp_path / "app" / "data",
        pull_image=False,
        health_timeout=1,
    )


@pytest.fixture
def dev_config() -> InstallationConfig:
    return InstallationConfig(
        environment=Environment.DEVELOPMENT,
        domain="subosity.local",
        ssl=SSLConfig(provider=SSLProvider.SELF_SIGNED),
    )


@pytest.fixture
def prod_config() -> InstallationConfig:
    return InstallationConfig(
        environment=Environment.PRODUCTION,
        domain="app.example.com",
        email="admin@example.com",
        ssl=SSLConfig(provider=SSLProvider.LETSENCRYPT, email="admin@example.com", auto_renew=True),
    )
