"""Unit tests for config building, defaults and validation."""

from __future__ import annotations

import json

import pytest

from subosity_installer.errors import InstallError
from subosity_installer.models.config import InstallationConfig, SSLConfig
from subosity_installer.models.enums import Environment, ErrorCode, SSLProvider
from subosity_installer.validation import (
    apply_defaults,
    build_config,
    parse_config_payload,
    sanitize_domain,
    validate_config,
    validate_domain,
    validate_email,
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_dev_defaults() -> None:
    config = apply_defaults(InstallationConfig(environment=Environment.DEVELOPMENT, domain=""))
    assert config.domain == "subosity.local"
    assert config.ssl.provider == SSLProvider.SELF_SIGNED
    assert config.ssl.auto_renew is False


@pytest.mark.parametrize("environment", [Environment.STAGING, Environment.PRODUCTION])
def test_non_dev_defaults(environment: Environment) -> None:
    config = apply_defaults(InstallationConfig(environment=environment, domain="app.example.com", email="a@b.co"))
    assert config.ssl.provider == SSLProvider.LETSENCRYPT
    assert config.ssl.auto_renew is True
    assert config.ssl.email == "a@b.co"


def test_explicit_provider_is_kept() -> None:
    config = apply_defaults(
        InstallationConfig(
            environment=Environment.PRODUCTION,
            domain="app.example.com",
            ssl=SSLConfig(provider=SSLProvider.SELF_SIGNED),
        )
    )
    assert config.ssl.provider == SSLProvider.SELF_SIGNED


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("domain", ["example.com", "a.b.example.co.uk", "localhost", "myapp.local", "x-1.io"])
def test_valid_domains(domain: str) -> None:
    validate_domain(domain)


@pytest.mark.parametrize("domain", ["", "nodot", "-bad.example.com", "bad-.example.com", "a..b.com", "sp ace.com"])
def test_invalid_domains(domain: str) -> None:
    with pytest.raises(InstallError) as exc_info:
        validate_domain(domain)
    assert exc_info.value.code == ErrorCode.CONFIG_INVALID


def test_domain_too_long() -> None:
    domain = ".".join(["a" * 60] * 5) + ".com"
    with pytest.raises(InstallError, match="too long"):
        validate_domain(domain)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  Example.COM ", "example.com"),
        ("https://app.example.com/path", "app.example.com"),
        ("http://myapp.local:8080", "myapp.local"),
    ],
)
def test_sanitize_domain(raw: str, expected: str) -> None:
    assert sanitize_domain(raw) == expected


@pytest.mark.parametrize("email", ["not-an-email", "a@b", "a b@example.com", "Name <a@example.com>"])
def test_invalid_emails(email: str) -> None:
    with pytest.raises(InstallError):
        validate_email(email)


def test_production_requires_email() -> None:
    config = InstallationConfig(
        environment=Environment.PRODUCTION,
        domain="app.example.com",
        ssl=SSLConfig(provider=SSLProvider.SELF_SIGNED),
    )
    with pytest.raises(InstallError, match="email is required"):
        validate_config(config)


def test_letsencrypt_requires_email() -> None:
    config = InstallationConfig(
        environment=Environment.STAGING,
        domain="app.example.com",
        ssl=SSLConfig(provider=SSLProvider.LETSENCRYPT),
    )
    with pytest.raises(InstallError, match="Let's Encrypt"):
        validate_config(config)


def test_custom_ssl_requires_cert_and_key() -> None:
    config = InstallationConfig(
        environment=Environment.STAGING,
        domain="app.example.com",
        ssl=SSLConfig(provider=SSLProvider.CUSTOM, custom_cert="CERT"),
    )
    with pytest.raises(InstallError, match="certificate and key"):
        validate_config(config)


def test_validate_none() -> None:
    with pytest.raises(InstallError):
        validate_config(None)


# ---------------------------------------------------------------------------
# build_config
# ---------------------------------------------------------------------------


def test_build_config_prod() -> None:
    config = build_config(environment="prod", domain="https://App.Example.com", email="admin@example.com")
    assert config.environment == Environment.PRODUCTION
    assert config.domain == "app.example.com"
    assert config.ssl.provider == SSLProvider.LETSENCRYPT
    assert config.version


def test_build_config_dev_without_domain() -> None:
    config = build_config(environment="dev")
    assert config.domain == "subosity.local"
    assert config.access_url == "http://subosity.local"


def test_build_config_invalid_environment() -> None:
    with pytest.raises(InstallError, match="invalid environment"):
        build_config(environment="qa", domain="app.example.com")


def test_build_config_invalid_provider() -> None:
    with pytest.raises(InstallError, match="invalid SSL provider"):
        build_config(environment="dev", ssl_provider="acme")


def test_build_config_from_file_with_overrides(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"environment": "staging", "domain": "staging.example.com", "email": "ops@example.com"}),
        encoding="utf-8",
    )
    config = build_config(environment="", domain="override.example.com", config_file=path)
    assert config.environment == Environment.STAGING
    assert config.domain == "override.example.com"
    assert config.email == "ops@example.com"


def test_build_config_malformed_file(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(InstallError) as exc_info:
        build_config(environment="dev", config_file=path)
    assert exc_info.value.code == ErrorCode.INVALID_FORMAT


def test_build_config_missing_file(tmp_path) -> None:
    with pytest.raises(InstallError, match="could not read"):
        build_config(environment="dev", config_file=tmp_path / "missing.json")


# ---------------------------------------------------------------------------
# Container payload
# ---------------------------------------------------------------------------


def test_parse_config_payload(dev_config: InstallationConfig) -> None:
    assert parse_config_payload(dev_config.model_dump_json()) == dev_config


@pytest.mark.parametrize("raw", [None, "", "{", '{"environment": "dev"}'])
def test_parse_config_payload_invalid(raw: str | None) -> None:
    with pytest.raises(InstallError) as exc_info:
        parse_config_payload(raw)
    assert exc_info.value.code == ErrorCode.CONFIG_INVALID
