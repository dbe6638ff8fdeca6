"""Tests for Settings.from_env."""

from pathlib import Path

import pytest

from credit_pot.src.config import DB_FILE, HTTP_TIMEOUT, Settings, db_path_from_env
from credit_pot.src.errors import ConfigError

ENV_VARS = [
    "ENCRYPTION_KEY",
    "TRUELAYER_CLIENT_ID",
    "TRUELAYER_CLIENT_SECRET",
    "TRUELAYER_ENVIRONMENT",
    "MONZO_CLIENT_ID",
    "MONZO_CLIENT_SECRET",
    "CREDIT_POT_DB",
    "CREDIT_POT_HTTP_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Start every test from an empty environment."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def test_missing_encryption_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """No key is fatal."""
    with pytest.raises(ConfigError, match="ENCRYPTION_KEY"):
        Settings.from_env()


def test_blank_encryption_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """Whitespace only counts as missing."""
    monkeypatch.setenv("ENCRYPTION_KEY", " \n")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Only the key is required."""
    monkeypatch.setenv("ENCRYPTION_KEY", "secret")

    settings = Settings.from_env()

    assert settings.truelayer_environment == "production"
    assert settings.truelayer_urls["api"] == "https://api.truelayer.com/data/v1"
    assert settings.db_path == DB_FILE
    assert settings.http_timeout == HTTP_TIMEOUT


def test_pasted_newlines_are_stripped(monkeypatch: pytest.MonkeyPatch) -> None:
    """Secrets copied from dashboards often carry line breaks."""
    monkeypatch.setenv("ENCRYPTION_KEY", "secret\n")
    monkeypatch.setenv("TRUELAYER_CLIENT_ID", " client-id\r\n")
    monkeypatch.setenv("MONZO_CLIENT_SECRET", "mnz\nconf")

    settings = Settings.from_env()

    assert settings.encryption_key == "secret"
    assert settings.truelayer_client_id == "client-id"
    assert settings.monzo_client_secret == "mnzconf"


def test_sandbox(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Environment, database path and timeout are configurable."""
    monkeypatch.setenv("ENCRYPTION_KEY", "secret")
    monkeypatch.setenv("TRUELAYER_ENVIRONMENT", "sandbox")
    monkeypatch.setenv("CREDIT_POT_DB", str(tmp_path / "x.duckdb"))
    monkeypatch.setenv("CREDIT_POT_HTTP_TIMEOUT", "5")

    settings = Settings.from_env()

    assert settings.truelayer_urls["token"] == "https://auth.truelayer-sandbox.com/connect/token"
    assert settings.db_path == tmp_path / "x.duckdb"
    assert settings.http_timeout == 5.0


def test_unknown_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Typos in the environment name fail fast."""
    monkeypatch.setenv("ENCRYPTION_KEY", "secret")
    monkeypatch.setenv("TRUELAYER_ENVIRONMENT", "staging")

    with pytest.raises(ConfigError, match="staging"):
        Settings.from_env()


def test_db_path_single_source(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """The db command and Settings resolve the same database path."""
    assert db_path_from_env() == DB_FILE
    monkeypatch.setenv("ENCRYPTION_KEY", "secret")
    monkeypatch.setenv("CREDIT_POT_DB", str(tmp_path / "y.duckdb"))

    assert db_path_from_env() == tmp_path / "y.duckdb"
    assert Settings.from_env().db_path == db_path_from_env()
