"""Pytest fixtures for credit_pot tests."""

from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from pytest_mock import MockerFixture

from credit_pot.src.database import CredentialDatabase
from credit_pot.src.models import CredentialRecord
from credit_pot.src.secret_box import SecretBox
from credit_pot.src.token_lifecycle import OAuthClientConfig
from credit_pot.src.token_store import TokenStore

NOW = 1_700_000_000_000  # epoch ms


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds * 1000


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at NOW."""
    return FakeClock()


@pytest.fixture
def database(tmp_path: Path) -> CredentialDatabase:
    """Database in a temporary file (file doesn't exist yet)."""
    return CredentialDatabase(tmp_path / "test.duckdb")


@pytest.fixture
def store(database: CredentialDatabase, clock: FakeClock) -> TokenStore:
    """Token store on the temporary database."""
    return TokenStore(database, clock=clock)


@pytest.fixture
def box() -> SecretBox:
    """SecretBox with few PBKDF2 iterations to keep tests fast."""
    return SecretBox("test-passphrase", iterations=1_000)


@pytest.fixture
def mock_client(mocker: MockerFixture):
    """Create a mock httpx.Client."""
    return mocker.MagicMock(spec=httpx.Client)


@pytest.fixture
def make_response() -> Callable[..., httpx.Response]:
    """Factory fixture to create real httpx responses."""

    def _make_response(status: int = 200, json: dict | None = None, text: str = "") -> httpx.Response:
        if json is not None:
            return httpx.Response(status, json=json)
        return httpx.Response(status, text=text)

    return _make_response


@pytest.fixture
def truelayer_config() -> OAuthClientConfig:
    """TrueLayer-style grant config (scope sent on refresh)."""
    return OAuthClientConfig(
        name="truelayer",
        token_url="https://auth.truelayer.test/connect/token",
        client_id="tl-client",
        client_secret="tl-secret",
        send_scope_on_refresh=True,
    )


@pytest.fixture
def monzo_config() -> OAuthClientConfig:
    """Monzo-style grant config."""
    return OAuthClientConfig(
        name="monzo",
        token_url="https://api.monzo.test/oauth2/token",
        client_id="oauth2client_test",
        client_secret="mnzconf.test",
    )


@pytest.fixture
def seed_credential(store: TokenStore, box: SecretBox, clock: FakeClock) -> Callable[..., CredentialRecord]:
    """Factory fixture that stores an encrypted credential."""

    def _seed(
        user_id: str = "user_1",
        provider: str = "ob-amex",
        access_token: str = "access-old",
        refresh_token: str | None = "refresh-old",
        expires_in: int = 3600,
        scope: str = "info accounts balance cards offline_access",
    ) -> CredentialRecord:
        return store.upsert(
            user_id,
            provider,
            access_token_ciphertext=box.seal(access_token),
            refresh_token_ciphertext=box.seal(refresh_token) if refresh_token else None,
            expires_at=clock() + expires_in * 1000,
            scope=scope,
        )

    return _seed
