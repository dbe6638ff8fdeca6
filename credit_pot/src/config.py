"""Configuration and paths for the credit card pot automation."""

import os
from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel

from credit_pot.src.errors import ConfigError

PROJECT_ROOT = Path(__file__).parent.parent.parent

# Data files
DB_FILE = PROJECT_ROOT / ".credit_pot.duckdb"
ENV_SECRETS_FILE = PROJECT_ROOT / ".env.secrets"

# Monzo API URLs
MONZO_API_URL = "https://api.monzo.com"
MONZO_AUTH_URL = "https://auth.monzo.com"
MONZO_TOKEN_URL = f"{MONZO_API_URL}/oauth2/token"

# TrueLayer URLs per environment
TRUELAYER_URLS = {
    "production": {
        "auth": "https://auth.truelayer.com",
        "token": "https://auth.truelayer.com/connect/token",
        "api": "https://api.truelayer.com/data/v1",
    },
    "sandbox": {
        "auth": "https://auth.truelayer-sandbox.com",
        "token": "https://auth.truelayer-sandbox.com/connect/token",
        "api": "https://api.truelayer-sandbox.com/data/v1",
    },
}
TRUELAYER_SCOPE = "info accounts balance cards offline_access"
TRUELAYER_PROVIDERS = "uk-ob-all uk-oauth-all"

REDIRECT_URI = "http://localhost:8080/callback"

# Provider keys
MONZO = "monzo"  # direct API grant, write access
OB_MONZO = "ob-monzo"  # Monzo via TrueLayer, read access

# Pot matching
POT_NAME_MARKERS = ("credit card", "💳")

# Transfers
DEAD_BAND = Decimal("1.00")
HTTP_TIMEOUT = 30.0

# SecretBox
PBKDF2_ITERATIONS = 100_000


def db_path_from_env() -> Path:
    """Database path, overridable with CREDIT_POT_DB. Needs no other settings."""
    return Path(os.environ.get("CREDIT_POT_DB", DB_FILE))


def _clean(value: str | None) -> str:
    """Strip whitespace and stray newlines pasted into secrets."""
    return (value or "").replace("\r", "").replace("\n", "").strip()


class Settings(BaseModel):
    """Runtime settings, read from the environment."""

    encryption_key: str
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_environment: str = "production"
    monzo_client_id: str = ""
    monzo_client_secret: str = ""
    db_path: Path = DB_FILE
    http_timeout: float = HTTP_TIMEOUT

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ConfigError: If ENCRYPTION_KEY is unset or the TrueLayer environment is unknown.
        """
        key = _clean(os.environ.get("ENCRYPTION_KEY"))
        if not key:
            msg = "ENCRYPTION_KEY is not set. Add it to .env.secrets or the environment."
            raise ConfigError(msg)

        environment = _clean(os.environ.get("TRUELAYER_ENVIRONMENT")) or "production"
        if environment not in TRUELAYER_URLS:
            msg = f"TRUELAYER_ENVIRONMENT must be one of {sorted(TRUELAYER_URLS)}, got {environment!r}"
            raise ConfigError(msg)

        timeout = os.environ.get("CREDIT_POT_HTTP_TIMEOUT")
        return cls(
            encryption_key=key,
            truelayer_client_id=_clean(os.environ.get("TRUELAYER_CLIENT_ID")),
            truelayer_client_secret=_clean(os.environ.get("TRUELAYER_CLIENT_SECRET")),
            truelayer_environment=environment,
            monzo_client_id=_clean(os.environ.get("MONZO_CLIENT_ID")),
            monzo_client_secret=_clean(os.environ.get("MONZO_CLIENT_SECRET")),
            db_path=db_path_from_env(),
            http_timeout=float(timeout) if timeout else HTTP_TIMEOUT,
        )

    @property
    def truelayer_urls(self) -> dict[str, str]:
        """Auth, token and data API URLs for the configured TrueLayer environment."""
        return TRUELAYER_URLS[self.truelayer_environment]
