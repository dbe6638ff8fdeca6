"""Shared utilities: secrets loading, logging, console and HTTP clients."""

import logging
import os
import time
from contextlib import contextmanager
from typing import Generator

import httpx
from rich.console import Console

from credit_pot.src.config import ENV_SECRETS_FILE, HTTP_TIMEOUT

console = Console()


def load_env_secrets() -> None:
    """Load variables from .env.secrets file into environment."""
    if ENV_SECRETS_FILE.exists():
        for raw_line in ENV_SECRETS_FILE.read_text().splitlines():
            line = raw_line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip())


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for CLI and scheduled runs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def mask(token: str | None, keep: int = 8) -> str:
    """Show only a short prefix of a secret for logging."""
    if not token:
        return "<none>"
    return f"{token[:keep]}..."


@contextmanager
def http_client(base_url: str = "", timeout: float = HTTP_TIMEOUT) -> Generator[httpx.Client, None, None]:
    """Create an HTTP client with a bounded timeout.

    Bearer tokens are passed per request, since one client serves several
    users and grants.
    """
    client = httpx.Client(base_url=base_url, timeout=timeout)
    try:
        yield client
    finally:
        client.close()
