"""Construction of the token core and the scheduled entry point."""

from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator

from credit_pot.src.config import MONZO_API_URL, MONZO_TOKEN_URL, Settings
from credit_pot.src.database import CredentialDatabase
from credit_pot.src.models import RunReport
from credit_pot.src.monzo import MonzoClient
from credit_pot.src.reconcile import ReconciliationJob
from credit_pot.src.rule_store import RuleStore
from credit_pot.src.secret_box import SecretBox
from credit_pot.src.token_lifecycle import LockRegistry, OAuthClientConfig, TokenLifecycleManager
from credit_pot.src.token_store import TokenStore
from credit_pot.src.truelayer import TrueLayerClient
from credit_pot.src.utils import configure_logging, http_client, load_env_secrets, now_ms


@dataclass
class Services:
    """Everything a command or scheduled run needs, built once per invocation."""

    settings: Settings
    database: CredentialDatabase
    store: TokenStore
    rules: RuleStore
    truelayer_lifecycle: TokenLifecycleManager
    monzo_lifecycle: TokenLifecycleManager
    truelayer: TrueLayerClient
    monzo: MonzoClient

    def lifecycle_for(self, provider: str) -> TokenLifecycleManager:
        """Pick the manager that owns a provider key's grant type."""
        return self.monzo_lifecycle if provider == "monzo" else self.truelayer_lifecycle

    def job(self, dry_run: bool = False) -> ReconciliationJob:
        """Build a reconciliation job over these services."""
        return ReconciliationJob(
            store=self.store,
            truelayer=self.truelayer,
            monzo=self.monzo,
            monzo_lifecycle=self.monzo_lifecycle,
            rules=self.rules,
            dry_run=dry_run,
        )


@contextmanager
def open_services(
    settings: Settings, clock: Callable[[], int] = now_ms
) -> Generator[Services, None, None]:
    """Build the token core around one shared HTTP client."""
    database = CredentialDatabase(settings.db_path)
    store = TokenStore(database, clock=clock)
    box = SecretBox(settings.encryption_key)
    # One registry for both managers: keys are (user_id, provider), never shared across grants
    locks = LockRegistry()
    urls = settings.truelayer_urls

    with http_client(timeout=settings.http_timeout) as client:
        truelayer_lifecycle = TokenLifecycleManager(
            OAuthClientConfig(
                name="truelayer",
                token_url=urls["token"],
                client_id=settings.truelayer_client_id,
                client_secret=settings.truelayer_client_secret,
                send_scope_on_refresh=True,
            ),
            store,
            box,
            client,
            locks=locks,
            clock=clock,
        )
        monzo_lifecycle = TokenLifecycleManager(
            OAuthClientConfig(
                name="monzo",
                token_url=MONZO_TOKEN_URL,
                client_id=settings.monzo_client_id,
                client_secret=settings.monzo_client_secret,
            ),
            store,
            box,
            client,
            locks=locks,
            clock=clock,
        )
        yield Services(
            settings=settings,
            database=database,
            store=store,
            rules=RuleStore(database, clock=clock),
            truelayer_lifecycle=truelayer_lifecycle,
            monzo_lifecycle=monzo_lifecycle,
            truelayer=TrueLayerClient(truelayer_lifecycle, client, api_url=urls["api"]),
            monzo=MonzoClient(client, api_url=MONZO_API_URL),
        )


def run_scheduled(invoked_at: int | None = None) -> RunReport:
    """Entry point for the daily scheduler. Fatal errors propagate."""
    load_env_secrets()
    configure_logging()
    settings = Settings.from_env()
    with open_services(settings) as services:
        return services.job().run(invoked_at)
