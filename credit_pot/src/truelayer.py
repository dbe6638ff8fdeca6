"""TrueLayer Data API client (read-only aggregator).

Every call gets its access token from the TrueLayer lifecycle manager. On a
401 the token is refreshed once, even if it looked unexpired locally, and
the request is retried exactly once. A second 401 is an AuthorizationError.
"""

import logging
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from credit_pot.src.config import TRUELAYER_URLS
from credit_pot.src.errors import AuthorizationError, UpstreamError
from credit_pot.src.models import AggregatorAccount, AggregatorAccountId, Balance, Card
from credit_pot.src.token_lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "truelayer"

M = TypeVar("M", bound=BaseModel)


class TrueLayerClient:
    """Cards, accounts and balances for a user's TrueLayer connections."""

    def __init__(
        self,
        lifecycle: TokenLifecycleManager,
        client: httpx.Client,
        api_url: str = TRUELAYER_URLS["production"]["api"],
    ) -> None:
        """Wire the client to the TrueLayer token lifecycle."""
        self.lifecycle = lifecycle
        self.client = client
        self.api_url = api_url.rstrip("/")

    def _send(self, path: str, access_token: str) -> httpx.Response:
        try:
            return self.client.get(
                f"{self.api_url}{path}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            msg = f"TrueLayer GET {path} failed: {e}"
            raise UpstreamError(msg) from e

    def _get(self, user_id: str, provider: str, path: str, model: type[M]) -> list[M]:
        """GET a Data API resource and parse its ``results`` list.

        Malformed bodies raise UpstreamError like any other bad reply, so
        callers can skip the one resource.
        """
        token = self.lifecycle.get_valid_access_token(user_id, provider)
        resp = self._send(path, token)

        if resp.status_code == 401:
            logger.info(f"TrueLayer returned 401 for {path} ({provider}), refreshing token")
            token = self.lifecycle.refresh(user_id, provider, rejected_token=token)
            resp = self._send(path, token)
            if resp.status_code == 401:
                raise AuthorizationError(
                    provider, f"access token rejected twice for {path}", resp.status_code, resp.text
                )

        if not resp.is_success:
            msg = f"TrueLayer GET {path} failed"
            raise UpstreamError(msg, resp.status_code, resp.text)

        try:
            results = resp.json().get("results") or []
            return [model.model_validate(item) for item in results]
        except (ValidationError, ValueError, AttributeError, TypeError) as e:
            logger.warning(f"Unexpected TrueLayer payload for {path}: {e}")
            msg = f"TrueLayer GET {path} returned an unexpected body"
            raise UpstreamError(msg, resp.status_code, resp.text) from e

    def list_cards(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> list[Card]:
        """Fetch all credit cards for a connection."""
        return self._get(user_id, provider, "/cards", Card)

    def get_card_balance(
        self, user_id: str, account_id: AggregatorAccountId, provider: str = DEFAULT_PROVIDER
    ) -> Balance | None:
        """Fetch a card's balance, or None if TrueLayer reports none."""
        results = self._get(user_id, provider, f"/cards/{account_id}/balance", Balance)
        return results[0] if results else None

    def list_accounts(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> list[AggregatorAccount]:
        """Fetch all bank accounts for a connection."""
        return self._get(user_id, provider, "/accounts", AggregatorAccount)

    def get_account_balance(
        self, user_id: str, account_id: AggregatorAccountId, provider: str = DEFAULT_PROVIDER
    ) -> Balance | None:
        """Fetch an account's balance, or None if TrueLayer reports none."""
        results = self._get(user_id, provider, f"/accounts/{account_id}/balance", Balance)
        return results[0] if results else None
