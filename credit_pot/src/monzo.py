"""Monzo API client for pots and pot transfers (write access).

Takes access tokens issued by the direct Monzo grant, never TrueLayer ones,
and works only with direct API account and pot ids.
"""

import logging
import secrets
from decimal import ROUND_HALF_UP, Decimal

import httpx

from credit_pot.src.config import MONZO_API_URL, POT_NAME_MARKERS
from credit_pot.src.errors import TransferError, UpstreamError
from credit_pot.src.models import (
    AccountBalance,
    DirectApiAccountId,
    DirectApiPotId,
    MonzoAccount,
    Pot,
    TransferResult,
)
from credit_pot.src.utils import now_ms

logger = logging.getLogger(__name__)


def is_credit_card_pot_name(name: str | None) -> bool:
    """Check a pot or account name against the credit card pot markers."""
    lowered = (name or "").lower()
    return any(marker in lowered for marker in POT_NAME_MARKERS)


def to_minor_units(amount: int | float | Decimal) -> int:
    """Round a magnitude to the nearest whole minor unit, halves away from zero."""
    return int(Decimal(str(abs(amount))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def new_dedupe_id(action: str) -> str:
    """Mint an idempotency key for one transfer attempt."""
    return f"pot-{action}-{now_ms()}-{secrets.token_hex(4)}"


class MonzoClient:
    """Accounts, pots and pot transfers via the Monzo API."""

    def __init__(self, client: httpx.Client, api_url: str = MONZO_API_URL) -> None:
        """Wrap an HTTP client; tokens are passed per call."""
        self.client = client
        self.api_url = api_url.rstrip("/")

    @staticmethod
    def _auth(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _get(self, access_token: str, path: str, params: dict | None = None) -> httpx.Response:
        try:
            return self.client.get(f"{self.api_url}{path}", params=params, headers=self._auth(access_token))
        except httpx.HTTPError as e:
            msg = f"Monzo GET {path} failed: {e}"
            raise UpstreamError(msg) from e

    def list_accounts(self, access_token: str, account_type: str | None = None) -> list[MonzoAccount]:
        """Fetch all accounts, optionally of one type."""
        params = {"account_type": account_type} if account_type else None
        resp = self._get(access_token, "/accounts", params)
        if not resp.is_success:
            msg = "Failed to fetch Monzo accounts"
            raise UpstreamError(msg, resp.status_code, resp.text)
        return [MonzoAccount.model_validate(a) for a in resp.json().get("accounts", [])]

    def find_open_account(self, access_token: str, account_id: DirectApiAccountId) -> MonzoAccount | None:
        """Return the account with this id if it exists and is not closed."""
        for account in self.list_accounts(access_token):
            if account.id == account_id and not account.closed:
                return account
        return None

    def find_current_account(self, access_token: str) -> MonzoAccount | None:
        """Return the open uk_retail account, the pots' parent account."""
        for account in self.list_accounts(access_token):
            if account.type == "uk_retail" and not account.closed:
                return account
        return None

    def get_balance(self, access_token: str, account_id: DirectApiAccountId) -> AccountBalance:
        """Fetch current balance for an account."""
        resp = self._get(access_token, "/balance", {"account_id": account_id})
        if not resp.is_success:
            msg = f"Failed to fetch Monzo balance for {account_id}"
            raise UpstreamError(msg, resp.status_code, resp.text)
        return AccountBalance.model_validate(resp.json())

    def list_pots(self, access_token: str, current_account_id: DirectApiAccountId | None = None) -> list[Pot]:
        """Fetch pots, optionally for one current account."""
        params = {"current_account_id": current_account_id} if current_account_id else None
        resp = self._get(access_token, "/pots", params)
        if not resp.is_success:
            msg = "Failed to fetch Monzo pots"
            raise UpstreamError(msg, resp.status_code, resp.text)
        return [Pot.model_validate(p) for p in resp.json().get("pots", [])]

    def get_pot_by_id(self, access_token: str, pot_id: DirectApiPotId) -> Pot | None:
        """Fetch one pot. Returns None if Monzo answers 404."""
        resp = self._get(access_token, f"/pots/{pot_id}")
        if resp.status_code == 404:
            logger.warning(f"Pot with ID {pot_id} not found")
            return None
        if not resp.is_success:
            msg = f"Failed to fetch Monzo pot {pot_id}"
            raise UpstreamError(msg, resp.status_code, resp.text)
        return Pot.model_validate(resp.json())

    def find_credit_card_pot(
        self, access_token: str, current_account_id: DirectApiAccountId | None = None
    ) -> Pot | None:
        """Find the live pot whose name marks it as the credit card pot."""
        for pot in self.list_pots(access_token, current_account_id):
            if not pot.deleted and is_credit_card_pot_name(pot.name):
                return pot
        return None

    def transfer(
        self,
        access_token: str,
        from_account_id: DirectApiAccountId,
        pot_id: DirectApiPotId,
        amount_minor: int | float | Decimal,
        dedupe_id: str | None = None,
    ) -> TransferResult:
        """Move money between the main account and a pot.

        Positive amounts deposit into the pot from ``from_account_id``,
        negative amounts withdraw from the pot into it. The magnitude is
        rounded to whole minor units; a zero magnitude is a no-op and makes
        no request.

        ``dedupe_id`` should only be passed to replay the exact same attempt
        after a network failure. Otherwise a fresh key is minted.

        Raises:
            TransferError: If Monzo rejects the transfer or the outcome is unknown.
        """
        magnitude = to_minor_units(amount_minor)
        if magnitude == 0:
            logger.info("Transfer amount rounds to zero, skipping")
            return TransferResult(action="noop", amount=0)

        is_deposit = amount_minor > 0
        action = "deposit" if is_deposit else "withdraw"
        dedupe_id = dedupe_id or new_dedupe_id(action)

        data = {"amount": str(magnitude), "dedupe_id": dedupe_id}
        if is_deposit:
            data["source_account_id"] = from_account_id
        else:
            data["destination_account_id"] = from_account_id

        logger.info(
            f"{'Depositing' if is_deposit else 'Withdrawing'} £{Decimal(magnitude) / 100:.2f} "
            f"{'into' if is_deposit else 'from'} pot {pot_id}..."
        )
        try:
            resp = self.client.put(
                f"{self.api_url}/pots/{pot_id}/{action}",
                data=data,
                headers=self._auth(access_token),
            )
        except httpx.HTTPError as e:
            msg = f"Pot {action} outcome unknown (dedupe_id={dedupe_id}): {e}"
            raise TransferError(msg, ambiguous=True) from e

        if not resp.is_success:
            logger.error(f"Monzo API error: {resp.text}")
            msg = f"Failed to {action}"
            raise TransferError(msg, resp.status_code, resp.text)

        pot = Pot.model_validate(resp.json())
        logger.info(f"{action.capitalize()} successful, new pot balance: £{pot.balance_pounds:.2f}")
        return TransferResult(action=action, amount=magnitude, dedupe_id=dedupe_id, pot=pot)
