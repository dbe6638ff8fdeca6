"""Tests for MonzoClient pots and transfers."""

from decimal import Decimal

import httpx
import pytest

from credit_pot.src.errors import TransferError, UpstreamError
from credit_pot.src.monzo import MonzoClient, is_credit_card_pot_name, new_dedupe_id, to_minor_units

API = "https://api.monzo.test"


def make_pot(pot_id: str = "pot_cc", name: str = "💳 Credit Cards", balance: int = 0, **kwargs) -> dict:
    """Create a minimal pot dict for testing."""
    return {"id": pot_id, "name": name, "balance": balance, "currency": "GBP", **kwargs}


@pytest.fixture
def monzo(mock_client) -> MonzoClient:
    """Monzo client on a mock HTTP client."""
    return MonzoClient(mock_client, api_url=API)


class TestHelpers:
    """Rounding, dedupe ids and pot name matching."""

    @pytest.mark.parametrize(
        ("amount", "expected"),
        [(12000, 12000), (-4000, 4000), (0.4, 0), (0.5, 1), (-0.5, 1), (Decimal("1250.49"), 1250)],
    )
    def test_to_minor_units(self, amount, expected) -> None:
        """Magnitudes round half away from zero."""
        assert to_minor_units(amount) == expected

    def test_dedupe_ids_are_unique(self) -> None:
        """Each attempt gets its own key."""
        ids = {new_dedupe_id("deposit") for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("pot-deposit-") for i in ids)

    @pytest.mark.parametrize(
        ("name", "expected"),
        [("Credit Card", True), ("AMEX credit card pot", True), ("💳", True), ("Holiday", False), (None, False)],
    )
    def test_pot_name_markers(self, name, expected) -> None:
        """Names match case-insensitively on 'credit card' or the card emoji."""
        assert is_credit_card_pot_name(name) is expected


class TestTransfer:
    """Pot deposits and withdrawals."""

    def test_deposit(self, monzo, mock_client, make_response) -> None:
        """Positive amounts deposit from the source account."""
        mock_client.put.return_value = make_response(json=make_pot(balance=12000))

        result = monzo.transfer("token", "acc_main", "pot_cc", 12000)

        assert result.action == "deposit"
        assert result.amount == 12000
        assert result.pot.balance_pounds == Decimal(120)
        args, kwargs = mock_client.put.call_args
        assert args[0] == f"{API}/pots/pot_cc/deposit"
        assert kwargs["data"]["amount"] == "12000"
        assert kwargs["data"]["source_account_id"] == "acc_main"
        assert kwargs["data"]["dedupe_id"] == result.dedupe_id
        assert kwargs["headers"] == {"Authorization": "Bearer token"}

    def test_withdraw(self, monzo, mock_client, make_response) -> None:
        """Negative amounts withdraw into the destination account."""
        mock_client.put.return_value = make_response(json=make_pot(balance=0))

        result = monzo.transfer("token", "acc_main", "pot_cc", -4000)

        assert result.action == "withdraw"
        args, kwargs = mock_client.put.call_args
        assert args[0] == f"{API}/pots/pot_cc/withdraw"
        assert kwargs["data"]["amount"] == "4000"
        assert kwargs["data"]["destination_account_id"] == "acc_main"
        assert "source_account_id" not in kwargs["data"]

    @pytest.mark.parametrize("amount", [0, 0.4, -0.3])
    def test_zero_magnitude_is_noop(self, monzo, mock_client, amount) -> None:
        """Amounts rounding to zero make no request."""
        result = monzo.transfer("token", "acc_main", "pot_cc", amount)

        assert result.action == "noop"
        assert not result.executed
        mock_client.put.assert_not_called()

    def test_fractional_amount_is_rounded(self, monzo, mock_client, make_response) -> None:
        """The amount sent is a whole number of minor units."""
        mock_client.put.return_value = make_response(json=make_pot())

        monzo.transfer("token", "acc_main", "pot_cc", Decimal("99.5"))

        assert mock_client.put.call_args.kwargs["data"]["amount"] == "100"

    def test_fresh_dedupe_id_per_call(self, monzo, mock_client, make_response) -> None:
        """Two transfers never share an idempotency key."""
        mock_client.put.return_value = make_response(json=make_pot())

        first = monzo.transfer("token", "acc_main", "pot_cc", 100)
        second = monzo.transfer("token", "acc_main", "pot_cc", 100)

        assert first.dedupe_id != second.dedupe_id

    def test_explicit_dedupe_id_is_used(self, monzo, mock_client, make_response) -> None:
        """A replayed attempt keeps its key."""
        mock_client.put.return_value = make_response(json=make_pot())

        monzo.transfer("token", "acc_main", "pot_cc", 100, dedupe_id="pot-deposit-1-abcd")

        assert mock_client.put.call_args.kwargs["data"]["dedupe_id"] == "pot-deposit-1-abcd"

    def test_rejected_transfer(self, monzo, mock_client, make_response) -> None:
        """Non-2xx responses raise TransferError with the body."""
        mock_client.put.return_value = make_response(400, json={"code": "bad_request.insufficient_funds"})

        with pytest.raises(TransferError) as exc:
            monzo.transfer("token", "acc_main", "pot_cc", 100)

        assert exc.value.status_code == 400
        assert "insufficient_funds" in exc.value.body
        assert not exc.value.ambiguous

    def test_network_failure_is_ambiguous(self, monzo, mock_client) -> None:
        """A transport error leaves the outcome unknown."""
        mock_client.put.side_effect = httpx.ConnectError("reset")

        with pytest.raises(TransferError) as exc:
            monzo.transfer("token", "acc_main", "pot_cc", 100)

        assert exc.value.ambiguous


class TestLookups:
    """Accounts and pots."""

    def test_find_current_account(self, monzo, mock_client, make_response) -> None:
        """The open uk_retail account is the current account."""
        mock_client.get.return_value = make_response(
            json={
                "accounts": [
                    {"id": "acc_old", "type": "uk_retail", "closed": True},
                    {"id": "acc_joint", "type": "uk_retail_joint", "closed": False},
                    {"id": "acc_main", "type": "uk_retail", "closed": False},
                ]
            }
        )

        assert monzo.find_current_account("token").id == "acc_main"

    def test_find_credit_card_pot_skips_deleted(self, monzo, mock_client, make_response) -> None:
        """Deleted pots never match."""
        mock_client.get.return_value = make_response(
            json={
                "pots": [
                    make_pot("pot_old", "Credit card", deleted=True),
                    make_pot("pot_hol", "Holiday"),
                    make_pot("pot_cc", "💳 Credit Cards"),
                ]
            }
        )

        pot = monzo.find_credit_card_pot("token", "acc_main")

        assert pot.id == "pot_cc"
        assert mock_client.get.call_args.kwargs["params"] == {"current_account_id": "acc_main"}

    def test_get_pot_by_id_not_found(self, monzo, mock_client, make_response) -> None:
        """404 means no such pot."""
        mock_client.get.return_value = make_response(404, text="not found")

        assert monzo.get_pot_by_id("token", "pot_missing") is None

    def test_get_pot_by_id_error(self, monzo, mock_client, make_response) -> None:
        """Other failures raise."""
        mock_client.get.return_value = make_response(503, text="down")

        with pytest.raises(UpstreamError):
            monzo.get_pot_by_id("token", "pot_cc")

    def test_find_open_account(self, monzo, mock_client, make_response) -> None:
        """Accounts are matched by id and must still be open."""
        mock_client.get.return_value = make_response(
            json={
                "accounts": [
                    {"id": "acc_main", "type": "uk_retail", "closed": False},
                    {"id": "acc_joint", "type": "uk_retail_joint", "closed": False},
                    {"id": "acc_old", "type": "uk_retail_joint", "closed": True},
                ]
            }
        )

        assert monzo.find_open_account("token", "acc_joint").type == "uk_retail_joint"
        assert monzo.find_open_account("token", "acc_old") is None
        assert monzo.find_open_account("token", "acc_missing") is None

    def test_get_balance(self, monzo, mock_client, make_response) -> None:
        """Balances are minor units with a pounds view."""
        mock_client.get.return_value = make_response(
            json={"balance": 12345, "total_balance": 20000, "currency": "GBP", "spend_today": -500}
        )

        balance = monzo.get_balance("token", "acc_main")

        assert balance.balance_pounds == Decimal("123.45")
        args, kwargs = mock_client.get.call_args
        assert args[0] == f"{API}/balance"
        assert kwargs["params"] == {"account_id": "acc_main"}

    def test_get_balance_error(self, monzo, mock_client, make_response) -> None:
        """A failed balance read raises."""
        mock_client.get.return_value = make_response(403, text="forbidden")

        with pytest.raises(UpstreamError):
            monzo.get_balance("token", "acc_main")
