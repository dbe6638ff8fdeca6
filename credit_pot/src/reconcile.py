"""Daily reconciliation of credit card debt against the Monzo credit card pot.

For every user with a live credential:

1. Sum ``current`` across the user's credit cards (TrueLayer).
2. Find the Monzo main account and credit card pot through the ``ob-monzo``
   TrueLayer connection and read their balances.
3. ``transfer = total card debt - pot balance``, zero inside the dead-band.
4. Refuse deposits the main account cannot cover in full.
5. With a direct Monzo grant, resolve the pot by direct API id and move the
   money. Without one, log what would have happened (dry run).

An active automation rule narrows step 1 to the rule's cards and replaces
step 2: the rule's source account and pot are read through the Monzo API,
so the balance compared is the balance of the pot that receives the money.

Users are independent: a failure for one is logged and the run moves on.
"""

import logging
from collections.abc import Callable
from decimal import Decimal

from pydantic import BaseModel

from credit_pot.src.config import DEAD_BAND, MONZO, OB_MONZO
from credit_pot.src.errors import NoCredentialError, RefreshFailedError, UpstreamError
from credit_pot.src.models import (
    AggregatorAccount,
    AutomationRule,
    Balance,
    DirectApiAccountId,
    MonzoAccount,
    OutcomeStatus,
    Pot,
    RunReport,
    UserOutcome,
)
from credit_pot.src.monzo import MonzoClient, is_credit_card_pot_name, to_minor_units
from credit_pot.src.rule_store import RuleStore
from credit_pot.src.token_lifecycle import TokenLifecycleManager
from credit_pot.src.token_store import TokenStore
from credit_pot.src.truelayer import TrueLayerClient
from credit_pot.src.utils import now_ms

logger = logging.getLogger(__name__)

# Errors that cost us one card or provider, not the whole user
PARTIAL_FAILURES = (UpstreamError, RefreshFailedError, NoCredentialError)


def _money(value: int | float | Decimal) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def compute_transfer_amount(
    total_credit_card_balance: int | float | Decimal,
    current_pot_balance: int | float | Decimal,
) -> Decimal:
    """Amount to move into (positive) or out of (negative) the pot, in major units.

    Differences smaller than the dead-band are treated as zero.
    """
    amount = _money(total_credit_card_balance) - _money(current_pot_balance)
    if abs(amount) < DEAD_BAND:
        return Decimal(0)
    return amount


class MonzoSnapshot(BaseModel):
    """Main account and pot as seen through TrueLayer."""

    main_account: AggregatorAccount
    main_balance: Balance | None = None
    pot_account: AggregatorAccount | None = None
    pot_balance: Balance | None = None

    @property
    def pot_current(self) -> Decimal:
        """Pot balance, zero if unknown."""
        return self.pot_balance.current if self.pot_balance else Decimal(0)

    @property
    def main_available(self) -> Decimal:
        """Main account available balance, zero if unknown."""
        if self.main_balance and self.main_balance.available is not None:
            return self.main_balance.available
        return Decimal(0)


class TransferTarget(BaseModel):
    """Direct API account and pot a transfer moves money between."""

    access_token: str
    account: MonzoAccount
    pot: Pot
    available: Decimal | None = None  # account balance in major units, when read via Monzo


class ReconciliationJob:
    """One reconciliation run over every user holding a live credential."""

    def __init__(
        self,
        store: TokenStore,
        truelayer: TrueLayerClient,
        monzo: MonzoClient,
        monzo_lifecycle: TokenLifecycleManager,
        rules: RuleStore | None = None,
        dry_run: bool = False,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Wire the job to its collaborators."""
        self.store = store
        self.truelayer = truelayer
        self.monzo = monzo
        self.monzo_lifecycle = monzo_lifecycle
        self.rules = rules
        self.dry_run = dry_run
        self.clock = clock

    def run(self, invoked_at: int | None = None) -> RunReport:
        """Process every user once.

        Failing to enumerate users aborts the run. Anything that goes wrong
        for a single user is logged and recorded as FAILED.
        """
        report = RunReport(invoked_at=self.clock() if invoked_at is None else invoked_at)
        logger.info(f"Scheduled pot transfer started at {report.invoked_at}")

        user_ids = self.store.list_user_ids()
        if not user_ids:
            logger.info("No users with tokens found")
            return report

        logger.info(f"Processing {len(user_ids)} user(s)")
        for user_id in user_ids:
            logger.info(f"Processing user: {user_id}")
            try:
                outcome = self.reconcile_user(user_id)
            except Exception as e:
                logger.exception(f"Error processing user {user_id}")
                outcome = UserOutcome(user_id=user_id, status=OutcomeStatus.FAILED, detail=str(e))
            report.outcomes.append(outcome)

        logger.info(
            f"Scheduled pot transfer completed: "
            f"{report.count(OutcomeStatus.TRANSFERRED)} transferred, "
            f"{report.count(OutcomeStatus.FAILED)} failed, {len(report.outcomes)} total"
        )
        return report

    # ==========================================
    # PER USER
    # ==========================================

    def reconcile_user(self, user_id: str) -> UserOutcome:
        """Run steps (a) to (f) for one user, strictly in order."""

        def skip(
            detail: str,
            status: OutcomeStatus = OutcomeStatus.SKIPPED,
            amount: Decimal | None = None,
        ) -> UserOutcome:
            logger.info(f"  {detail}")
            return UserOutcome(user_id=user_id, status=status, amount=amount, detail=detail)

        providers = {record.provider for record in self.store.get_all(user_id)}
        rule = self._active_rule(user_id)

        card_providers = sorted(p for p in providers if p not in (MONZO, OB_MONZO))
        if rule:
            covered = {card.provider for card in rule.credit_cards}
            card_providers = [p for p in card_providers if p in covered]
        if not card_providers:
            return skip("No credit card providers found, skipping user")
        if OB_MONZO not in providers:
            return skip(f"No {OB_MONZO} connection found, skipping user")

        total = self._total_credit_card_balance(user_id, card_providers, rule)

        snapshot = self._monzo_snapshot(user_id, rule)
        if isinstance(snapshot, str):
            return skip(snapshot)

        target = None
        if rule:
            target = self._rule_target(user_id, rule)
            if isinstance(target, str):
                return skip(target)
            if target is None and snapshot.pot_account is None:
                return skip(f"Pot {rule.target_pot.pot_name!r} not found, skipping user")

        if target:
            pot_current = target.pot.balance_pounds
            main_available = target.available if target.available is not None else Decimal(0)
        else:
            pot_current = snapshot.pot_current
            main_available = snapshot.main_available

        amount = compute_transfer_amount(total, pot_current)
        if amount == 0:
            return skip("No transfer needed, balances are aligned", OutcomeStatus.ALIGNED, Decimal(0))

        logger.info("  Transfer summary:")
        logger.info(f"    Credit card debt: £{total:.2f}")
        logger.info(f"    Current pot balance: £{pot_current:.2f}")
        logger.info(f"    Main account available: £{main_available:.2f}")
        logger.info(f"    Transfer needed: £{amount:.2f}")

        if amount > 0 and amount > main_available:
            return skip(
                f"Insufficient funds in main account (need £{amount:.2f}, have £{main_available:.2f})",
                OutcomeStatus.INSUFFICIENT_FUNDS,
                amount,
            )

        if rule and amount > 0:
            minimum = Decimal(rule.minimum_bank_balance) / 100
            if main_available - amount < minimum:
                return skip(
                    f"Deposit would leave main account below its £{minimum:.2f} minimum",
                    OutcomeStatus.BELOW_MINIMUM,
                    amount,
                )

        return self._execute(user_id, amount, rule, target)

    def _active_rule(self, user_id: str) -> AutomationRule | None:
        if self.rules is None:
            return None
        active = self.rules.active(user_id)
        if len(active) > 1:
            logger.warning(f"  User {user_id} has {len(active)} active rules, using {active[0].id}")
        return active[0] if active else None

    def _total_credit_card_balance(
        self, user_id: str, providers: list[str], rule: AutomationRule | None
    ) -> Decimal:
        """Sum card balances, skipping cards and providers that fail."""
        wanted = {(c.provider, c.account_id) for c in rule.credit_cards} if rule else None
        total = Decimal(0)
        cards_found = 0

        for provider in providers:
            try:
                cards = self.truelayer.list_cards(user_id, provider)
            except PARTIAL_FAILURES as e:
                logger.warning(f"  Error getting cards from {provider}: {e}")
                continue
            logger.info(f"  {provider}: Found {len(cards)} card(s)")

            for card in cards:
                if wanted is not None and (provider, card.account_id) not in wanted:
                    continue
                try:
                    balance = self.truelayer.get_card_balance(user_id, card.account_id, provider)
                except PARTIAL_FAILURES as e:
                    logger.warning(f"  Error getting balance for card {card.account_id}: {e}")
                    continue
                if balance:
                    logger.info(f"    - {card.display_name}: {balance.currency} {balance.current}")
                    total += balance.current
                    cards_found += 1

        logger.info(f"  Total credit card balance: £{total:.2f} (from {cards_found} cards)")
        return total

    def _monzo_snapshot(self, user_id: str, rule: AutomationRule | None) -> MonzoSnapshot | str:
        """Locate main account and pot via TrueLayer, or say why not.

        Under a rule the pot is matched by the rule's pot name and may be
        missing; the rule's pot is read through the Monzo API when possible.
        """
        accounts = self.truelayer.list_accounts(user_id, OB_MONZO)
        main = next((a for a in accounts if a.account_type == "TRANSACTION"), None)
        if main is None:
            return "No Monzo main account found, skipping user"

        savings = [a for a in accounts if a.account_type == "SAVINGS"]
        if rule:
            wanted = rule.target_pot.pot_name.casefold()
            pot = next((a for a in savings if (a.display_name or "").casefold() == wanted), None)
        else:
            pot = next((a for a in savings if is_credit_card_pot_name(a.display_name)), None)
            if pot is None:
                return "No credit card pot found, skipping user"

        return MonzoSnapshot(
            main_account=main,
            main_balance=self.truelayer.get_account_balance(user_id, main.account_id, OB_MONZO),
            pot_account=pot,
            pot_balance=(
                self.truelayer.get_account_balance(user_id, pot.account_id, OB_MONZO) if pot else None
            ),
        )

    def _rule_target(self, user_id: str, rule: AutomationRule) -> TransferTarget | str | None:
        """Resolve the rule's source account and pot via the Monzo API (read only).

        Returns None without a direct Monzo grant, or a reason to skip the user.
        """
        if rule.source_account.provider != MONZO:
            provider = rule.source_account.provider
            return f"Rule source account provider {provider!r} is not {MONZO}, skipping user"
        try:
            access_token = self.monzo_lifecycle.get_valid_access_token(user_id, MONZO)
        except NoCredentialError:
            return None

        account_id = DirectApiAccountId(rule.source_account.account_id)
        account = self.monzo.find_open_account(access_token, account_id)
        if account is None:
            return f"Rule source account {account_id} is not an open Monzo account, skipping user"

        pot = self.monzo.get_pot_by_id(access_token, rule.target_pot.pot_id)
        if pot is None or pot.deleted:
            return f"Rule pot {rule.target_pot.pot_id} not found via Monzo API, skipping user"

        balance = self.monzo.get_balance(access_token, account.id)
        return TransferTarget(
            access_token=access_token, account=account, pot=pot, available=balance.balance_pounds
        )

    def _default_target(self, user_id: str) -> TransferTarget | str | None:
        """Current account and name-matched pot via the Monzo API.

        Returns None without a direct Monzo grant, or a reason to skip the user.
        """
        try:
            access_token = self.monzo_lifecycle.get_valid_access_token(user_id, MONZO)
        except NoCredentialError:
            return None

        account = self.monzo.find_current_account(access_token)
        if account is None:
            return "No open Monzo current account found via Monzo API"
        pot = self.monzo.find_credit_card_pot(access_token, account.id)
        if pot is None:
            return "No credit card pot found via Monzo API"
        return TransferTarget(access_token=access_token, account=account, pot=pot)

    def _execute(
        self,
        user_id: str,
        amount: Decimal,
        rule: AutomationRule | None,
        target: TransferTarget | None,
    ) -> UserOutcome:
        """Transfer with the direct Monzo grant, or fall back to a dry run."""
        intent = f"£{abs(amount):.2f} {'to' if amount > 0 else 'from'} pot"

        def dry_run(reason: str) -> UserOutcome:
            logger.info(f"  {reason}")
            logger.info(f"  Would have transferred {intent}")
            return UserOutcome(
                user_id=user_id, status=OutcomeStatus.DRY_RUN, amount=amount, detail=f"Would transfer {intent}"
            )

        if self.dry_run:
            return dry_run("Dry run requested")

        if target is None:
            # A rule without a target means no Monzo grant was found
            resolved = self._default_target(user_id) if rule is None else None
            if resolved is None:
                return dry_run("No Monzo OAuth credential found. User needs to enable automation.")
            if isinstance(resolved, str):
                logger.warning(f"  {resolved}, would have transferred {intent}")
                return UserOutcome(
                    user_id=user_id, status=OutcomeStatus.SKIPPED, amount=amount, detail=resolved
                )
            target = resolved

        logger.info("  Executing transfer...")
        minor = to_minor_units(amount * 100)
        result = self.monzo.transfer(
            target.access_token, target.account.id, target.pot.id, minor if amount > 0 else -minor
        )
        return UserOutcome(
            user_id=user_id,
            status=OutcomeStatus.TRANSFERRED,
            amount=amount,
            detail=f"{result.action} {result.amount} minor units ({result.dedupe_id})",
        )
