"""Pydantic models for credentials, provider data and automation rules."""

import uuid
from decimal import Decimal
from enum import StrEnum
from typing import Literal, NewType

from pydantic import BaseModel, Field

# Aggregator (TrueLayer) and direct API (Monzo) ids live in separate
# namespaces and must never be compared with each other.
AggregatorAccountId = NewType("AggregatorAccountId", str)
DirectApiAccountId = NewType("DirectApiAccountId", str)
DirectApiPotId = NewType("DirectApiPotId", str)


# ==========================================
# CREDENTIALS
# ==========================================


class CredentialRecord(BaseModel):
    """Encrypted grant as persisted, one live record per user and provider."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    provider: str
    access_token_ciphertext: str
    refresh_token_ciphertext: str | None = None  # some grants never issue one
    expires_at: int  # epoch ms
    scope: str = ""
    created_at: int
    updated_at: int
    deleted: bool = False
    deleted_at: int | None = None


class DecryptedCredential(BaseModel):
    """Plaintext grant, held only for the duration of one call."""

    access_token: str
    refresh_token: str | None = None
    expires_at: int
    scope: str = ""

    def is_expired(self, now: int) -> bool:
        """Check expiry against a wall clock in epoch ms."""
        return now >= self.expires_at


class TokenResponse(BaseModel):
    """Token endpoint reply (authorization code or refresh grant)."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int = 3600
    token_type: str = "Bearer"
    scope: str | None = None

    model_config = {"extra": "ignore"}


class CredentialState(StrEnum):
    """Lifecycle state of a (user, provider) credential."""

    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    MISSING = "missing"


# ==========================================
# TRUELAYER (read-only aggregator)
# ==========================================


class Balance(BaseModel):
    """Balance snapshot in major units, as TrueLayer reports it."""

    current: Decimal
    available: Decimal | None = None
    currency: str = "GBP"
    credit_limit: Decimal | None = None  # cards only

    model_config = {"extra": "ignore"}


class Card(BaseModel):
    """A credit card visible through TrueLayer."""

    account_id: AggregatorAccountId
    display_name: str | None = None
    card_network: str | None = None
    card_type: str | None = None
    partial_card_number: str | None = None
    currency: str = "GBP"

    model_config = {"extra": "ignore"}


class AggregatorAccount(BaseModel):
    """A bank account visible through TrueLayer (TRANSACTION, SAVINGS, ...)."""

    account_id: AggregatorAccountId
    account_type: str
    display_name: str | None = None
    currency: str = "GBP"

    model_config = {"extra": "ignore"}


# ==========================================
# MONZO (direct API, write access)
# ==========================================


class MonzoAccount(BaseModel):
    """A Monzo account as returned by the direct API."""

    id: DirectApiAccountId
    type: str  # uk_retail, uk_retail_joint, uk_monzo_flex
    description: str | None = None
    closed: bool = False
    currency: str = "GBP"

    model_config = {"extra": "ignore"}


class Pot(BaseModel):
    """A savings pot."""

    id: DirectApiPotId
    name: str
    balance: int  # In minor units
    currency: str = "GBP"
    type: str | None = None
    deleted: bool = False
    locked: bool = False
    current_account_id: DirectApiAccountId | None = None

    model_config = {"extra": "ignore"}

    @property
    def balance_pounds(self) -> Decimal:
        """Get balance in pounds."""
        return Decimal(self.balance) / 100


class AccountBalance(BaseModel):
    """Balance of a Monzo account as returned by the direct API."""

    balance: int  # In minor units
    total_balance: int | None = None
    currency: str = "GBP"
    spend_today: int | None = None

    model_config = {"extra": "ignore"}

    @property
    def balance_pounds(self) -> Decimal:
        """Get balance in pounds."""
        return Decimal(self.balance) / 100


class TransferResult(BaseModel):
    """Outcome of a pot deposit or withdrawal."""

    action: Literal["deposit", "withdraw", "noop"]
    amount: int  # minor units, always >= 0
    dedupe_id: str | None = None
    pot: Pot | None = None  # pot as returned after the transfer

    @property
    def executed(self) -> bool:
        """True if money moved."""
        return self.action != "noop"


# ==========================================
# AUTOMATION RULES
# ==========================================


class SourceAccount(BaseModel):
    """Account money is moved from."""

    provider: str
    account_id: str


class TargetPot(BaseModel):
    """Pot money is moved into, by direct API pot id."""

    pot_id: DirectApiPotId
    pot_name: str


class RuleCard(BaseModel):
    """A credit card whose balance a rule covers."""

    provider: str
    account_id: AggregatorAccountId
    display_name: str = ""
    partial_card_number: str = ""


class AutomationRule(BaseModel):
    """User-defined automation, consumed read-only by the reconciliation job."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    is_active: bool = True
    source_account: SourceAccount
    target_pot: TargetPot
    credit_cards: list[RuleCard] = Field(default_factory=list)
    minimum_bank_balance: int = 0  # minor units
    transfer_type: Literal["full_balance"] = "full_balance"
    created_at: int = 0
    updated_at: int = 0


# ==========================================
# RECONCILIATION
# ==========================================


class OutcomeStatus(StrEnum):
    """What happened for one user during a reconciliation run."""

    TRANSFERRED = "transferred"
    DRY_RUN = "dry_run"
    ALIGNED = "aligned"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    BELOW_MINIMUM = "below_minimum"
    SKIPPED = "skipped"
    FAILED = "failed"


class UserOutcome(BaseModel):
    """Per-user result of a reconciliation run."""

    user_id: str
    status: OutcomeStatus
    amount: Decimal | None = None  # major units, positive = deposit
    detail: str = ""


class RunReport(BaseModel):
    """Result of one reconciliation run."""

    invoked_at: int  # epoch ms
    outcomes: list[UserOutcome] = Field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        """Number of users that ended with the given status."""
        return sum(1 for o in self.outcomes if o.status == status)
