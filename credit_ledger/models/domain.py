"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from credit_ledger.models.api import TransactionType


@dataclass(frozen=True)
class CallerIdentity:
    """Caller as supplied by the authentication layer. Trusted as-is."""

    user_id: str | None
    is_admin: bool = False

    def __post_init__(self) -> None:
        """Validate caller identity fields."""
        if self.user_id is not None and not self.user_id.strip():
            raise ValueError("user_id cannot be blank")


@dataclass(frozen=True)
class AccountData:
    """Immutable credit account snapshot."""

    user_id: str
    balance: int
    lifetime_used: int
    subscription_active: bool
    free_credits_granted: bool
    created_at: datetime
    last_updated: datetime


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger transaction after persistence."""

    transaction_id: UUID
    user_id: str
    amount: int
    transaction_type: TransactionType
    description: str
    created_at: datetime
    story_id: str | None = None
    purchase_id: str | None = None
    idempotency_key: str | None = None
    previous_balance: int | None = None
    new_balance: int | None = None


@dataclass(frozen=True)
class BalanceResult:
    """Outcome of a committed (or replayed) balance mutation."""

    user_id: str
    balance: int
    transaction_id: UUID | None
    replayed: bool = False


@dataclass(frozen=True)
class AvailabilityResult:
    """Advisory balance check. Reserves nothing."""

    available: bool
    balance: int


@dataclass(frozen=True)
class LedgerReplay:
    """Balance fields derived by folding a user's transaction history."""

    balance: int
    lifetime_used: int
    transaction_count: int

    @property
    def is_negative(self) -> bool:
        """History sums below zero - an accounting defect to investigate."""
        return self.balance < 0

    @property
    def clamped_balance(self) -> int:
        """Balance safe to persist (never negative)."""
        return max(0, self.balance)


@dataclass(frozen=True)
class RepairResult:
    """Outcome of a balance repair."""

    user_id: str
    success: bool
    message: str
    previous_balance: int | None = None
    balance: int | None = None
    lifetime_used: int | None = None
    transaction_count: int = 0
    changed: bool = False
    negative_history: bool = False
