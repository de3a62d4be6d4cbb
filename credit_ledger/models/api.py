"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    """Credit transaction type enumeration (closed set)."""

    USAGE = "usage"
    GRANT = "grant"
    REFUND = "refund"
    SUBSCRIPTION = "subscription"
    REFERRAL_BONUS = "referral_bonus"


# ============================================================================
# Usage Models
# ============================================================================


class UseCreditsRequest(BaseModel):
    """POST /v1/credits/use request body."""

    # Amount is validated by the ledger so bad values surface as InvalidAmount
    amount: int = Field(..., description="Number of credits to debit (positive)")
    story_id: str | None = Field(None, max_length=255)
    description: str | None = Field(None, min_length=1, max_length=500)
    idempotency_key: str | None = Field(
        None,
        min_length=1,
        max_length=255,
        description="Client token used to deduplicate retried requests",
    )


class BalanceResponse(BaseModel):
    """Balance after a committed ledger mutation."""

    balance: int
    transaction_id: UUID | None = None
    replayed: bool = False


class CheckCreditsRequest(BaseModel):
    """POST /v1/credits/check request body."""

    amount: int = Field(..., description="Number of credits the caller wants to spend")


class CheckCreditsResponse(BaseModel):
    """POST /v1/credits/check response. Advisory only."""

    available: bool
    balance: int


# ============================================================================
# Grant Models
# ============================================================================


class GrantCreditsRequest(BaseModel):
    """POST /v1/admin/credits/grant request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., description="Number of credits to grant (positive)")
    transaction_type: TransactionType = TransactionType.GRANT
    description: str = Field(..., min_length=1, max_length=500)
    idempotency_key: str | None = Field(None, min_length=1, max_length=255)
    purchase_id: str | None = Field(None, max_length=255)


# ============================================================================
# Repair Models
# ============================================================================


class RepairCreditsRequest(BaseModel):
    """POST /v1/admin/credits/repair request body."""

    user_id: str = Field(..., max_length=255)


class RepairCreditsResponse(BaseModel):
    """POST /v1/admin/credits/repair response."""

    success: bool
    message: str
    user_id: str
    previous_balance: int | None = None
    balance: int | None = None
    lifetime_used: int | None = None
    transaction_count: int = 0
    changed: bool = False
    negative_history: bool = False


# ============================================================================
# Subscription Models
# ============================================================================


class SubscriptionStatusRequest(BaseModel):
    """POST /v1/admin/credits/subscription request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    active: bool


# ============================================================================
# Account Models
# ============================================================================


class AccountResponse(BaseModel):
    """Credit account representation."""

    user_id: str
    balance: int
    lifetime_used: int
    subscription_active: bool
    free_credits_granted: bool
    created_at: str  # ISO 8601 timestamp
    last_updated: str  # ISO 8601 timestamp


class TransactionItem(BaseModel):
    """Single ledger transaction in list response."""

    transaction_id: UUID
    amount: int
    transaction_type: TransactionType
    description: str
    story_id: str | None = None
    purchase_id: str | None = None
    previous_balance: int | None = None
    new_balance: int | None = None
    created_at: str  # ISO 8601 timestamp


class TransactionListResponse(BaseModel):
    """GET /v1/credits/transactions response."""

    transactions: list[TransactionItem]
    total: int


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
