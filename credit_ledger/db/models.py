"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Balance snapshots are explicit columns, not a JSON blob.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    One row per user. Mutated only inside a unit of work that also
    appends a ledger transaction (repair excepted).
    """

    __tablename__ = "credit_accounts"

    # Primary Key - opaque user id from the auth layer
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balance
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Flags
    subscription_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    free_credits_granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint("lifetime_used >= 0", name="ck_credit_lifetime_used_non_negative"),
        Index("idx_credit_accounts_last_updated", "last_updated"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditAccount(user_id={self.user_id}, balance={self.balance}, "
            f"lifetime_used={self.lifetime_used})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger. Rows are inserted once and never updated or deleted.
    """

    __tablename__ = "credit_transactions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Owning account
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Signed amount: positive = credit, negative = usage
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)

    # Correlation
    story_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchase_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Balance snapshots (audit only - repair trusts the amounts)
    metadata_previous_balance: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    metadata_new_balance: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Replay order
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_credit_transaction_amount_non_zero"),
        CheckConstraint(
            "transaction_type IN ('usage', 'grant', 'refund', 'subscription', 'referral_bonus')",
            name="ck_credit_transaction_type",
        ),
        CheckConstraint(
            "transaction_type <> 'usage' OR amount < 0",
            name="ck_credit_transaction_usage_negative",
        ),
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_transaction_idempotency"),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
        Index(
            "idx_credit_transactions_story_id",
            "story_id",
            postgresql_where=text("story_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.transaction_type})>"
        )
