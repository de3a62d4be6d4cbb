"""
Account Store Client - the only component that touches durable storage.

Every unit of work runs inside one database transaction. Account rows are
read with SELECT ... FOR UPDATE, so concurrent writers to the same account
serialize. Serialization failures, deadlocks and unique-key races roll back
and re-run the whole closure, so closures must not have side effects beyond
their store writes.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.models import CreditAccount, CreditTransaction, utc_now
from credit_ledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    LedgerError,
    StoreConflictError,
    StoreTransientError,
)
from credit_ledger.models.api import TransactionType
from credit_ledger.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

# PostgreSQL: serialization_failure, deadlock_detected, unique_violation
CONFLICT_SQLSTATES = frozenset({"40001", "40P01", "23505"})

# SQLite (test dialect): lock contention and unique-key races
CONFLICT_SQLITE_ERRORS = frozenset(
    {"SQLITE_BUSY", "SQLITE_LOCKED", "SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}
)


def _is_write_conflict(exc: DBAPIError) -> bool:
    """Check whether a driver error means another writer won the race."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in CONFLICT_SQLSTATES:
        return True
    return getattr(orig, "sqlite_errorname", None) in CONFLICT_SQLITE_ERRORS


class LedgerUnitOfWork:
    """
    Transaction handle passed to unit-of-work closures.

    All reads and writes go through the enclosing database transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_account(self, user_id: str) -> CreditAccount | None:
        """Read an account, locking its row until the unit of work ends."""
        stmt = select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_account(self, user_id: str, amount: int | None = None) -> CreditAccount:
        """
        Read and lock an account that must exist.

        Raises:
            AccountNotFoundError: Account doesn't exist (never created implicitly)
        """
        account = await self.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id, amount)
        return account

    async def create_account(
        self, user_id: str, *, free_credits_granted: bool = False
    ) -> CreditAccount:
        """Insert a zero-balance account."""
        now = utc_now()
        account = CreditAccount(
            user_id=user_id,
            balance=0,
            lifetime_used=0,
            subscription_active=False,
            free_credits_granted=free_credits_granted,
            created_at=now,
            last_updated=now,
        )
        self.session.add(account)
        await self.session.flush()
        return account

    async def update_account(self, account: CreditAccount, **fields: int | bool) -> None:
        """Set account fields and stamp last_updated."""
        for name, value in fields.items():
            setattr(account, name, value)
        account.last_updated = utc_now()
        await self.session.flush()

    async def append_transaction(
        self,
        *,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        previous_balance: int,
        new_balance: int,
        story_id: str | None = None,
        purchase_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        """Insert exactly one ledger transaction."""
        if amount == 0:
            raise DataIntegrityError(
                "Ledger transactions cannot have a zero amount", user_id=user_id
            )

        transaction = CreditTransaction(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type.value,
            description=description,
            story_id=story_id,
            purchase_id=purchase_id,
            idempotency_key=idempotency_key,
            metadata_previous_balance=previous_balance,
            metadata_new_balance=new_balance,
            created_at=utc_now(),
        )
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_transactions(self, user_id: str) -> list[CreditTransaction]:
        """All transactions of a user in replay order (oldest first)."""
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at, CreditTransaction.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_transaction_by_idempotency_key(
        self, user_id: str, idempotency_key: str
    ) -> CreditTransaction | None:
        """Find an earlier transaction recorded under the same idempotency key."""
        stmt = select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.idempotency_key == idempotency_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class AccountStore:
    """
    Transactional access to credit accounts and their ledger.

    run_atomic() is the only write path. Reads outside a unit of work are
    advisory and may be served by a replica.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        read_session_factory: async_sessionmaker[AsyncSession] | None = None,
        max_conflict_retries: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.read_session_factory = read_session_factory or session_factory
        self.max_conflict_retries = max_conflict_retries

    async def run_atomic(
        self,
        unit_of_work: Callable[[LedgerUnitOfWork], Awaitable[T]],
        *,
        user_id: str | None = None,
    ) -> T:
        """
        Execute a closure with atomic read-modify-write semantics.

        The closure's writes commit together or not at all. Lost write
        conflicts re-run the closure up to max_conflict_retries times.

        Args:
            unit_of_work: Closure receiving the transaction handle
            user_id: Account the closure works on, carried into errors and logs

        Raises:
            LedgerError: Raised by the closure, after rollback
            StoreConflictError: Conflicts persisted past the re-run budget
            StoreTransientError: Connection or driver failure
            DataIntegrityError: A store constraint rejected the write
        """
        conflicts = 0

        while True:
            async with self.session_factory() as session:
                try:
                    async with session.begin():
                        return await unit_of_work(LedgerUnitOfWork(session))
                except LedgerError:
                    raise
                except DBAPIError as exc:
                    if _is_write_conflict(exc):
                        conflicts += 1
                        metrics.record_store_conflict()
                        if conflicts > self.max_conflict_retries:
                            logger.warning(
                                "unit_of_work_conflicts_exhausted",
                                user_id=user_id,
                                conflicts=conflicts,
                                error=str(exc.orig),
                            )
                            raise StoreConflictError(
                                f"credit account {user_id}" if user_id else "credit_accounts"
                            ) from exc
                        logger.info(
                            "unit_of_work_conflict_rerun",
                            user_id=user_id,
                            conflicts=conflicts,
                            error=str(exc.orig),
                        )
                        continue
                    if isinstance(exc, IntegrityError):
                        raise DataIntegrityError(str(exc.orig), user_id=user_id) from exc
                    raise StoreTransientError(str(exc.orig)) from exc
                except (OSError, TimeoutError) as exc:
                    raise StoreTransientError(str(exc)) from exc

    async def read_account(self, user_id: str) -> CreditAccount | None:
        """Plain, non-locking account read."""
        try:
            async with self.read_session_factory() as session:
                result = await session.execute(
                    select(CreditAccount).where(CreditAccount.user_id == user_id)
                )
                return result.scalar_one_or_none()
        except DBAPIError as exc:
            raise StoreTransientError(str(exc.orig)) from exc
        except (OSError, TimeoutError) as exc:
            raise StoreTransientError(str(exc)) from exc

    async def recent_transactions(self, user_id: str, limit: int) -> list[CreditTransaction]:
        """Newest transactions of a user, newest first."""
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        try:
            async with self.read_session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except DBAPIError as exc:
            raise StoreTransientError(str(exc.orig)) from exc
        except (OSError, TimeoutError) as exc:
            raise StoreTransientError(str(exc)) from exc
