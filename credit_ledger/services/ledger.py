"""
Ledger Service - Credit debit, availability check and repair.

Every mutation is a single unit of work executed through the retry policy
against the account store. Terminal errors surface on the first attempt;
exhausted transient failures surface as StoreUnavailableError, never as a
made-up balance.
"""

import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from structlog import get_logger

from credit_ledger.db.models import CreditAccount, CreditTransaction
from credit_ledger.exceptions import (
    AccountNotFoundError,
    AuthorizationError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidHistoryLimitError,
    InvalidTransactionTypeError,
    LedgerError,
    RetryableError,
    StoreUnavailableError,
)
from credit_ledger.models.api import TransactionType
from credit_ledger.models.domain import (
    AccountData,
    AvailabilityResult,
    BalanceResult,
    CallerIdentity,
    LedgerReplay,
    RepairResult,
    TransactionData,
)
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import ledger_span
from credit_ledger.services.account_store import AccountStore, LedgerUnitOfWork
from credit_ledger.services.retry import RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

T = TypeVar("T")

ADMIN_ROLE = "admin"
MAX_HISTORY_LIMIT = 100


def _validate_amount(user_id: str, amount: object) -> int:
    """Reject anything but a positive integer (bools included)."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(user_id, amount)
    return amount


def _usage_description(amount: int) -> str:
    """Default description for a usage transaction."""
    plural = "s" if amount > 1 else ""
    return f"Used {amount} credit{plural} for story generation"


def replay_transactions(amounts: Iterable[int]) -> LedgerReplay:
    """
    Fold signed transaction amounts into balance fields.

    Balance is the plain sum. Lifetime usage is the sum of debit magnitudes.
    """
    balance = 0
    lifetime_used = 0
    count = 0
    for amount in amounts:
        balance += amount
        if amount < 0:
            lifetime_used += -amount
        count += 1
    return LedgerReplay(balance=balance, lifetime_used=lifetime_used, transaction_count=count)


def _account_to_domain(account: CreditAccount) -> AccountData:
    """Convert ORM account to domain model."""
    return AccountData(
        user_id=account.user_id,
        balance=account.balance,
        lifetime_used=account.lifetime_used,
        subscription_active=account.subscription_active,
        free_credits_granted=account.free_credits_granted,
        created_at=account.created_at,
        last_updated=account.last_updated,
    )


def _transaction_to_domain(transaction: CreditTransaction) -> TransactionData:
    """Convert ORM transaction to domain model."""
    return TransactionData(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        amount=transaction.amount,
        transaction_type=TransactionType(transaction.transaction_type),
        description=transaction.description,
        created_at=transaction.created_at,
        story_id=transaction.story_id,
        purchase_id=transaction.purchase_id,
        idempotency_key=transaction.idempotency_key,
        previous_balance=transaction.metadata_previous_balance,
        new_balance=transaction.metadata_new_balance,
    )


def _replayed_result(
    existing: CreditTransaction,
    account: CreditAccount,
    amount: int,
    transaction_type: TransactionType,
    idempotency_key: str,
) -> BalanceResult:
    """Result of a request whose idempotency key was already committed."""
    if existing.amount != amount or existing.transaction_type != transaction_type.value:
        raise IdempotencyConflictError(account.user_id, idempotency_key)
    balance = existing.metadata_new_balance
    return BalanceResult(
        user_id=account.user_id,
        balance=balance if balance is not None else account.balance,
        transaction_id=existing.id,
        replayed=True,
    )


class LedgerService:
    """
    Credit ledger business logic.

    All write operations follow the pattern:
    1. Lock the account row
    2. Validate business rules (terminal errors abort with no mutation)
    3. Update the account and append exactly one transaction
    4. Commit, re-running on store conflicts and retrying transient failures
    """

    def __init__(self, store: AccountStore, retry_policy: RetryPolicy | None = None) -> None:
        """Initialize ledger service with its store and retry policy."""
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    async def use_credits(
        self,
        user_id: str,
        amount: int,
        story_id: str | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
        deadline: float | None = None,
    ) -> BalanceResult:
        """
        Debit credits for a story generation.

        Raises:
            InvalidAmountError: Amount is not a positive integer
            AccountNotFoundError: Account doesn't exist
            InsufficientCreditsError: Balance below amount (nothing written)
            IdempotencyConflictError: Key reused for a different debit
            StoreUnavailableError: Transient failures outlasted the retry policy
        """
        amount = _validate_amount(user_id, amount)
        transaction_description = description or _usage_description(amount)

        async def unit_of_work(uow: LedgerUnitOfWork) -> BalanceResult:
            account = await uow.require_account(user_id, amount)

            if idempotency_key:
                existing = await uow.find_transaction_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return _replayed_result(
                        existing, account, -amount, TransactionType.USAGE, idempotency_key
                    )

            previous_balance = account.balance
            if previous_balance < amount:
                raise InsufficientCreditsError(user_id, previous_balance, amount)

            new_balance = previous_balance - amount
            await uow.update_account(
                account,
                balance=new_balance,
                lifetime_used=account.lifetime_used + amount,
            )
            transaction = await uow.append_transaction(
                user_id=user_id,
                amount=-amount,
                transaction_type=TransactionType.USAGE,
                description=transaction_description,
                previous_balance=previous_balance,
                new_balance=new_balance,
                story_id=story_id,
                idempotency_key=idempotency_key,
            )
            return BalanceResult(
                user_id=user_id,
                balance=new_balance,
                transaction_id=transaction.id,
            )

        result = await self._run(
            "use_credits", unit_of_work, user_id=user_id, amount=amount, deadline=deadline
        )

        if not result.replayed:
            metrics.record_debit(amount)
        logger.info(
            "credits_used",
            user_id=user_id,
            amount=amount,
            story_id=story_id,
            remaining_balance=result.balance,
            replayed=result.replayed,
        )
        return result

    async def check_credits_available(
        self, user_id: str, amount: int, deadline: float | None = None
    ) -> AvailabilityResult:
        """
        Advisory balance check for pre-flight UI.

        Reserves nothing - a later use_credits may still fail. A missing
        account reads as zero credits rather than an error.
        """
        amount = _validate_amount(user_id, amount)

        account = await self._read(
            "check_credits_available",
            lambda: self.store.read_account(user_id),
            user_id=user_id,
            amount=amount,
            deadline=deadline,
        )

        balance = account.balance if account is not None else 0
        return AvailabilityResult(available=balance >= amount, balance=balance)

    async def repair_user_credits(
        self,
        user_id: str,
        caller: CallerIdentity,
        deadline: float | None = None,
    ) -> RepairResult:
        """
        Recompute an account's balance fields from its transaction history.

        Restricted to privileged callers. Idempotent: with no new
        transactions a second run writes nothing. A history that sums
        negative is persisted as zero and flagged on the result.

        Raises:
            AuthorizationError: Caller is not an admin
            StoreUnavailableError: Transient failures outlasted the retry policy
        """
        if not caller.is_admin:
            logger.warning(
                "credit_repair_unauthorized",
                caller_user_id=caller.user_id,
                target_user_id=user_id,
            )
            raise AuthorizationError(ADMIN_ROLE, user_id=caller.user_id)

        if not user_id or not user_id.strip():
            return RepairResult(user_id=user_id, success=False, message="User ID required")

        logger.info("credit_repair_started", user_id=user_id, caller_user_id=caller.user_id)

        async def unit_of_work(uow: LedgerUnitOfWork) -> RepairResult:
            # Lock first so no debit can commit between the scan and the write
            account = await uow.get_account(user_id)
            transactions = await uow.list_transactions(user_id)
            replay = replay_transactions(t.amount for t in transactions)

            if account is None:
                if replay.transaction_count == 0:
                    return RepairResult(
                        user_id=user_id,
                        success=True,
                        message=f"No credit account or history for user {user_id}",
                    )
                account = await uow.create_account(user_id)

            previous_balance = account.balance
            target = {
                "balance": replay.clamped_balance,
                "lifetime_used": replay.lifetime_used,
                "free_credits_granted": replay.balance > 0,
            }
            changed = any(getattr(account, name) != value for name, value in target.items())
            if changed:
                await uow.update_account(account, **target)

            return RepairResult(
                user_id=user_id,
                success=True,
                message=f"Successfully repaired credits for user {user_id}",
                previous_balance=previous_balance,
                balance=replay.clamped_balance,
                lifetime_used=replay.lifetime_used,
                transaction_count=replay.transaction_count,
                changed=changed,
                negative_history=replay.is_negative,
            )

        result = await self._run("repair_user_credits", unit_of_work, user_id=user_id, deadline=deadline)

        metrics.record_repair(result.changed, result.negative_history)
        if result.negative_history:
            logger.error(
                "credit_repair_negative_history",
                user_id=user_id,
                transaction_count=result.transaction_count,
                persisted_balance=result.balance,
            )
        logger.info(
            "credit_repair_completed",
            user_id=user_id,
            previous_balance=result.previous_balance,
            balance=result.balance,
            lifetime_used=result.lifetime_used,
            transaction_count=result.transaction_count,
            changed=result.changed,
        )
        return result

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        idempotency_key: str | None = None,
        purchase_id: str | None = None,
        deadline: float | None = None,
    ) -> BalanceResult:
        """
        Grant credits (purchase, subscription, referral bonus, refund).

        Creates the account if it doesn't exist yet.

        Raises:
            InvalidAmountError: Amount is not a positive integer
            InvalidTransactionTypeError: Usage type used for a grant
            IdempotencyConflictError: Key reused for a different grant
            StoreUnavailableError: Transient failures outlasted the retry policy
        """
        amount = _validate_amount(user_id, amount)
        try:
            transaction_type = TransactionType(transaction_type)
        except ValueError:
            raise InvalidTransactionTypeError(user_id, str(transaction_type)) from None
        if transaction_type == TransactionType.USAGE:
            raise InvalidTransactionTypeError(user_id, transaction_type.value)

        async def unit_of_work(uow: LedgerUnitOfWork) -> BalanceResult:
            account = await uow.get_account(user_id)
            if account is None:
                account = await uow.create_account(user_id)

            if idempotency_key:
                existing = await uow.find_transaction_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return _replayed_result(
                        existing, account, amount, transaction_type, idempotency_key
                    )

            previous_balance = account.balance
            new_balance = previous_balance + amount
            await uow.update_account(account, balance=new_balance)
            transaction = await uow.append_transaction(
                user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                description=description,
                previous_balance=previous_balance,
                new_balance=new_balance,
                purchase_id=purchase_id,
                idempotency_key=idempotency_key,
            )
            return BalanceResult(
                user_id=user_id,
                balance=new_balance,
                transaction_id=transaction.id,
            )

        result = await self._run(
            "add_credits", unit_of_work, user_id=user_id, amount=amount, deadline=deadline
        )

        if not result.replayed:
            metrics.record_grant(transaction_type.value, amount)
        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type.value,
            balance=result.balance,
            replayed=result.replayed,
        )
        return result

    async def initialize_user_credits(
        self,
        user_id: str,
        initial_credits: int | None = None,
        deadline: float | None = None,
    ) -> AccountData:
        """
        Create an account with the welcome grant if it doesn't exist yet.

        Existing accounts are returned unchanged.
        """
        if initial_credits is None:
            from credit_ledger.config import settings

            initial_credits = settings.initial_free_credits

        async def unit_of_work(uow: LedgerUnitOfWork) -> AccountData:
            account = await uow.get_account(user_id)
            if account is not None:
                return _account_to_domain(account)

            account = await uow.create_account(user_id, free_credits_granted=initial_credits > 0)
            if initial_credits > 0:
                await uow.update_account(account, balance=initial_credits)
                await uow.append_transaction(
                    user_id=user_id,
                    amount=initial_credits,
                    transaction_type=TransactionType.GRANT,
                    description="Welcome bonus credits",
                    previous_balance=0,
                    new_balance=initial_credits,
                )
                logger.info(
                    "credits_initialized", user_id=user_id, initial_credits=initial_credits
                )
            return _account_to_domain(account)

        return await self._run(
            "initialize_user_credits", unit_of_work, user_id=user_id, deadline=deadline
        )

    async def set_subscription_status(
        self, user_id: str, active: bool, deadline: float | None = None
    ) -> AccountData:
        """
        Record a subscription start or cancellation from the purchase webhook.

        Only subscription_active changes; the balance and ledger are untouched.
        Monthly subscription credits arrive separately through add_credits.

        Raises:
            AccountNotFoundError: Account doesn't exist
            StoreUnavailableError: Transient failures outlasted the retry policy
        """

        async def unit_of_work(uow: LedgerUnitOfWork) -> AccountData:
            account = await uow.require_account(user_id)
            await uow.update_account(account, subscription_active=active)
            return _account_to_domain(account)

        account = await self._run(
            "set_subscription_status", unit_of_work, user_id=user_id, deadline=deadline
        )
        logger.info("subscription_status_updated", user_id=user_id, subscription_active=active)
        return account

    async def get_account(self, user_id: str, deadline: float | None = None) -> AccountData:
        """
        Get account by user id.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._read(
            "get_account",
            lambda: self.store.read_account(user_id),
            user_id=user_id,
            deadline=deadline,
        )
        if account is None:
            raise AccountNotFoundError(user_id)
        return _account_to_domain(account)

    async def get_transaction_history(
        self, user_id: str, limit: int | None = None, deadline: float | None = None
    ) -> list[TransactionData]:
        """
        Most recent transactions of a user, newest first.

        Raises:
            InvalidHistoryLimitError: Limit outside 1..MAX_HISTORY_LIMIT
        """
        if limit is None:
            from credit_ledger.config import settings

            limit = settings.transaction_history_limit
        if (
            isinstance(limit, bool)
            or not isinstance(limit, int)
            or not 1 <= limit <= MAX_HISTORY_LIMIT
        ):
            raise InvalidHistoryLimitError(user_id, limit, MAX_HISTORY_LIMIT)

        transactions = await self._read(
            "get_transaction_history",
            lambda: self.store.recent_transactions(user_id, limit),
            user_id=user_id,
            deadline=deadline,
        )
        return [_transaction_to_domain(t) for t in transactions]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _run(
        self,
        operation: str,
        unit_of_work: Callable[[LedgerUnitOfWork], Awaitable[T]],
        *,
        user_id: str,
        amount: int | None = None,
        deadline: float | None = None,
    ) -> T:
        """Execute a unit of work atomically under the retry policy."""
        return await self._read(
            operation,
            lambda: self.store.run_atomic(unit_of_work, user_id=user_id),
            user_id=user_id,
            amount=amount,
            deadline=deadline,
        )

    async def _read(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        user_id: str,
        amount: int | None = None,
        deadline: float | None = None,
    ) -> T:
        """Run a store call under the retry policy, recording metrics."""
        start_time = time.perf_counter()
        with ledger_span(operation, user_id, amount) as span:
            try:
                result = await retry_with_backoff(
                    call,
                    self.retry_policy,
                    operation_name=operation,
                    deadline=deadline,
                )
            except RetryableError as exc:
                span.set_attribute("ledger.attempts", exc.attempts)
                metrics.record_operation(
                    operation, False, time.perf_counter() - start_time, "StoreUnavailableError"
                )
                metrics.record_error("StoreUnavailableError", operation)
                logger.error(
                    "ledger_store_unavailable",
                    operation=operation,
                    user_id=user_id,
                    amount=amount,
                    attempts=exc.attempts,
                    error=str(exc),
                )
                raise StoreUnavailableError(
                    user_id=user_id, amount=amount, attempts=exc.attempts, cause=str(exc)
                ) from exc
            except LedgerError as exc:
                metrics.record_operation(
                    operation, False, time.perf_counter() - start_time, type(exc).__name__
                )
                logger.info(
                    "ledger_operation_rejected",
                    operation=operation,
                    user_id=user_id,
                    amount=amount,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        metrics.record_operation(operation, True, time.perf_counter() - start_time)
        return result
