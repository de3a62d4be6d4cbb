"""
API Routes - FastAPI endpoints for credit ledger operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from credit_ledger.api.dependencies import (
    get_caller_identity,
    get_deadline,
    get_ledger_service,
    require_admin,
    require_user,
)
from credit_ledger.db.session import get_read_db
from credit_ledger.exceptions import (
    AccountNotFoundError,
    AuthorizationError,
    DataIntegrityError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidHistoryLimitError,
    InvalidTransactionTypeError,
    StoreUnavailableError,
)
from credit_ledger.models.api import (
    AccountResponse,
    BalanceResponse,
    CheckCreditsRequest,
    CheckCreditsResponse,
    GrantCreditsRequest,
    HealthResponse,
    RepairCreditsRequest,
    RepairCreditsResponse,
    SubscriptionStatusRequest,
    TransactionItem,
    TransactionListResponse,
    UseCreditsRequest,
)
from credit_ledger.models.domain import AccountData, BalanceResult, CallerIdentity
from credit_ledger.services.ledger import MAX_HISTORY_LIMIT, LedgerService

router = APIRouter()
admin_router = APIRouter(prefix="/v1/admin")


def _store_unavailable() -> HTTPException:
    """503 for exhausted transient failures. The balance is unknown, not zero."""
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Credit store unavailable, balance unknown. Please retry later.",
        headers={"Retry-After": "5"},
    )


def _account_response(account: AccountData) -> AccountResponse:
    return AccountResponse(
        user_id=account.user_id,
        balance=account.balance,
        lifetime_used=account.lifetime_used,
        subscription_active=account.subscription_active,
        free_credits_granted=account.free_credits_granted,
        created_at=account.created_at.isoformat(),
        last_updated=account.last_updated.isoformat(),
    )


def _balance_response(result: BalanceResult) -> BalanceResponse:
    return BalanceResponse(
        balance=result.balance,
        transaction_id=result.transaction_id,
        replayed=result.replayed,
    )


# ============================================================================
# User Endpoints
# ============================================================================


@router.post("/v1/credits/use", response_model=BalanceResponse)
async def use_credits(
    request: UseCreditsRequest,
    caller: CallerIdentity = Depends(require_user),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> BalanceResponse:
    """
    Debit credits for a story generation.

    Atomic: either the balance and the usage transaction are both written,
    or nothing is.
    """
    assert caller.user_id is not None

    try:
        result = await service.use_credits(
            caller.user_id,
            request.amount,
            story_id=request.story_id,
            description=request.description,
            idempotency_key=request.idempotency_key,
            deadline=deadline,
        )
        return _balance_response(result)

    except InvalidAmountError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.reason,
        ) from exc

    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit account not found",
        ) from exc

    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Balance: {exc.balance}, Required: {exc.required}",
        ) from exc

    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Idempotency key already used for a different request",
        ) from exc

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc

    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.post("/v1/credits/check", response_model=CheckCreditsResponse)
async def check_credits(
    request: CheckCreditsRequest,
    caller: CallerIdentity = Depends(require_user),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> CheckCreditsResponse:
    """
    Check whether the caller could currently afford an amount.

    Advisory only - nothing is reserved.
    """
    assert caller.user_id is not None

    try:
        result = await service.check_credits_available(
            caller.user_id, request.amount, deadline=deadline
        )
        return CheckCreditsResponse(available=result.available, balance=result.balance)

    except InvalidAmountError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.reason,
        ) from exc

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc


@router.get("/v1/credits/balance", response_model=AccountResponse)
async def get_balance(
    caller: CallerIdentity = Depends(require_user),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> AccountResponse:
    """Get the caller's credit account."""
    assert caller.user_id is not None

    try:
        account = await service.get_account(caller.user_id, deadline=deadline)
        return _account_response(account)

    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit account not found",
        ) from exc

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc


@router.get("/v1/credits/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(20, ge=1, le=MAX_HISTORY_LIMIT),
    caller: CallerIdentity = Depends(require_user),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> TransactionListResponse:
    """
    List the caller's most recent transactions, newest first.

    Read operation - served from replica.
    """
    assert caller.user_id is not None

    try:
        transactions = await service.get_transaction_history(
            caller.user_id, limit, deadline=deadline
        )
    except InvalidHistoryLimitError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc

    items = [
        TransactionItem(
            transaction_id=t.transaction_id,
            amount=t.amount,
            transaction_type=t.transaction_type,
            description=t.description,
            story_id=t.story_id,
            purchase_id=t.purchase_id,
            previous_balance=t.previous_balance,
            new_balance=t.new_balance,
            created_at=t.created_at.isoformat(),
        )
        for t in transactions
    ]
    return TransactionListResponse(transactions=items, total=len(items))


@router.post("/v1/credits/initialize", response_model=AccountResponse)
async def initialize_credits(
    caller: CallerIdentity = Depends(require_user),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> AccountResponse:
    """
    Create the caller's account with the welcome grant.

    Safe to call repeatedly - existing accounts are returned unchanged.
    """
    assert caller.user_id is not None

    try:
        account = await service.initialize_user_credits(caller.user_id, deadline=deadline)
        return _account_response(account)

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc


# ============================================================================
# Admin Endpoints
# ============================================================================


@admin_router.post("/credits/grant", response_model=BalanceResponse)
async def grant_credits(
    request: GrantCreditsRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> BalanceResponse:
    """
    Grant credits to a user (purchase, subscription, referral bonus, refund).

    Requires: admin key.
    """
    try:
        result = await service.add_credits(
            request.user_id,
            request.amount,
            request.transaction_type,
            request.description,
            idempotency_key=request.idempotency_key,
            purchase_id=request.purchase_id,
            deadline=deadline,
        )
        return _balance_response(result)

    except (InvalidAmountError, InvalidTransactionTypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Idempotency key already used for a different request",
        ) from exc

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc


@admin_router.post("/credits/repair", response_model=RepairCreditsResponse)
async def repair_credits(
    request: RepairCreditsRequest,
    caller: CallerIdentity = Depends(get_caller_identity),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> RepairCreditsResponse:
    """
    Recompute a user's balance from their transaction history.

    Requires: admin key. The ledger service enforces the role itself.
    """
    try:
        result = await service.repair_user_credits(request.user_id, caller, deadline=deadline)

    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        ) from exc

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc

    return RepairCreditsResponse(
        success=result.success,
        message=result.message,
        user_id=result.user_id,
        previous_balance=result.previous_balance,
        balance=result.balance,
        lifetime_used=result.lifetime_used,
        transaction_count=result.transaction_count,
        changed=result.changed,
        negative_history=result.negative_history,
    )


@admin_router.post("/credits/subscription", response_model=AccountResponse)
async def set_subscription_status(
    request: SubscriptionStatusRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: LedgerService = Depends(get_ledger_service),
    deadline: float | None = Depends(get_deadline),
) -> AccountResponse:
    """
    Mark a user's subscription active or cancelled (purchase webhook).

    Requires: admin key. Balance and ledger are not touched.
    """
    try:
        account = await service.set_subscription_status(
            request.user_id, request.active, deadline=deadline
        )
        return _account_response(account)

    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit account not found",
        ) from exc

    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
