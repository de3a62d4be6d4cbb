"""
FastAPI Dependencies - Caller identity, admin authorization and services.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
import time

from fastapi import Depends, Header, HTTPException, status
from structlog import get_logger

from credit_ledger.config import settings
from credit_ledger.db.session import get_read_session_factory, get_write_session_factory
from credit_ledger.models.domain import CallerIdentity
from credit_ledger.services.account_store import AccountStore
from credit_ledger.services.ledger import LedgerService

logger = get_logger(__name__)


def _is_admin_key(x_admin_key: str | None) -> bool:
    """Check an admin key against the configured keys in constant time."""
    if not x_admin_key:
        return False
    candidate = x_admin_key.encode()
    matched = False
    for key in settings.admin_api_keys:
        # No early exit so timing doesn't reveal which key matched
        matched |= hmac.compare_digest(candidate, key.encode())
    return matched


async def get_caller_identity(
    x_user_id: str | None = Header(None, description="Authenticated user id from the gateway"),
    x_admin_key: str | None = Header(None, description="Admin API key"),
) -> CallerIdentity:
    """
    Resolve the caller from trusted gateway headers.

    The authentication gateway in front of this service verifies the user's
    token and forwards the user id in X-User-Id. Admin tooling additionally
    presents X-Admin-Key.
    """
    user_id = x_user_id.strip() if x_user_id else None
    return CallerIdentity(user_id=user_id or None, is_admin=_is_admin_key(x_admin_key))


async def require_user(
    caller: CallerIdentity = Depends(get_caller_identity),
) -> CallerIdentity:
    """
    Require an authenticated end user.

    Raises:
        HTTPException 401 if no user id was forwarded
    """
    if caller.user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header required",
        )
    return caller


async def require_admin(
    caller: CallerIdentity = Depends(get_caller_identity),
) -> CallerIdentity:
    """
    Require a privileged caller.

    Raises:
        HTTPException 403 if the admin key is missing or unknown
    """
    if not caller.is_admin:
        logger.warning("admin_auth_rejected", caller_user_id=caller.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return caller


async def get_deadline(
    x_request_timeout: float | None = Header(
        None,
        gt=0,
        le=300,
        description="Seconds the caller will wait; retries stop once it passes",
    ),
) -> float | None:
    """Turn the caller's timeout into an absolute time.monotonic() deadline."""
    if x_request_timeout is None:
        return None
    return time.monotonic() + x_request_timeout


def get_ledger_service() -> LedgerService:
    """Build the ledger service over the shared session factories."""
    store = AccountStore(
        get_write_session_factory(),
        read_session_factory=get_read_session_factory(),
        max_conflict_retries=settings.store_conflict_retries,
    )
    return LedgerService(store)
