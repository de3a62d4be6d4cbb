"""
Tests for exception classes.

Covers the terminal / retryable classification and message formats.
"""

import pytest

from credit_ledger.exceptions import (
    AccountNotFoundError,
    AuthorizationError,
    DataIntegrityError,
    DeadlineExceededError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidHistoryLimitError,
    InvalidTransactionTypeError,
    LedgerError,
    RetryableError,
    StoreConflictError,
    StoreTransientError,
    StoreUnavailableError,
    TerminalError,
)


class TestClassification:
    """Every ledger error is exactly one of terminal or retryable, except exhaustion."""

    @pytest.mark.parametrize(
        "exc",
        [
            AccountNotFoundError("user-123"),
            InsufficientCreditsError("user-123", 6, 10),
            InvalidAmountError("user-123", 0),
            InvalidTransactionTypeError("user-123", "usage"),
            IdempotencyConflictError("user-123", "key"),
            DataIntegrityError("constraint"),
            AuthorizationError("admin"),
            InvalidHistoryLimitError("user-123", 0, 100),
        ],
    )
    def test_terminal(self, exc):
        """Business-rule violations are terminal."""
        assert isinstance(exc, TerminalError)
        assert not isinstance(exc, RetryableError)

    @pytest.mark.parametrize(
        "exc",
        [
            StoreConflictError("credit_accounts"),
            StoreTransientError("connection refused"),
            DeadlineExceededError("use_credits"),
        ],
    )
    def test_retryable(self, exc):
        """Store failures are retryable and start at one attempt."""
        assert isinstance(exc, RetryableError)
        assert not isinstance(exc, TerminalError)
        assert exc.attempts == 1

    def test_store_unavailable_is_neither(self):
        """Exhausted retries are not retried again."""
        exc = StoreUnavailableError("user-123", 1, 4, "timeout")
        assert isinstance(exc, LedgerError)
        assert not isinstance(exc, (TerminalError, RetryableError))


class TestInsufficientCreditsError:
    """Tests for InsufficientCreditsError."""

    def test_attributes(self):
        """Exception carries balance and required amount."""
        exc = InsufficientCreditsError("user-123", balance=6, required=10)
        assert exc.balance == 6
        assert exc.required == 10
        assert exc.amount == 10

    def test_message_format(self):
        """Message includes both numbers."""
        message = str(InsufficientCreditsError("user-123", 6, 10))
        assert "Need 10" in message
        assert "have 6" in message


class TestInvalidAmountError:
    """Tests for InvalidAmountError."""

    def test_default_reason(self):
        """Default reason describes the positive-integer rule."""
        exc = InvalidAmountError("user-123", -5)
        assert exc.reason == "Credit amount must be a positive integer"
        assert "-5" in str(exc)

    def test_custom_reason(self):
        """Custom reasons are kept."""
        exc = InvalidAmountError("user-123", 2.5, reason="Credit amount must be an integer")
        assert exc.reason == "Credit amount must be an integer"


class TestStoreErrors:
    """Tests for store error messages."""

    def test_conflict_names_resource(self):
        """Conflict message names the contended resource."""
        exc = StoreConflictError("credit account user-123")
        assert exc.resource == "credit account user-123"
        assert "Concurrent modification" in str(exc)

    def test_transient_wraps_cause(self):
        """Transient message includes the driver error."""
        assert "connection refused" in str(StoreTransientError("connection refused"))

    def test_unavailable_reports_attempts(self):
        """Exhaustion reports attempts and cause, never a balance."""
        exc = StoreUnavailableError("user-123", 3, 4, "timeout")
        assert exc.attempts == 4
        assert exc.cause == "timeout"
        assert "after 4 attempt(s)" in str(exc)
        assert not hasattr(exc, "balance")


class TestAuthorizationError:
    """Tests for AuthorizationError."""

    def test_attributes(self):
        """Required role and user are kept."""
        exc = AuthorizationError("admin", "user-123")
        assert exc.required_role == "admin"
        assert exc.user_id == "user-123"
        assert "admin role required" in str(exc)


class TestContextAttributes:
    """Tests for user context carried by errors."""

    def test_integrity_error_user_optional(self):
        """DataIntegrityError works with and without a user."""
        assert DataIntegrityError("constraint").user_id is None
        assert DataIntegrityError("constraint", user_id="user-123").user_id == "user-123"

    def test_history_limit_message(self):
        """The limit error names the allowed range."""
        exc = InvalidHistoryLimitError("user-123", 500, 100)
        assert exc.user_id == "user-123"
        assert exc.limit == 500
        assert "1..100" in str(exc)

    def test_deadline_names_operation(self):
        """Deadline errors name the operation that was cut short."""
        exc = DeadlineExceededError("check_credits_available")
        assert exc.operation == "check_credits_available"
        assert "check_credits_available" in str(exc)
