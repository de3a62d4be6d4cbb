"""
Exception Classes - Strongly typed exception hierarchy.

Errors are classified as terminal (business-rule violations, never retried)
or retryable (transient store failures). Only the retry policy acts on the
retryable class.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class TerminalError(LedgerError):
    """Business-rule violation. Surfaces immediately, never retried."""

    pass


class RetryableError(LedgerError):
    """Transient infrastructure failure. Safe to retry."""

    def __init__(self, message: str) -> None:
        self.message = message
        self.attempts = 1
        super().__init__(message)


class AccountNotFoundError(TerminalError):
    """Raised when a credit account doesn't exist."""

    def __init__(self, user_id: str, amount: int | None = None) -> None:
        self.user_id = user_id
        self.amount = amount
        super().__init__(f"Credit account not found: {user_id}")


class InsufficientCreditsError(TerminalError):
    """Raised when account balance is below the requested debit."""

    def __init__(self, user_id: str, balance: int, required: int) -> None:
        self.user_id = user_id
        self.balance = balance
        self.required = required
        self.amount = required
        super().__init__(f"Insufficient credits. Need {required}, have {balance}")


class InvalidAmountError(TerminalError):
    """Raised when a credit amount is not a positive integer."""

    def __init__(
        self,
        user_id: str,
        amount: object,
        reason: str = "Credit amount must be a positive integer",
    ) -> None:
        self.user_id = user_id
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid credit amount {amount!r}: {reason}")


class InvalidTransactionTypeError(TerminalError):
    """Raised when a transaction type is not valid for the operation."""

    def __init__(self, user_id: str, transaction_type: str) -> None:
        self.user_id = user_id
        self.transaction_type = transaction_type
        super().__init__(f"Transaction type not allowed here: {transaction_type}")


class InvalidHistoryLimitError(TerminalError):
    """Raised when a transaction history limit is out of range."""

    def __init__(self, user_id: str, limit: object, maximum: int) -> None:
        self.user_id = user_id
        self.limit = limit
        self.maximum = maximum
        super().__init__(f"History limit must be within 1..{maximum}, got {limit!r}")


class IdempotencyConflictError(TerminalError):
    """Raised when an idempotency key is reused with different data."""

    def __init__(self, user_id: str, idempotency_key: str) -> None:
        self.user_id = user_id
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key {idempotency_key} already used with a different request"
        )


class DataIntegrityError(TerminalError):
    """Raised when a store integrity constraint is violated."""

    def __init__(self, message: str, user_id: str | None = None) -> None:
        self.message = message
        self.user_id = user_id
        super().__init__(f"Data integrity error: {message}")


class AuthorizationError(TerminalError):
    """Raised when the caller lacks the required privilege."""

    def __init__(self, required_role: str, user_id: str | None = None) -> None:
        self.required_role = required_role
        self.user_id = user_id
        super().__init__(f"Authorization failed: {required_role} role required")


class StoreConflictError(RetryableError):
    """Raised when a unit of work keeps losing write conflicts."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class StoreTransientError(RetryableError):
    """Raised when the store is unreachable or a connection fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Store temporarily unavailable: {message}")


class DeadlineExceededError(RetryableError):
    """Raised when the caller's deadline passes before the next attempt."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Deadline exceeded before next attempt of {operation}")


class StoreUnavailableError(LedgerError):
    """Raised when retries are exhausted. The balance is unknown, not zero."""

    def __init__(
        self,
        user_id: str,
        amount: int | None,
        attempts: int,
        cause: str,
    ) -> None:
        self.user_id = user_id
        self.amount = amount
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Credit store unavailable for {user_id} after {attempts} attempt(s): {cause}"
        )
