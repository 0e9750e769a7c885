class TransactionError(Exception):
    """Base class for failures reported to the caller of the transaction service."""

    status_code = 500
    error_code = "TRANSACTION_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(TransactionError, ValueError):
    """Request rejected before any storage access."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class AccountNotFound(TransactionError):
    status_code = 404
    error_code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: int):
        super().__init__("Account not found")
        self.account_id = account_id


class InsufficientBalance(TransactionError):
    status_code = 400
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, account_id: int):
        super().__init__("Insufficient balance")
        self.account_id = account_id


class LockTimeout(TransactionError):
    """The account hold could not be acquired within the configured wait."""

    status_code = 503
    error_code = "LOCK_TIMEOUT"

    def __init__(self, account_id: int, timeout: float):
        super().__init__("Account is busy, try again later")
        self.account_id = account_id
        self.timeout = timeout


class StorageFailure(TransactionError):
    """The unit of work was rolled back because the data store failed."""

    status_code = 500
    error_code = "STORAGE_FAILURE"


class HandleReleased(RuntimeError):
    """An account handle was used after its hold was released."""
