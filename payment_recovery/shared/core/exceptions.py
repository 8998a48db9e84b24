from typing import Optional, Dict, Any


class RecoveryException(Exception):
    """Base exception for all payment recovery errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.retryable = retryable


class InvalidInputError(RecoveryException):
    """Raised when a caller supplies a missing or malformed identifier or field."""
    def __init__(self, message: str, code: str = "invalid_input", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ResourceNotFoundError(RecoveryException):
    """Raised when a referenced payment, subscription, retry or campaign does not exist."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class InvalidStateError(RecoveryException):
    """Raised when an operation's preconditions do not hold (e.g. payment already paid)."""
    def __init__(self, message: str, code: str = "invalid_state", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)


class InvalidTransitionError(InvalidStateError):
    """Raised when the subscription state machine rejects a transition."""
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Subscription cannot move from '{current}' to '{target}'",
            code="invalid_transition",
            details={"current": current, "target": target}
        )


class LedgerUnavailableError(RecoveryException):
    """
    Raised when the ledger store cannot complete a transaction.
    Nothing was committed; the caller should retry the whole operation.
    """
    def __init__(self, message: str = "Ledger store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="ledger_unavailable", status_code=503, details=details, retryable=True)


class GatewayError(RecoveryException):
    """Raised when the payment gateway adapter cannot be used or returns garbage."""
    def __init__(self, message: str, code: str = "gateway_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=502, details=details, retryable=True)


class ConfigurationError(RecoveryException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
