"""
Custom exception classes for the application.

All custom exceptions inherit from base AppException for consistent error
handling; the router layer turns them into the standard error envelope.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Error taxonomy shared by the sagas, step logs and API responses."""
    PRECONDITION = "precondition"
    SIGNER = "signer"
    VENUE = "venue"
    CONFIRMATION_AMBIGUOUS = "confirmation_ambiguous"
    LEGACY_STATE = "legacy_state"
    LEDGER = "ledger"
    INTERNAL = "internal"


class AppException(Exception):
    """
    Base application exception.

    All custom exceptions should inherit from this class.

    Attributes:
        message: Error message
        code: Error code
        status_code: HTTP status code
        details: Optional structured details for the response body
    """

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize AppException.

        Args:
            message: Error message
            code: Error code
            status_code: HTTP status code
            details: Optional structured details
        """
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authorization Exceptions

class AuthenticationError(AppException):
    """Caller's external wallet could not be identified."""

    def __init__(self, message: str = "Wallet address header is required"):
        super().__init__(message=message, code="AUTHENTICATION_ERROR", status_code=401)


class PermissionDeniedError(AppException):
    """Permission denied."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message=message, code="PERMISSION_DENIED", status_code=403)


# Resource Exceptions

class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, message: str = "Resource not found", code: str = "NOT_FOUND"):
        super().__init__(message=message, code=code, status_code=404)


class TradingBotNotFoundError(NotFoundError):
    """Trading bot not found."""

    def __init__(self, message: str = "Trading bot not found"):
        super().__init__(message=message, code="TRADING_BOT_NOT_FOUND")


class AgentWalletNotFoundError(NotFoundError):
    """Agent wallet not found."""

    def __init__(self, message: str = "Agent wallet not found"):
        super().__init__(message=message, code="AGENT_WALLET_NOT_FOUND")


class OperationNotFoundError(NotFoundError):
    """Lifecycle operation not found."""

    def __init__(self, message: str = "Lifecycle operation not found"):
        super().__init__(message=message, code="OPERATION_NOT_FOUND")


# Validation Exceptions

class ValidationError(AppException):
    """Validation error."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message=message, code="VALIDATION_ERROR", status_code=422)


# Lifecycle Exceptions

class PreconditionError(AppException):
    """
    A lifecycle operation was rejected before any state transition.

    Fully recoverable: nothing was built, signed or submitted.
    """

    category = ErrorCategory.PRECONDITION

    def __init__(self, message: str = "Precondition failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="PRECONDITION_FAILED", status_code=409, details=details)


class OperationInProgressError(AppException):
    """Another lifecycle operation already owns the target."""

    def __init__(
        self,
        message: str = "Another operation is already in progress for this target",
        operation_id: Optional[str] = None
    ):
        details = {"operation_id": operation_id} if operation_id else None
        super().__init__(message=message, code="OPERATION_IN_PROGRESS", status_code=409, details=details)


class InvalidOperationStateError(AppException):
    """Operation is not in a state that accepts the requested action."""

    def __init__(self, message: str = "Operation is not in a valid state for this action"):
        super().__init__(message=message, code="INVALID_OPERATION_STATE", status_code=409)


class LedgerReadError(AppException):
    """Ledger could not be read; nothing was changed. Safe to retry."""

    def __init__(self, message: str = "Ledger is temporarily unavailable"):
        super().__init__(message=message, code="LEDGER_UNAVAILABLE", status_code=503)


class StaleSnapshotError(AppException):
    """
    A capital snapshot could not be produced without hiding a balance.

    Raised when a ledger read fails and there is no prior value to fall back on.
    """

    def __init__(self, message: str = "Capital snapshot unavailable: ledger read failed with no prior value"):
        super().__init__(message=message, code="SNAPSHOT_STALE", status_code=503)


# Database Exceptions

class DatabaseError(AppException):
    """Database error."""

    def __init__(self, message: str = "Database error"):
        super().__init__(message=message, code="DATABASE_ERROR", status_code=500)


class InternalServerError(AppException):
    """Internal server error."""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message=message, code="INTERNAL_SERVER_ERROR", status_code=500)
