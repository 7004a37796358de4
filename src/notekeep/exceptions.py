"""Custom exceptions for the notekeep storage engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Entity errors (1xxx)
    NOTE_NOT_FOUND = 1001
    FOLDER_NOT_FOUND = 1002

    # Store errors (4xxx)
    STORE_CONNECTION_FAILED = 4001
    STORE_UNSUPPORTED = 4002
    STORE_CONNECTION_LOST = 4003
    TRANSACTION_READ_FAILED = 4101
    TRANSACTION_WRITE_FAILED = 4102
    TRANSACTION_DELETE_FAILED = 4103
    OPERATION_TIMEOUT = 4201

    # Sync errors (5xxx)
    SYNC_PUSH_FAILED = 5001

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_ENTITY_TYPE = 7002
    MISSING_REQUIRED_FIELD = 7003
    UNSUPPORTED_FORMAT = 7004


class NotekeepError(Exception):
    """Base exception for all notekeep errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(NotekeepError):
    """Raised when a note or folder cannot be found."""

    def __init__(
        self,
        entity_id: str,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOTE_NOT_FOUND,
    ):
        super().__init__(
            message or f"Entity with ID '{entity_id}' not found",
            code=code,
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class ValidationError(NotekeepError):
    """Raised when an entity fails validation in strict mode."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        errors: Optional[list] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details: Dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety
        if errors:
            details["errors"] = errors[:10]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
        self.errors = list(errors) if errors else []


class StoreError(NotekeepError):
    """Base class for persistent store failures."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
        code: ErrorCode = ErrorCode.TRANSACTION_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if collection:
            details["collection"] = collection
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.collection = collection
        self.original_error = original_error


class StoreConnectionError(StoreError):
    """Raised when the store is unreachable, unsupported or was disconnected.

    Fatal to the operation that raised it. Opening is retried with backoff;
    after a runtime disconnect callers must re-open the store.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        attempts: Optional[int] = None,
        code: ErrorCode = ErrorCode.STORE_CONNECTION_FAILED,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            code=code,
            original_error=original_error,
        )
        self.attempts = attempts
        if attempts is not None:
            self.details["attempts"] = attempts


class TransactionError(StoreError):
    """Raised when a store read or write fails mid-transaction.

    The transaction has been rolled back; nothing it wrote is visible.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
        code: ErrorCode = ErrorCode.TRANSACTION_WRITE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            collection=collection,
            code=code,
            original_error=original_error,
        )


class OperationTimeoutError(StoreError):
    """Raised when an operation exceeds its time bound.

    The underlying operation is not aborted. Safe to retry.
    """

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Operation '{operation}' timed out after {timeout}s",
            operation=operation,
            code=ErrorCode.OPERATION_TIMEOUT,
        )
        self.timeout = timeout
        self.details["timeout"] = timeout


class SyncError(NotekeepError):
    """Raised when pushing a single note to the remote fails.

    Contained entirely within the sync queue.
    """

    def __init__(
        self,
        message: str,
        note_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_PUSH_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if note_id:
            details["note_id"] = note_id
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.note_id = note_id
        self.original_error = original_error


class ConfigurationError(NotekeepError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
