"""
Error handling framework for the checkpoint engine.

This module provides:
- A hierarchical exception taxonomy rooted at CheckpointError
- Error context preservation (session, chain, operation)
- Structured, serializable error responses
- An error_context helper that annotates or wraps escaping errors
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager

from .logging import get_logger


logger = get_logger("agent-checkpoints.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    LOOKUP = "lookup"
    INTEGRITY = "integrity"
    VALIDATION = "validation"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    INTERNAL = "internal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=_utcnow)
    session_id: Optional[str] = None
    chain_key: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class CheckpointError(Exception):
    """Base exception for all checkpoint engine errors."""

    code: str = "CHECKPOINT_ERROR"
    default_message: str = "An error occurred in the checkpoint engine"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if "session_id" in kwargs and not self.context.session_id:
            self.context.session_id = kwargs["session_id"]
        if "chain_key" in kwargs and not self.context.chain_key:
            self.context.chain_key = kwargs["chain_key"]

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "session_id": self.context.session_id,
                    "chain_key": self.context.chain_key,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


# Lookup errors

class NotFoundError(CheckpointError):
    """Unknown session, chain key, or record index."""
    code = "NOT_FOUND"
    default_message = "Checkpoint not found"
    category = ErrorCategory.LOOKUP
    severity = ErrorSeverity.WARNING


# Integrity errors

class BaseProtectedError(CheckpointError):
    """Illegal mutation of the base record while later records exist."""
    code = "BASE_PROTECTED"
    default_message = "The base checkpoint cannot be removed while later checkpoints exist"
    category = ErrorCategory.INTEGRITY
    severity = ErrorSeverity.WARNING

    def get_suggestions(self) -> List[str]:
        return [
            "Delete later checkpoints first, or",
            "use merge or compact to fold history into a new base"
        ]


class InvalidRangeError(CheckpointError):
    """Out-of-bounds or non-contiguous index range."""
    code = "INVALID_RANGE"
    default_message = "Invalid checkpoint range"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING


class CorruptRecordError(CheckpointError):
    """A payload could not be decompressed or did not reproduce its content."""
    code = "CORRUPT_RECORD"
    default_message = "Checkpoint record is corrupt"
    category = ErrorCategory.INTEGRITY
    severity = ErrorSeverity.ERROR

    def get_suggestions(self) -> List[str]:
        return [
            "Restore from an earlier full checkpoint",
            "Run optimize to rewrite anchors from intact history"
        ]


# Resource errors

class BudgetExceededError(CheckpointError):
    """Storage usage stays over budget after eviction."""
    code = "BUDGET_EXCEEDED"
    default_message = "Checkpoint storage budget exceeded"
    category = ErrorCategory.RESOURCE
    severity = ErrorSeverity.WARNING

    def get_suggestions(self) -> List[str]:
        return [
            "Raise checkpoint.max_storage_bytes",
            "Compact or close active sessions"
        ]


# Storage and configuration errors

class StorageError(CheckpointError):
    """Storage backend failure."""
    code = "STORAGE_ERROR"
    default_message = "Storage backend error"
    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.ERROR


class ConfigurationError(CheckpointError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.ERROR

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify AGENT_CKPT_* environment variables"
        ]


class ValidationError(CheckpointError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


@contextmanager
def error_context(
    component: str,
    operation: str,
    session_id: Optional[str] = None,
    chain_key: Optional[str] = None,
    **metadata
):
    """
    Annotate errors escaping the block with where they happened.

    CheckpointErrors get their context filled in and are re-raised as-is.
    Anything else is wrapped into a CheckpointError with the original as cause.

    Args:
        component: Component name
        operation: Operation name
        session_id: Session the operation ran against
        chain_key: Chain the operation ran against
        **metadata: Additional context metadata
    """
    try:
        yield
    except CheckpointError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.session_id = e.context.session_id or session_id
        e.context.chain_key = e.context.chain_key or chain_key
        e.context.metadata.update(metadata)
        logger.debug("checkpoint_error_in_context", code=e.code, operation=operation, error=e.message)
        raise
    except Exception as e:
        wrapped = CheckpointError(
            message=str(e),
            context=ErrorContext(
                component=component,
                operation=operation,
                session_id=session_id,
                chain_key=chain_key,
                metadata=metadata
            ),
            cause=e
        )
        logger.error(
            "unexpected_error_in_context",
            error=wrapped.to_dict(),
            exc_info=True
        )
        raise wrapped from e


__all__ = [
    'CheckpointError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'NotFoundError',
    'BaseProtectedError',
    'InvalidRangeError',
    'CorruptRecordError',
    'BudgetExceededError',
    'StorageError',
    'ConfigurationError',
    'ValidationError',
    'error_context',
]
