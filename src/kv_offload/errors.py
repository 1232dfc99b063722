"""
Error definitions for kv-offload.

This module defines the error hierarchy used by the ingestion path, the
retrieval path and the offload sweeper. Tier failures are never surfaced to
callers of ingestion; they are caught and turned into a cold-tier fallback.
"""

from datetime import datetime, timezone
from typing import Any


class KVOError(Exception):
    """
    Base exception for all kv-offload errors.

    Attributes:
        code: Error code (e.g., "KVO-1001")
        context: Additional context for debugging
        cause: Original exception if wrapping another error
        timestamp: When the error occurred
    """

    code: str = "KVO-9999"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.code = code or self.__class__.code
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an HTTP response (user-safe)."""
        return {
            "error": self.__class__.__name__,
            "message": str(self),
            "code": self.code,
            "retryable": self.retryable,
        }

    def to_log_dict(self) -> dict[str, Any]:
        """Full context for logging."""
        return {
            **self.to_dict(),
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# Validation Errors (KVO-1xxx)
# =============================================================================


class InvalidInput(KVOError):
    """Malformed request. Rejected immediately, never retried."""

    code = "KVO-1000"

    def __init__(self, reason: str, field: str | None = None):
        super().__init__(
            f"Invalid input: {reason}",
            context={"field": field, "reason": reason} if field else {"reason": reason},
        )
        self.field = field


# =============================================================================
# Not Found Errors (KVO-2xxx)
# =============================================================================


class NotFoundError(KVOError):
    """Base class for missing-resource errors."""

    code = "KVO-2000"


class KeyNotFoundError(NotFoundError):
    """Key is resident in no tier."""

    code = "KVO-2001"

    def __init__(self, key: str, tier: str | None = None):
        super().__init__(
            f"Key not found: {key}",
            context={"key": key, "tier": tier},
        )
        self.key = key
        self.tier = tier


# =============================================================================
# Serialization Errors (KVO-3xxx)
# =============================================================================


class SerializationFailure(KVOError):
    """Record payload could not be encoded for the fast tier."""

    code = "KVO-3001"

    def __init__(self, key: str, details: str = ""):
        super().__init__(
            f"Cannot serialize value for key {key!r}: {details}",
            context={"key": key, "details": details},
        )


# =============================================================================
# Tier Errors (KVO-4xxx)
# =============================================================================


class TransientTierFailure(KVOError):
    """A tier was unreachable, over capacity, or failed an operation."""

    code = "KVO-4000"
    retryable = True

    def __init__(
        self,
        message: str,
        tier: str = "unknown",
        operation: str = "",
        cause: Exception | None = None,
    ):
        super().__init__(
            message,
            context={"tier": tier, "operation": operation},
            cause=cause,
        )
        self.tier = tier
        self.operation = operation


class FastTierError(TransientTierFailure):
    """Fast tier operation failed."""

    code = "KVO-4010"

    def __init__(self, operation: str, details: str = "", cause: Exception | None = None):
        super().__init__(
            f"Fast tier {operation} failed: {details}" if details else f"Fast tier {operation} failed",
            tier="fast",
            operation=operation,
            cause=cause,
        )


class ColdTierError(TransientTierFailure):
    """Cold tier operation failed."""

    code = "KVO-4020"

    def __init__(self, operation: str, details: str = "", cause: Exception | None = None):
        super().__init__(
            f"Cold tier {operation} failed: {details}" if details else f"Cold tier {operation} failed",
            tier="cold",
            operation=operation,
            cause=cause,
        )


class ColdTierWriteError(ColdTierError):
    """Failed to write an object to the cold tier."""

    code = "KVO-4021"

    def __init__(self, path: str, details: str = "", cause: Exception | None = None):
        super().__init__("write", details or path, cause=cause)
        self.context["path"] = path
        self.path = path


class ColdTierReadError(ColdTierError):
    """Failed to read an object from the cold tier."""

    code = "KVO-4022"

    def __init__(self, path: str, details: str = "", cause: Exception | None = None):
        super().__init__("read", details or path, cause=cause)
        self.context["path"] = path
        self.path = path


# =============================================================================
# Cluster Errors (KVO-5xxx)
# =============================================================================


class PartialClusterFailure(KVOError):
    """Some fast-tier partitions were unreachable; the rest were processed."""

    code = "KVO-5001"
    retryable = True

    def __init__(self, operation: str, failed: list[str]):
        super().__init__(
            f"{len(failed)} partition(s) failed during {operation}",
            context={"operation": operation, "failed_partitions": failed},
        )
        self.failed = failed


# =============================================================================
# Startup Errors (KVO-6xxx)
# =============================================================================


class FatalStartupFailure(KVOError):
    """A required dependency was unreachable at startup."""

    code = "KVO-6001"

    def __init__(self, component: str, details: str = "", cause: Exception | None = None):
        super().__init__(
            f"Cannot start: {component} unavailable",
            context={"component": component, "details": details},
            cause=cause,
        )
        self.component = component


# =============================================================================
# Internal Errors (KVO-9xxx)
# =============================================================================


class InternalError(KVOError):
    """Unexpected internal error."""

    code = "KVO-9001"

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(message)


# =============================================================================
# Error Handling Utilities
# =============================================================================


def classify_error(error: Exception) -> KVOError:
    """
    Convert any exception into an appropriate KVOError.

    This ensures all errors returned to clients follow a consistent format.
    """
    if isinstance(error, KVOError):
        return error

    error_type = type(error).__name__
    error_msg = str(error)

    if isinstance(error, (TypeError, ValueError)) and "serializ" in error_msg.lower():
        return SerializationFailure("unknown", error_msg)
    if isinstance(error, OSError):
        return ColdTierError("io", error_msg, cause=error)
    if "timeout" in error_type.lower() or "timeout" in error_msg.lower():
        return TransientTierFailure(f"Timeout: {error_msg}", cause=error)
    if "connection" in error_type.lower() or "connection" in error_msg.lower():
        return TransientTierFailure(f"Connection error: {error_msg}", cause=error)

    return InternalError(f"Unexpected error: {error_type}: {error_msg}")


class ErrorContext:
    """
    Context manager for error handling with automatic logging and classification.

    Usage:
        async with ErrorContext("ingest", logger=logger, key=key):
            # ... code that might raise ...
    """

    def __init__(self, operation: str, logger=None, **context):
        self.operation = operation
        self.context = context
        self._logger = logger

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            kvo_error = classify_error(exc_val)

            kvo_error.context.update(self.context)
            kvo_error.context["operation"] = self.operation

            # Expected outcomes are not logged as errors
            if self._logger and not isinstance(kvo_error, (InvalidInput, NotFoundError)):
                self._logger.error(
                    f"Error in {self.operation}",
                    error_code=kvo_error.code,
                    **kvo_error.context,
                )

            if not isinstance(exc_val, KVOError):
                raise kvo_error from exc_val

        return False
