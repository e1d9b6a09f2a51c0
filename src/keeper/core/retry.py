"""
Error hierarchy and retry helpers for transient failures.

This module provides:
- Error type hierarchy (retryable vs non-retryable)
- Classification of third-party (web3, websocket, HTTP) exceptions
- Fixed-interval retry loops built on tenacity

Usage:
    from keeper.core.retry import retry_forever, TransientError

    async for attempt in retry_forever(1.0, operation="status", market=addr):
        with attempt:
            status = await ledger.status(addr)
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_fixed,
)

log = structlog.get_logger()


# =============================================================================
# Error Type Hierarchy
# =============================================================================


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # RPC hiccups, dropped sockets - retry
    PERMANENT = "permanent"  # Reverts, bad config - do NOT retry
    UNKNOWN = "unknown"  # Unclassified - treated as transient


class KeeperError(Exception):
    """Base exception for all keeper errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(KeeperError):
    """Error that may succeed on retry."""

    category = ErrorCategory.TRANSIENT


class LedgerReadError(TransientError):
    """A read call or log query against the ledger failed."""

    pass


class SubscriptionError(TransientError):
    """The live log subscription failed or was dropped."""

    pass


class PermanentError(KeeperError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


class ContractRevertError(PermanentError):
    """A contract call reverted (e.g. market not registered)."""

    pass


class ConfigurationError(PermanentError):
    """Required configuration is missing or invalid. Fatal at start-up."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause)
        self.missing_keys = missing_keys or []


class TxPipelineError(KeeperError):
    """A transaction intent failed somewhere in the dispatch pipeline.

    The stage is one of "build", "fee", "submit" or "confirm". Intents that
    fail are dropped, never resubmitted.
    """

    category = ErrorCategory.PERMANENT

    def __init__(self, stage: str, message: str, cause: Optional[Exception] = None):
        super().__init__(message, cause)
        self.stage = stage


# =============================================================================
# Error Classification Utilities
# =============================================================================

# Only contract reverts are permanent; malformed or failed RPC replies retry.
_PERMANENT_PATTERNS = ("revert",)

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "rate limit",
    "too many requests",
    "502",
    "503",
    "504",
    "service unavailable",
    "temporarily",
)


def classify_error(error: Exception) -> ErrorCategory:
    """Classify an error into a category.

    Args:
        error: The exception to classify.

    Returns:
        ErrorCategory for the error.
    """
    if isinstance(error, KeeperError):
        return error.category

    from web3.exceptions import BadFunctionCallOutput, ContractLogicError

    if isinstance(error, (ContractLogicError, BadFunctionCallOutput)):
        return ErrorCategory.PERMANENT

    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if any(p in error_str or p in error_type for p in _PERMANENT_PATTERNS):
        return ErrorCategory.PERMANENT
    if any(p in error_str or p in error_type for p in _TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable. Unknown errors are retried."""
    return classify_error(error) != ErrorCategory.PERMANENT


def wrap_external_error(
    error: Exception,
    context: Optional[str] = None,
) -> Union[TransientError, PermanentError]:
    """Wrap a third-party read error in the keeper's hierarchy.

    Contract reverts become ContractRevertError; everything that is not
    clearly permanent becomes LedgerReadError so callers retry it.

    Args:
        error: The external exception.
        context: Optional context for the error message.
    """
    if isinstance(error, (TransientError, PermanentError)):
        return error

    message = f"{context}: {error}" if context else str(error)
    if classify_error(error) == ErrorCategory.PERMANENT:
        return ContractRevertError(message, cause=error)
    return LedgerReadError(message, cause=error)


# =============================================================================
# Retry helpers
# =============================================================================


def _log_retry(context: dict[str, Any]) -> Callable[[RetryCallState], None]:
    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


def retry_forever(
    interval: float,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    max_attempts: Optional[int] = None,
    **log_context: Any,
) -> AsyncRetrying:
    """Build a fixed-interval retry loop for transient failures.

    Only TransientError is retried; anything else propagates on the first
    attempt. With no max_attempts the loop never gives up.

    Args:
        interval: Seconds to wait between attempts.
        sleep: Awaitable sleep used between attempts (tests inject a fake clock).
        max_attempts: Optional cap on attempts.
        **log_context: Extra fields for the retry log line.
    """
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts) if max_attempts else stop_never,
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(TransientError),
        before_sleep=_log_retry(log_context),
        reraise=True,
        **kwargs,
    )
