"""Core framework infrastructure - config, logging, lifecycle, retry, timers."""

from keeper.core.config import ConfigManager, KeeperSettings
from keeper.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus, worst_status
from keeper.core.logging import bind_keeper_context, get_logger, setup_logging
from keeper.core.retry import (
    ConfigurationError,
    ContractRevertError,
    ErrorCategory,
    KeeperError,
    LedgerReadError,
    PermanentError,
    SubscriptionError,
    TransientError,
    TxPipelineError,
    classify_error,
    is_retryable,
    retry_forever,
    wrap_external_error,
)
from keeper.core.shutdown import ShutdownManager, ShutdownPhase
from keeper.core.timers import DeferredAction

__all__ = [
    # Config
    "ConfigManager",
    "KeeperSettings",
    # Logging
    "setup_logging",
    "get_logger",
    "bind_keeper_context",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    "worst_status",
    "ShutdownManager",
    "ShutdownPhase",
    # Errors
    "ErrorCategory",
    "KeeperError",
    "TransientError",
    "LedgerReadError",
    "SubscriptionError",
    "PermanentError",
    "ContractRevertError",
    "ConfigurationError",
    "TxPipelineError",
    # Retry
    "classify_error",
    "is_retryable",
    "retry_forever",
    "wrap_external_error",
    # Timers
    "DeferredAction",
]
