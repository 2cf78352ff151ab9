"""Core domain models, settings, logging configuration, and shared utilities."""

from capbot.core.exceptions import (
    CacheServiceError,
    CapbotError,
    ConfigError,
    NotificationError,
    OrchestratorError,
    ProvisionerError,
    ProvisionerTimeoutError,
    StateCorruptError,
    StorageError,
    TelegramError,
    TelegramRateLimitError,
)
from capbot.core.logging_config import JsonFormatter, configure_logging
from capbot.core.models import (
    AttemptResult,
    AttemptStatus,
    ErrorKind,
    InstanceDescriptor,
    LaunchRequest,
    ProvisionResult,
    RotationOutcome,
    Severity,
)
from capbot.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "AttemptResult",
    "AttemptStatus",
    "ErrorKind",
    "InstanceDescriptor",
    "LaunchRequest",
    "ProvisionResult",
    "RotationOutcome",
    "Severity",
    # Settings
    "Settings",
    # Exceptions: base
    "CapbotError",
    # Exceptions: config
    "ConfigError",
    # Exceptions: storage
    "StorageError",
    "StateCorruptError",
    "CacheServiceError",
    # Exceptions: provisioner
    "ProvisionerError",
    "ProvisionerTimeoutError",
    # Exceptions: notification
    "NotificationError",
    "TelegramError",
    "TelegramRateLimitError",
    # Exceptions: orchestrator
    "OrchestratorError",
]
