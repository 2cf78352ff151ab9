"""Errors raised by capbot code itself.

A provider refusing a launch (no capacity, throttled, over quota...) is not
an exception here.  The provisioner hands back the raw error payload, the
:mod:`~capbot.orchestrator.classifier` turns it into an
:class:`~capbot.core.models.ErrorKind`, and the attempt carries on.  The
classes below are for the machinery around that: a broken state file, an
unreachable cache service, a missing ``oci`` binary, a failed Telegram call.

::

    CapbotError
    ├── ConfigError
    ├── StorageError
    │   ├── StateCorruptError
    │   └── CacheServiceError
    ├── ProvisionerError
    │   ├── ProvisionerTimeoutError
    │   └── LaunchUnconfirmedError
    ├── NotificationError
    │   └── TelegramError
    │       └── TelegramRateLimitError
    └── OrchestratorError

``capbot.__main__`` maps :class:`ConfigError` and :class:`OrchestratorError`
to exit code 3; the others are caught closer to where they happen.
"""

from __future__ import annotations

import logging

__all__ = [
    "CapbotError",
    "ConfigError",
    "StorageError",
    "StateCorruptError",
    "CacheServiceError",
    "ProvisionerError",
    "ProvisionerTimeoutError",
    "LaunchUnconfirmedError",
    "NotificationError",
    "TelegramError",
    "TelegramRateLimitError",
    "OrchestratorError",
]

logger = logging.getLogger(__name__)


class CapbotError(Exception):
    """Common ancestor; ``except CapbotError`` catches anything raised here."""


class ConfigError(CapbotError):
    """Settings are present but unusable, e.g. no availability domain or no
    compartment id when ``run`` is requested."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(CapbotError):
    """The state file or the cache could not be read or written."""


class StateCorruptError(StorageError):
    """A state document is not valid JSON or does not match the schema.

    :meth:`~capbot.storage.state.StateStore.load` catches this itself,
    quarantines the file and starts from an empty state.

    Args:
        source: File path or cache key the document was read from.
        reason: What was wrong with it.
    """

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Corrupt state in {source}: {reason}")


class CacheServiceError(StorageError):
    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Cache {operation} failed: {message}")


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------


class ProvisionerError(CapbotError):
    """The provider tooling itself failed: binary missing or output unparsable.

    Args:
        operation: ``"acquire"``, ``"list"``, ``"get"`` or ``"terminate"``.
        message: Details.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


class ProvisionerTimeoutError(ProvisionerError):
    """One CLI invocation outlived ``OCI_CALL_TIMEOUT_S`` and was killed.

    The text contains ``timeout``, which the classifier reads as
    :attr:`~capbot.core.models.ErrorKind.NETWORK`.
    """

    def __init__(self, operation: str, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(operation, f"call timeout after {timeout_s:.0f}s")


class LaunchUnconfirmedError(ProvisionerError):
    """A launch exited 0 but its output carried no instance id.

    The instance may well exist; the attempt reads the inventory back by
    display name before it counts the target as failed.
    """

    def __init__(self, display_name: str) -> None:
        self.display_name = display_name
        super().__init__(
            "acquire", f"launch of {display_name!r} succeeded but no instance id in output"
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationError(CapbotError):
    """A notification could not be delivered."""


class TelegramError(NotificationError):
    """``sendMessage`` failed after retries, or answered ``ok: false``.

    Args:
        message: Telegram's ``description`` or the transport error.
        status_code: HTTP status, ``None`` when no response arrived.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        where = "no response" if status_code is None else f"HTTP {status_code}"
        super().__init__(f"Telegram sendMessage failed ({where}): {message}")


class TelegramRateLimitError(TelegramError):
    """HTTP 429 with a ``retry_after`` too long to wait out within the run."""

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(f"throttled for {retry_after:g}s", status_code=429)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class OrchestratorError(CapbotError):
    """A parallel run was asked for with no requests or with repeated ids."""
