"""Structured log event name constants.

Key transitions log with an ``event`` field
(``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode the value
surfaces as ``extra.event``; in text mode the message is self-describing
and the event name is not printed.

Usage example::

    import logging
    from capbot.core import events

    logger = logging.getLogger(__name__)

    logger.info("Run started", extra={"event": events.RUN_START})
"""

from __future__ import annotations

__all__ = [
    # Run lifecycle
    "RUN_START",
    "RUN_COMPLETE",
    "RUN_SIGNAL",
    # Attempt lifecycle
    "ATTEMPT_START",
    "ATTEMPT_DONE",
    "ATTEMPT_CRASHED",
    "ATTEMPT_TIMEOUT",
    "ACQUISITION_SATISFIED",
    "LIMIT_FLAG_SET",
    # Targets
    "TARGET_SKIPPED",
    "TARGET_FAILED",
    "TARGET_SUCCESS",
    "LIMIT_VERIFY",
    # State
    "STATE_CORRUPT",
    "CACHE_ERROR",
    "CACHE_RESTORED",
    # Lifecycle rotation
    "ROTATION_SELECTED",
    "ROTATION_TERMINATED",
    "ROTATION_FAILED",
    # Notification
    "NOTIFY_ERROR",
]

# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------

#: :func:`~capbot.orchestrator.runner.run_once` started.
RUN_START: str = "RUN_START"

#: :func:`~capbot.orchestrator.runner.run_once` computed the exit code.
RUN_COMPLETE: str = "RUN_COMPLETE"

#: SIGTERM / SIGINT received during a run.
RUN_SIGNAL: str = "RUN_SIGNAL"

# ---------------------------------------------------------------------------
# Attempt lifecycle
# ---------------------------------------------------------------------------

ATTEMPT_START: str = "ATTEMPT_START"

#: Attempt produced a terminal AttemptResult.
ATTEMPT_DONE: str = "ATTEMPT_DONE"

#: Attempt task raised; converted to an Unknown result.
ATTEMPT_CRASHED: str = "ATTEMPT_CRASHED"

#: Attempt still running at the deadline; slot filled with Timeout.
ATTEMPT_TIMEOUT: str = "ATTEMPT_TIMEOUT"

#: A StateRecord already satisfies the request; provisioner not contacted.
ACQUISITION_SATISFIED: str = "ACQUISITION_SATISFIED"

#: A real LimitExceeded was recorded for a shape.
LIMIT_FLAG_SET: str = "LIMIT_FLAG_SET"

# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

#: Circuit breaker skipped a target.
TARGET_SKIPPED: str = "TARGET_SKIPPED"

TARGET_FAILED: str = "TARGET_FAILED"

TARGET_SUCCESS: str = "TARGET_SUCCESS"

#: LimitExceeded read-back started.
LIMIT_VERIFY: str = "LIMIT_VERIFY"

# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

#: State document failed to parse; reinitialised.
STATE_CORRUPT: str = "STATE_CORRUPT"

#: External cache get/put failed; degraded to local state only.
CACHE_ERROR: str = "CACHE_ERROR"

#: Local state was missing and was restored from the external cache.
CACHE_RESTORED: str = "CACHE_RESTORED"

# ---------------------------------------------------------------------------
# Lifecycle rotation
# ---------------------------------------------------------------------------

ROTATION_SELECTED: str = "ROTATION_SELECTED"

ROTATION_TERMINATED: str = "ROTATION_TERMINATED"

ROTATION_FAILED: str = "ROTATION_FAILED"

# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------

#: Notification delivery failed; the run outcome is unaffected.
NOTIFY_ERROR: str = "NOTIFY_ERROR"
