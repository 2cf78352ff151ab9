"""Process-wide logging setup for Capbot.

:func:`configure_logging` runs once, first thing in ``capbot.__main__``.
Modules only ever do::

    import logging
    logger = logging.getLogger(__name__)

Every record leaving the root handler carries two correlation fields,
filled from context variables by :class:`RunContextFilter`:

* ``run_id``: eight hex characters, one per
  :func:`~capbot.orchestrator.runner.run_once` call;
* ``attempt``: the slot label (``A``, ``B``...) of the attempt task that
  emitted the record.  The two attempts run concurrently and interleave in
  the log; the label keeps them apart.

Both are ``"-"`` outside a run.  Records go to **stderr** so that commands
printing to stdout (``capbot state print``) stay pipeable.

Environment, read when :func:`configure_logging` is called:

* ``LOG_LEVEL``: ``DEBUG``, ``INFO`` (default), ``WARNING`` or ``ERROR``;
* ``LOG_FORMAT``: ``text`` (default) or ``json``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Final

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "RUN_ID_CTX",
    "ATTEMPT_CTX",
    "RunContextFilter",
]

logger = logging.getLogger(__name__)

#: Current run id; the attempt tasks inherit it when they are created.
RUN_ID_CTX: ContextVar[str] = ContextVar("run_id", default="-")

#: Slot label of the attempt task emitting the record.  Each task sets it on
#: its own context copy.
ATTEMPT_CTX: ContextVar[str] = ContextVar("attempt", default="-")

LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FORMATS: Final[tuple[str, ...]] = ("text", "json")

_TEXT_LAYOUT: Final[str] = (
    "%(asctime)s %(levelname)-8s [%(run_id)s/%(attempt)s] %(name)s: %(message)s"
)

#: Third-party loggers held at WARNING unless running at DEBUG.
_CHATTY: Final[tuple[str, ...]] = ("httpx", "httpcore", "asyncio")


class RunContextFilter(logging.Filter):
    """Stamp ``run_id`` and ``attempt`` on each record that reaches the handler."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.run_id = RUN_ID_CTX.get()
        record.attempt = ATTEMPT_CTX.get()
        return True


def _pick(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    chosen = (value or os.environ.get(env_var) or default).strip()
    normalised = chosen.upper() if env_var == "LOG_LEVEL" else chosen.lower()
    if normalised not in allowed:
        raise ValueError(f"{env_var}={chosen!r} is not one of {', '.join(allowed)}")
    return normalised


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install the Capbot handler on the root logger.

    Args:
        level: Overrides ``$LOG_LEVEL``.
        fmt: Overrides ``$LOG_FORMAT``.
        force: Replace existing root handlers.  Without it, a root logger
            that already has handlers (pytest, an embedding application)
            only gets its level adjusted.

    Raises:
        ValueError: Unknown level or format.
    """
    resolved_level = _pick(level, "LOG_LEVEL", "INFO", LEVELS)
    resolved_fmt = _pick(fmt, "LOG_FORMAT", "text", FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RunContextFilter())
    handler.setFormatter(
        JsonFormatter() if resolved_fmt == "json" else logging.Formatter(_TEXT_LAYOUT)
    )
    root.handlers = [handler]

    chatty_level = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _CHATTY:
        logging.getLogger(name).setLevel(chatty_level)


# Attribute names every LogRecord has; anything else arrived through ``extra``.
_BUILTIN_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "run_id", "attempt"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers.

    ::

        {"ts": "2026-10-19T06:00:03.412Z", "level": "INFO",
         "logger": "capbot.orchestrator.attempt", "run_id": "1a2b3c4d",
         "attempt": "A", "message": "Target AD-1 failed for a1-flex-sg: capacity.",
         "extra": {"event": "TARGET_FAILED"}}

    ``exc_info`` is added only for records carrying an exception.
    Unserialisable ``extra`` values are rendered with :func:`repr`.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "run_id": getattr(record, "run_id", RUN_ID_CTX.get()),
            "attempt": getattr(record, "attempt", ATTEMPT_CTX.get()),
            "message": record.getMessage(),
            "extra": {
                key: value
                for key, value in vars(record).items()
                if key not in _BUILTIN_ATTRS
            },
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=repr, ensure_ascii=False)
