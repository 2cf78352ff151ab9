"""Runtime context for a single Capbot execution.

Encapsulates operating-mode flags chosen on the command line.  One
:class:`RunContext` is created in :mod:`capbot.__main__` and threaded
through the runner, the lifecycle manager and the notifier.

dry_run
    Run the full orchestration, but:

    * the lifecycle manager logs its selection instead of terminating;
    * the notifier logs the formatted message instead of POSTing.

    Acquisition itself is **not** suppressed by ``dry_run``; use the
    ``lifecycle rotate --dry-run`` command to preview rotation alone.

Typical usage::

    from capbot.core.run_context import RunContext

    ctx = RunContext(dry_run=args.dry_run)
    if not ctx.should_notify:
        logger.info("[dry-run] would send: %s", text)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

__all__ = ["RunContext"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    """Immutable container for per-run operating-mode flags.

    Attributes:
        dry_run: When ``True``, notifications and instance terminations are
            logged instead of performed.
    """

    dry_run: bool = field(default=False)

    @property
    def should_notify(self) -> bool:
        """``False`` in dry-run mode; every sender must gate on this."""
        return not self.dry_run

    @property
    def mode_label(self) -> str:
        """``"dry-run"`` or ``"live"``, for log lines."""
        return "dry-run" if self.dry_run else "live"

    def __str__(self) -> str:
        return f"RunContext(mode={self.mode_label})"
