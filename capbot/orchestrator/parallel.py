"""Bounded-time parallel execution of independent acquisition attempts.

:class:`ParallelOrchestrator` runs one :class:`~capbot.orchestrator.attempt.AcquisitionAttempt`
per logical request as concurrent asyncio tasks and returns one
:class:`~capbot.core.models.AttemptResult` per request, in request order.

Guarantees
----------
* **Isolation**: every attempt runs inside a supervised task with its own
  exception boundary: a crash becomes an ``UNKNOWN`` failure for that slot
  and never disturbs the other attempt.  Each attempt also gets its own
  ``0700`` temporary working directory.
* **Bounded time**: completion is polled every ``poll_interval_s``.  When
  ``timeout_s`` elapses, unfinished attempts get the graceful signal (their
  stop event), then ``grace_period_s`` later they are cancelled, and the
  orchestrator waits at most :data:`CANCEL_WAIT_S` more.  A run therefore
  returns within ``timeout + grace_period + CANCEL_WAIT_S`` whatever the
  attempts do.
* **Timeout slots**: a slot still unfinished at the deadline reports
  ``TIMEOUT``, unless the attempt managed to succeed during the grace
  period (the instance exists; hiding that would cost a duplicate launch).
* **Cleanup**: working directories are removed on every exit path,
  including cancellation of the orchestrator itself.

:meth:`ParallelOrchestrator.shutdown` triggers the same graceful-then-forced
sequence immediately; the runner wires it to SIGTERM / SIGINT.

Typical usage::

    orchestrator = ParallelOrchestrator(attempt, OrchestratorConfig(timeout_s=55))
    result_a, result_b = await orchestrator.run(request_a, request_b)
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import string
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Protocol

from capbot.core import events
from capbot.core.config import OrchestratorConfig
from capbot.core.exceptions import OrchestratorError
from capbot.core.logging_config import ATTEMPT_CTX
from capbot.core.models import (
    EXIT_SUCCESS,
    AttemptResult,
    ErrorKind,
    LaunchRequest,
)

__all__ = [
    "CANCEL_WAIT_S",
    "AttemptRunner",
    "ParallelOrchestrator",
    "RunReport",
]

logger = logging.getLogger(__name__)

#: Upper bound on waiting for cancelled attempts to unwind.
CANCEL_WAIT_S: Final[float] = 1.0


class AttemptRunner(Protocol):
    """Anything that can run one request to a terminal result."""

    async def run(
        self,
        request: LaunchRequest,
        *,
        stop: asyncio.Event | None = None,
        workdir: Path | None = None,
    ) -> AttemptResult: ...


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class RunReport:
    """Aggregated outcome of one parallel run.

    Attributes:
        results: One result per request, in request order.
        duration_s: Wall-clock seconds of the whole run.
        deadline_hit: ``True`` if at least one attempt was still running at
            the deadline (or a shutdown was requested).
    """

    results: list[AttemptResult] = field(default_factory=list)
    duration_s: float = 0.0
    deadline_hit: bool = False

    @property
    def any_succeeded(self) -> bool:
        return any(r.succeeded for r in self.results)

    @property
    def worst(self) -> AttemptResult | None:
        """Highest-ranked failure; ties keep the earlier request."""
        worst: AttemptResult | None = None
        for result in self.results:
            if result.succeeded:
                continue
            if worst is None or result.rank > worst.rank:
                worst = result
        return worst

    @property
    def exit_code(self) -> int:
        """``0`` if any attempt succeeded, else the exit code of :attr:`worst`."""
        if self.any_succeeded or not self.results:
            return EXIT_SUCCESS
        worst = self.worst
        return worst.exit_code if worst is not None else EXIT_SUCCESS

    def format_report(self) -> str:
        """One-line summary for the end-of-run log entry."""
        parts = [
            f"{r.request_id}={r.outcome_label}"
            + (f"@{r.target_used}" if r.target_used else "")
            + f" ({r.duration_s:.1f}s)"
            for r in self.results
        ]
        return (
            f"Run complete in {self.duration_s:.1f}s | "
            + " | ".join(parts)
            + f" | exit={self.exit_code}"
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ParallelOrchestrator:
    """Run acquisition attempts concurrently under one wall-clock budget.

    Args:
        attempt: Shared attempt runner; it keeps no per-call state, so one
            instance serves every slot.
        config: Budget configuration.
        workdir_root: Parent directory for per-attempt working directories.
            Defaults to the system temporary directory.
    """

    def __init__(
        self,
        attempt: AttemptRunner,
        config: OrchestratorConfig | None = None,
        *,
        workdir_root: Path | None = None,
    ) -> None:
        self._attempt = attempt
        self._config = config or OrchestratorConfig()
        self._workdir_root = workdir_root
        self._shutdown = asyncio.Event()

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    def shutdown(self) -> None:
        """Request an immediate graceful stop of the current run.

        The request applies to the run in progress only; the next
        :meth:`run_all` starts with a clear flag.
        """
        if not self._shutdown.is_set():
            logger.info("Shutdown requested; stopping attempts.")
        self._shutdown.set()

    async def run(
        self,
        request_a: LaunchRequest,
        request_b: LaunchRequest,
        *,
        timeout: float | None = None,
    ) -> tuple[AttemptResult, AttemptResult]:
        """Run two attempts concurrently and return both results."""
        report = await self.run_all([request_a, request_b], timeout=timeout)
        return report.results[0], report.results[1]

    async def run_all(
        self, requests: list[LaunchRequest], *, timeout: float | None = None
    ) -> RunReport:
        """Run one attempt per request concurrently.

        Args:
            requests: Logical requests with distinct ids.
            timeout: Overrides ``config.timeout_s``.

        Returns:
            A :class:`RunReport` with one result per request, in order.

        Raises:
            OrchestratorError: No requests, or two requests share an id.
        """
        if not requests:
            raise OrchestratorError("run_all needs at least one launch request")
        ids = [r.request_id for r in requests]
        if len(set(ids)) != len(ids):
            raise OrchestratorError(f"request ids must be distinct, got {ids!r}")
        self._shutdown.clear()

        budget = self._config.timeout_s if timeout is None else timeout
        started = time.monotonic()
        deadline = started + budget

        labels = [_slot_label(i) for i in range(len(requests))]
        workdirs: list[Path] = []
        stops = [asyncio.Event() for _ in requests]
        tasks: list[asyncio.Task[AttemptResult]] = []
        late: set[asyncio.Task[AttemptResult]] = set()
        try:
            for label, request, stop in zip(labels, requests, stops, strict=True):
                workdir = Path(tempfile.mkdtemp(prefix=f"capbot-{label}-", dir=self._workdir_root))
                workdirs.append(workdir)
                tasks.append(
                    asyncio.create_task(
                        self._supervised(label, request, stop, workdir),
                        name=f"capbot-attempt-{label}",
                    )
                )

            pending: set[asyncio.Task[AttemptResult]] = set(tasks)
            while pending and not self._shutdown.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                _done, pending = await asyncio.wait(
                    pending, timeout=min(self._config.poll_interval_s, remaining)
                )

            if pending:
                late = set(pending)
                reason = "shutdown" if self._shutdown.is_set() else "deadline"
                await self._stop(pending, stops, reason=reason)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            for workdir in workdirs:
                shutil.rmtree(workdir, ignore_errors=True)

        duration = time.monotonic() - started
        results = [
            self._collect(task, request, late, duration)
            for task, request in zip(tasks, requests, strict=True)
        ]
        return RunReport(results=results, duration_s=duration, deadline_hit=bool(late))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _supervised(
        self, label: str, request: LaunchRequest, stop: asyncio.Event, workdir: Path
    ) -> AttemptResult:
        ATTEMPT_CTX.set(label)
        started = time.monotonic()
        try:
            result = await self._attempt.run(request, stop=stop, workdir=workdir)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Attempt %s crashed: %s",
                request.request_id,
                exc,
                exc_info=True,
                extra={"event": events.ATTEMPT_CRASHED},
            )
            return AttemptResult.failed(
                request.request_id,
                ErrorKind.UNKNOWN,
                duration_s=time.monotonic() - started,
                detail=f"attempt crashed: {type(exc).__name__}: {exc}",
            )
        logger.info(
            "Attempt %s finished: %s (exit %d).",
            request.request_id,
            result.outcome_label,
            result.exit_code,
            extra={"event": events.ATTEMPT_DONE},
        )
        return result

    async def _stop(
        self,
        pending: set[asyncio.Task[AttemptResult]],
        stops: list[asyncio.Event],
        *,
        reason: str,
    ) -> None:
        """Graceful signal, grace period, then forced cancellation."""
        logger.warning(
            "%d attempt(s) still running at %s; sending graceful stop.",
            len(pending),
            reason,
            extra={"event": events.ATTEMPT_TIMEOUT},
        )
        for stop in stops:
            stop.set()

        if self._config.grace_period_s > 0:
            _done, pending = await asyncio.wait(pending, timeout=self._config.grace_period_s)
        if not pending:
            return

        logger.warning("Force-cancelling %d attempt(s).", len(pending))
        for task in pending:
            task.cancel()
        _done, still = await asyncio.wait(pending, timeout=CANCEL_WAIT_S)
        if still:
            logger.error("%d attempt(s) did not unwind after cancellation.", len(still))

    @staticmethod
    def _collect(
        task: asyncio.Task[AttemptResult],
        request: LaunchRequest,
        late: set[asyncio.Task[AttemptResult]],
        duration_s: float,
    ) -> AttemptResult:
        if task.done() and not task.cancelled() and task.exception() is None:
            result = task.result()
            if task not in late or result.succeeded:
                return result
        return AttemptResult.timed_out(request.request_id, duration_s=duration_s)


def _slot_label(index: int) -> str:
    letters = string.ascii_uppercase
    return letters[index] if index < len(letters) else f"S{index}"
