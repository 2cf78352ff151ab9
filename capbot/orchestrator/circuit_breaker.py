"""Per-target circuit breaker persisted through a :class:`~capbot.storage.state.StateStore`.

Stops a chronically failing fallback target (e.g. an availability domain
that has been out of capacity for days) from consuming attempts and budget
while other targets remain untried.  Unlike an in-process breaker, the
failure counts live in the state document so they survive between stateless
invocations.

State machine
~~~~~~~~~~~~~
::

    CLOSED ──(threshold consecutive failures)──▶ OPEN
      ▲                                            │
      ├────────────(any success)───────────────────┤
      │                                            │
      └────(reset_after_hours since last failure)──┘

* A single success fully rehabilitates a target; there is no gradual decay.
* ``reset_after_hours`` is a safety valve: an OPEN target whose last failure
  is older than that window is allowed again (``0`` disables the valve).
* Counts never go negative.  They keep growing past the threshold so the
  history is visible in ``state print``; only ``>= threshold`` matters.

Typical usage::

    from capbot.orchestrator.circuit_breaker import CircuitBreaker, breaker_key

    breaker = CircuitBreaker(store, threshold=3)

    for target in breaker.filter_available(request.targets, scope=request.shape):
        key = breaker_key(request.shape, target)
        ...
        breaker.increment_failure(key)   # or breaker.mark_success(key)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

from capbot.core import events
from capbot.storage.state import FailureRecord, State, StateStore

__all__ = [
    "CircuitState",
    "CircuitBreaker",
    "breaker_key",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Consecutive failures after which a target is skipped.
_DEFAULT_THRESHOLD: Final[int] = 3

#: Hours after the last failure before an OPEN target is retried.
_DEFAULT_RESET_AFTER_HOURS: Final[float] = 24.0


def breaker_key(scope: str, target: str) -> str:
    """Failure key of *target* within *scope*, e.g. ``"VM.Standard.A1.Flex:AD-1"``.

    Two shapes never share a circuit: an AD out of E2 capacity may still
    have A1 capacity.
    """
    return f"{scope}:{target}"


class CircuitState(StrEnum):
    """Derived state of one target's circuit."""

    CLOSED = "closed"
    """Target is attempted normally."""

    OPEN = "open"
    """Target is skipped."""


# ---------------------------------------------------------------------------
# Breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    """Threshold-based skip decision per resource key.

    Args:
        store: State persistence port.  Each mutation is a single
            synchronous load/modify/save.
        threshold: Consecutive failures required to open the circuit.
        reset_after_hours: Auto-reset window; ``0`` disables auto-reset.
        clock: Callable returning epoch seconds.  Defaults to
            :func:`time.time`.  Override in tests.
    """

    def __init__(
        self,
        store: StateStore,
        threshold: int = _DEFAULT_THRESHOLD,
        reset_after_hours: float = _DEFAULT_RESET_AFTER_HOURS,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1, got {threshold!r}.")
        self._store = store
        self._threshold = threshold
        self._reset_after_s = reset_after_hours * 3600
        self._clock = clock or time.time

    @property
    def threshold(self) -> int:
        return self._threshold

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_stale(self, record: FailureRecord) -> bool:
        if self._reset_after_s <= 0 or record.count == 0:
            return False
        return self._clock() - record.last_failure >= self._reset_after_s

    def _state_of(self, record: FailureRecord | None) -> CircuitState:
        if record is None or record.count < self._threshold or self._is_stale(record):
            return CircuitState.CLOSED
        return CircuitState.OPEN

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def failure_count(self, key: str) -> int:
        """Stored consecutive failure count for *key* (0 if absent or stale)."""
        record = self._store.load().failures.get(key)
        if record is None or self._is_stale(record):
            return 0
        return record.count

    def increment_failure(self, key: str) -> int:
        """Record one more consecutive failure for *key*.

        A stale record restarts from zero.

        Returns:
            The new consecutive failure count.
        """
        now = int(self._clock())

        def _mutate(state: State) -> int:
            record = state.failures.get(key)
            if record is None or self._is_stale(record):
                record = FailureRecord(key=key)
            record.count += 1
            record.last_failure = now
            state.failures[key] = record
            return record.count

        count = self._store.update(_mutate)
        if count == self._threshold:
            logger.warning(
                "Circuit OPEN for target %s after %d consecutive failures.",
                key,
                count,
            )
        else:
            logger.debug("Target %s failure %d / %d.", key, count, self._threshold)
        return count

    def mark_success(self, key: str) -> None:
        """Reset the failure count of *key* to zero."""

        def _mutate(state: State) -> int:
            record = state.failures.pop(key, None)
            return record.count if record is not None else 0

        previous = self._store.update(_mutate)
        if previous >= self._threshold:
            logger.info("Circuit CLOSED for target %s (was %d failures).", key, previous)
        elif previous:
            logger.debug("Target %s recovered; cleared %d failure(s).", key, previous)

    def should_skip(self, key: str) -> bool:
        """``True`` iff the stored failure count for *key* reached the threshold."""
        return self.get_state(key) == CircuitState.OPEN

    def get_state(self, key: str) -> CircuitState:
        return self._state_of(self._store.load().failures.get(key))

    def filter_available(self, targets: list[str], *, scope: str = "") -> list[str]:
        """Return *targets* without the skipped ones, preserving order.

        With a *scope*, each target is looked up under
        ``breaker_key(scope, target)``; the returned list still holds the
        bare targets.  An empty result means every target is open;
        callers report it as *exhausted* rather than as an ordinary failure.
        """
        failures = self._store.load().failures
        available: list[str] = []
        for target in targets:
            key = breaker_key(scope, target) if scope else target
            if self._state_of(failures.get(key)) == CircuitState.OPEN:
                logger.info(
                    "Skipping target %s: circuit open (%d failures).",
                    key,
                    failures[key].count,
                    extra={"event": events.TARGET_SKIPPED},
                )
                continue
            available.append(target)
        return available

    def summary(self) -> dict[str, str]:
        """``{key: state_label}`` for every tracked key."""
        failures = self._store.load().failures
        return {key: self._state_of(rec).value for key, rec in failures.items()}
