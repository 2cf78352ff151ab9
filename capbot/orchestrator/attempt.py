"""Single logical acquisition attempt across ordered fallback targets.

:class:`AcquisitionAttempt` turns one :class:`~capbot.core.models.LaunchRequest`
into one :class:`~capbot.core.models.AttemptResult`:

1. **Idempotency**: a StateRecord for the request means it is already
   satisfied; return SUCCESS without contacting the provisioner.
2. **Limit flag**: a fresh "limit reached" flag for the shape returns
   LIMIT_EXCEEDED immediately, unless a lifecycle rotation frees capacity.
3. **Circuit breaker**: targets whose circuit is open for this shape are
   dropped; if none remain the result is EXHAUSTED.
4. **Targets in order**: acquire, classify, and:

   * success → ``mark_success``, persist the StateRecord, stop (first
     success wins);
   * RATE_LIMIT / INTERNAL_ERROR / NETWORK → retried on the same target
     (tenacity) before counting as a failure;
   * LIMIT_EXCEEDED, or a launch that reports no instance id → read-back
     by display name; an existing instance is a success;
   * DUPLICATE → the instance already exists; success;
   * anything else → ``increment_failure``, pause, next target.

5. **Aggregate**: the most severe kind seen
   (:func:`~capbot.core.models.most_severe`).  A real LIMIT_EXCEEDED sets
   the shape's limit flag and, when configured, asks the lifecycle manager
   to rotate; if that frees capacity the targets get one more pass.

Cancellation: the ``stop`` event is the graceful signal.  Once set, no new
target is started and pauses end immediately; the result is TIMEOUT.  A
forced :exc:`asyncio.CancelledError` propagates through the provisioner
call, which kills its child process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from capbot.core import events
from capbot.core.config import AttemptConfig, RotationConstraints
from capbot.core.exceptions import LaunchUnconfirmedError, ProvisionerError, StorageError
from capbot.core.models import (
    AttemptResult,
    AttemptStatus,
    ErrorKind,
    InstanceDescriptor,
    LaunchRequest,
    ProvisionResult,
    RotationOutcome,
    most_severe,
)
from capbot.orchestrator.circuit_breaker import CircuitBreaker, breaker_key
from capbot.orchestrator.classifier import ErrorClassifier
from capbot.orchestrator.lifecycle import LifecycleManager
from capbot.providers.base import Provisioner
from capbot.storage.cache import is_expired
from capbot.storage.state import LimitRecord, State, StateRecord, StateStore

__all__ = ["AcquisitionAttempt"]

logger = logging.getLogger(__name__)

#: Kinds retried on the same target before moving on.
_TRANSIENT_KINDS: Final[frozenset[ErrorKind]] = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.INTERNAL_ERROR, ErrorKind.NETWORK}
)

#: Cap on the exponential back-off between transient retries.
_MAX_TRANSIENT_WAIT_S: Final[float] = 10.0

_DEFAULT_LIMIT_TTL_HOURS: Final[int] = 24


class _TransientFailure(Exception):
    """Internal sentinel that makes tenacity retry a target; never escapes."""

    def __init__(self, kind: ErrorKind, raw: str) -> None:
        self.kind = kind
        self.raw = raw
        super().__init__(f"{kind.value}: {raw[:120]}")


@dataclass
class _CycleOutcome:
    """What one pass over the targets produced."""

    success: AttemptResult | None = None
    kinds: list[ErrorKind] = field(default_factory=list)
    target_errors: dict[str, ErrorKind] = field(default_factory=dict)
    last_detail: str = ""
    stopped: bool = False


class AcquisitionAttempt:
    """Cycle one logical request through its fallback targets.

    Args:
        provisioner: Provider adapter.
        store: State persistence port (records and limit flags).
        breaker: Circuit breaker over the same store.
        classifier: Error classifier; defaults to the standard rule set.
        config: Timing configuration.
        lifecycle: Optional lifecycle manager; enables rotation on
            LIMIT_EXCEEDED.
        rotation_constraints: Builds the constraints for a shape; required
            when *lifecycle* is given, otherwise ignored.
        limit_ttl_hours: How long a "limit reached" flag is trusted.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        store: StateStore,
        breaker: CircuitBreaker,
        *,
        classifier: ErrorClassifier | None = None,
        config: AttemptConfig | None = None,
        lifecycle: LifecycleManager | None = None,
        rotation_constraints: Callable[[str], RotationConstraints] | None = None,
        limit_ttl_hours: int = _DEFAULT_LIMIT_TTL_HOURS,
    ) -> None:
        self._provisioner = provisioner
        self._store = store
        self._breaker = breaker
        self._classifier = classifier or ErrorClassifier()
        self._config = config or AttemptConfig()
        self._lifecycle = lifecycle
        self._rotation_constraints = rotation_constraints or (lambda _shape: RotationConstraints())
        self._limit_ttl_hours = limit_ttl_hours

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        request: LaunchRequest,
        *,
        stop: asyncio.Event | None = None,
        workdir: Path | None = None,
    ) -> AttemptResult:
        """Run the attempt for *request* and return its terminal result."""
        stop = stop or asyncio.Event()
        started = time.monotonic()

        def _elapsed() -> float:
            return time.monotonic() - started

        logger.info(
            "Attempt started for %s (%s) over %d target(s).",
            request.request_id,
            request.shape,
            len(request.targets),
            extra={"event": events.ATTEMPT_START},
        )

        state = self._store.load()
        existing = state.records.get(request.request_id)
        if existing is not None:
            logger.info(
                "Request %s already satisfied by %s; provisioner not contacted.",
                request.request_id,
                existing.resource_id or "(unknown id)",
                extra={"event": events.ACQUISITION_SATISFIED},
            )
            return AttemptResult(
                request_id=request.request_id,
                status=AttemptStatus.SUCCESS,
                descriptor=_descriptor_from_record(existing, request),
                target_used=existing.target_used or None,
                duration_s=_elapsed(),
                already_satisfied=True,
                detail="already satisfied by a previous run",
            )

        rotation: RotationOutcome | None = None
        if self._limit_flag_fresh(state, request.shape):
            rotation = await self._rotate(request)
            if rotation is None or not rotation.freed_capacity:
                return AttemptResult.failed(
                    request.request_id,
                    ErrorKind.LIMIT_EXCEEDED,
                    duration_s=_elapsed(),
                    detail=f"{request.shape} is at its limit (cached flag)",
                    rotation=rotation,
                )
            self._set_limit_flag(request.shape, reached=False)

        available = self._breaker.filter_available(request.targets, scope=request.shape)
        if not available:
            logger.warning(
                "Every target for %s has an open circuit; exhausted.", request.request_id
            )
            return AttemptResult(
                request_id=request.request_id,
                status=AttemptStatus.EXHAUSTED,
                error_kind=ErrorKind.CAPACITY,
                duration_s=_elapsed(),
                detail="all targets skipped by the circuit breaker",
                rotation=rotation,
            )

        outcome = await self._cycle(request, available, stop, workdir)
        if outcome.success is None and not outcome.stopped and rotation is None:
            if most_severe(outcome.kinds) == ErrorKind.LIMIT_EXCEEDED:
                self._set_limit_flag(request.shape, reached=True)
                rotation = await self._rotate(request)
                if rotation is not None and rotation.freed_capacity and not stop.is_set():
                    self._set_limit_flag(request.shape, reached=False)
                    retry_targets = self._breaker.filter_available(
                        request.targets, scope=request.shape
                    )
                    if retry_targets:
                        logger.info("Rotation freed capacity; retrying %s.", request.request_id)
                        second = await self._cycle(request, retry_targets, stop, workdir)
                        second.kinds = outcome.kinds + second.kinds
                        second.target_errors = {**outcome.target_errors, **second.target_errors}
                        outcome = second

        if outcome.success is not None:
            return outcome.success.model_copy(
                update={"duration_s": _elapsed(), "rotation": rotation}
            )

        if outcome.stopped:
            logger.info(
                "Attempt %s stopped before completion.",
                request.request_id,
                extra={"event": events.ATTEMPT_TIMEOUT},
            )
            result = AttemptResult.timed_out(request.request_id, duration_s=_elapsed())
            return result.model_copy(
                update={"target_errors": outcome.target_errors, "rotation": rotation}
            )

        aggregate = most_severe(outcome.kinds) or ErrorKind.UNKNOWN
        return AttemptResult.failed(
            request.request_id,
            aggregate,
            duration_s=_elapsed(),
            detail=outcome.last_detail,
            target_errors=outcome.target_errors,
            rotation=rotation,
        )

    # ------------------------------------------------------------------
    # Target cycling
    # ------------------------------------------------------------------

    async def _cycle(
        self,
        request: LaunchRequest,
        targets: list[str],
        stop: asyncio.Event,
        workdir: Path | None,
    ) -> _CycleOutcome:
        outcome = _CycleOutcome()
        for index, target in enumerate(targets):
            if stop.is_set():
                outcome.stopped = True
                return outcome

            try:
                result, kind = await self._acquire_with_retry(target, request, workdir)
            except LaunchUnconfirmedError as exc:
                found = await self._verify_exists(request, stop, reason="Launch without an id")
                if found is not None:
                    outcome.success = self._on_success(
                        request, target, found, detail="verified after a launch without an id"
                    )
                    return outcome
                result, kind = ProvisionResult.failure(str(exc)), ErrorKind.UNKNOWN

            if result.ok:
                assert result.descriptor is not None  # noqa: S101
                outcome.success = self._on_success(request, target, result.descriptor)
                return outcome

            if kind == ErrorKind.LIMIT_EXCEEDED:
                found = await self._verify_exists(request, stop, reason="LimitExceeded")
                if found is not None:
                    outcome.success = self._on_success(
                        request, target, found, detail="verified after LimitExceeded"
                    )
                    return outcome

            if kind == ErrorKind.DUPLICATE:
                found = await self._find_existing(request)
                outcome.success = self._on_success(
                    request,
                    target,
                    found or _placeholder_descriptor(request),
                    detail="instance already exists",
                    known_id=found is not None,
                )
                return outcome

            assert kind is not None  # noqa: S101
            outcome.kinds.append(kind)
            outcome.target_errors[target] = kind
            outcome.last_detail = (result.error or "")[:500]
            logger.info(
                "Target %s failed for %s: %s.",
                target,
                request.request_id,
                kind.value,
                extra={"event": events.TARGET_FAILED},
            )
            try:
                self._breaker.increment_failure(breaker_key(request.shape, target))
            except StorageError:
                logger.warning("Could not persist the failure of %s.", target, exc_info=True)

            if index < len(targets) - 1 and await self._pause(
                self._config.inter_target_delay_s, stop
            ):
                outcome.stopped = True
                return outcome
        return outcome

    async def _acquire_once(
        self, target: str, request: LaunchRequest, workdir: Path | None
    ) -> ProvisionResult:
        try:
            return await self._provisioner.acquire(target, request, workdir=workdir)
        except LaunchUnconfirmedError:
            raise
        except ProvisionerError as exc:
            return ProvisionResult.failure(str(exc))

    async def _acquire_with_retry(
        self, target: str, request: LaunchRequest, workdir: Path | None
    ) -> tuple[ProvisionResult, ErrorKind | None]:
        """Acquire on *target*, retrying transient kinds on the same target."""
        max_attempts = self._config.transient_max_retries + 1

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.info(
                "Transient %s on %s (try %d/%d); retrying same target.",
                exc.kind.value if isinstance(exc, _TransientFailure) else "error",
                target,
                rs.attempt_number,
                max_attempts,
            )

        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(
                    multiplier=self._config.transient_retry_delay_s, max=_MAX_TRANSIENT_WAIT_S
                ),
                stop=stop_after_attempt(max_attempts),
                retry=retry_if_exception_type(_TransientFailure),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    result = await self._acquire_once(target, request, workdir)
                    if result.ok:
                        return result, None
                    kind = self._classifier.classify(result.error)
                    if kind in _TRANSIENT_KINDS:
                        raise _TransientFailure(kind, result.error or "")
                    return result, kind
        except _TransientFailure as exc:
            return ProvisionResult.failure(exc.raw), exc.kind
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Outcome helpers
    # ------------------------------------------------------------------

    def _on_success(
        self,
        request: LaunchRequest,
        target: str,
        descriptor: InstanceDescriptor,
        *,
        detail: str = "",
        known_id: bool = True,
    ) -> AttemptResult:
        """Persist the StateRecord and close the circuit of *target*.

        With ``known_id=False`` the record keeps an empty resource id; the
        descriptor is then only a stand-in named after the request.
        """

        def _record(state: State) -> None:
            state.records.setdefault(
                request.request_id,
                StateRecord(
                    request_id=request.request_id,
                    resource_id=descriptor.id if known_id else "",
                    target_used=target,
                    shape=request.shape,
                ),
            )
            state.limits.pop(request.shape, None)

        try:
            self._store.update(_record)
            self._breaker.mark_success(breaker_key(request.shape, target))
        except StorageError:
            logger.error(
                "Instance %s created but the state record could not be saved.",
                descriptor.id,
                exc_info=True,
            )

        logger.info(
            "Acquired %s for %s in %s%s.",
            descriptor.id,
            request.request_id,
            target,
            f" ({detail})" if detail else "",
            extra={"event": events.TARGET_SUCCESS},
        )
        return AttemptResult(
            request_id=request.request_id,
            status=AttemptStatus.SUCCESS,
            descriptor=descriptor,
            target_used=target,
            detail=detail,
        )

    async def _find_existing(self, request: LaunchRequest) -> InstanceDescriptor | None:
        try:
            instances = await self._provisioner.list_instances(request.shape)
        except ProvisionerError as exc:
            logger.warning("Inventory read-back failed: %s", exc)
            return None
        for instance in instances:
            if instance.display_name == request.request_id:
                return instance
        return None

    async def _verify_exists(
        self, request: LaunchRequest, stop: asyncio.Event, *, reason: str
    ) -> InstanceDescriptor | None:
        """Read back the inventory after an inconclusive launch."""
        for check in range(1, self._config.verify_checks + 1):
            if await self._pause(self._config.verify_delay_s, stop):
                return None
            logger.info(
                "%s for %s; verifying inventory (%d/%d).",
                reason,
                request.request_id,
                check,
                self._config.verify_checks,
                extra={"event": events.LIMIT_VERIFY},
            )
            found = await self._find_existing(request)
            if found is not None:
                return found
        return None

    # ------------------------------------------------------------------
    # Limit flag and rotation
    # ------------------------------------------------------------------

    def _limit_flag_fresh(self, state: State, shape: str) -> bool:
        flag = state.limits.get(shape)
        if flag is None or not flag.reached:
            return False
        return not is_expired(flag.updated, self._limit_ttl_hours)

    def _set_limit_flag(self, shape: str, *, reached: bool) -> None:
        def _mutate(state: State) -> None:
            if reached:
                state.limits[shape] = LimitRecord(reached=True)
            else:
                state.limits.pop(shape, None)

        try:
            self._store.update(_mutate)
        except StorageError:
            logger.warning("Could not persist limit flag for %s.", shape, exc_info=True)
            return
        if reached:
            logger.info(
                "Shape %s marked at its limit.", shape, extra={"event": events.LIMIT_FLAG_SET}
            )

    async def _rotate(self, request: LaunchRequest) -> RotationOutcome | None:
        if self._lifecycle is None:
            return None
        return await self._lifecycle.maybe_rotate(
            request.shape, self._rotation_constraints(request.shape)
        )

    @staticmethod
    async def _pause(seconds: float, stop: asyncio.Event) -> bool:
        """Sleep up to *seconds*; return ``True`` if *stop* was set meanwhile."""
        if stop.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


def _descriptor_from_record(record: StateRecord, request: LaunchRequest) -> InstanceDescriptor:
    return InstanceDescriptor(
        id=record.resource_id or request.request_id,
        shape_class=record.shape or request.shape,
        created_at=datetime.fromtimestamp(record.created_at, tz=UTC),
        display_name=request.request_id,
    )


def _placeholder_descriptor(request: LaunchRequest) -> InstanceDescriptor:
    return InstanceDescriptor(
        id=request.request_id,
        shape_class=request.shape,
        display_name=request.request_id,
    )
