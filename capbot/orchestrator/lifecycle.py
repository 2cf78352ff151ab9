"""Lifecycle rotation: retire old instances when a shape class hits its limit.

Free-tier quotas are per shape class.  When acquisitions keep failing with
LIMIT_EXCEEDED, :class:`LifecycleManager` can terminate the least valuable
existing instance(s) so that the next acquisition has room.

Selection
~~~~~~~~~
1. List live instances of the shape class.
2. If ``max_instances`` / ``max_ocpus`` are set and the class is *below*
   both limits, do nothing; the quota is not actually consumed.
3. Drop instances younger than ``min_age_hours`` (counted as
   ``skipped_due_to_age``).
4. Rank the rest:

   * ``oldest_first``: ascending ``created_at``;
   * ``least_utilized``: ascending ``health_score``, then ``created_at``.

5. Take the first ``count``.

Termination is one instance at a time and best-effort: a failing
``terminate`` is logged and counted, the remaining selections still run.
Each instance is looked up again right before its termination; one that
is already terminating, terminated or missing is skipped and counted in
``already_gone``.
In dry-run mode the selection is logged and nothing is terminated.

Every rotation that selected something is appended to the state document's
rotation history.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from capbot.core import events
from capbot.core.config import RotationConstraints, RotationStrategy
from capbot.core.exceptions import ProvisionerError, StorageError
from capbot.core.models import InstanceDescriptor, RotationOutcome
from capbot.providers.base import Provisioner
from capbot.storage.state import RotationLogEntry, State, StateStore

__all__ = ["LifecycleManager", "rank_candidates"]

logger = logging.getLogger(__name__)


def rank_candidates(
    instances: list[InstanceDescriptor], strategy: RotationStrategy
) -> list[InstanceDescriptor]:
    """Order *instances* so the first element is the best retirement candidate."""
    if strategy == RotationStrategy.LEAST_UTILIZED:
        return sorted(instances, key=lambda i: (i.health_score, i.created_at))
    return sorted(instances, key=lambda i: i.created_at)


def _below_limit(instances: list[InstanceDescriptor], constraints: RotationConstraints) -> bool:
    checks: list[bool] = []
    if constraints.max_instances is not None:
        checks.append(len(instances) < constraints.max_instances)
    if constraints.max_ocpus is not None:
        used = sum(i.ocpus or 0.0 for i in instances)
        checks.append(used < constraints.max_ocpus)
    return bool(checks) and all(checks)


class LifecycleManager:
    """Selects and retires instances of a shape class.

    Args:
        provisioner: Provider adapter used for listing and termination.
        store: Optional state store for the rotation history.
        clock: Callable returning the current UTC datetime.  Override in tests.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        store: StateStore | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._store = store
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    async def list_candidates(
        self, shape_class: str, constraints: RotationConstraints
    ) -> tuple[list[InstanceDescriptor], int]:
        """Return ``(ranked eligible instances, count skipped due to age)``.

        Raises:
            ProvisionerError: The inventory cannot be read.
        """
        return self._eligible(await self._inventory(shape_class), constraints)

    async def _inventory(self, shape_class: str) -> list[InstanceDescriptor]:
        instances = await self._provisioner.list_instances(shape_class)
        return [i for i in instances if not i.gone]

    def _eligible(
        self, instances: list[InstanceDescriptor], constraints: RotationConstraints
    ) -> tuple[list[InstanceDescriptor], int]:
        now = self._clock()
        eligible = [i for i in instances if i.age_hours(now) >= constraints.min_age_hours]
        return rank_candidates(eligible, constraints.strategy), len(instances) - len(eligible)

    async def maybe_rotate(
        self, shape_class: str, constraints: RotationConstraints
    ) -> RotationOutcome:
        """Retire up to ``constraints.count`` instances of *shape_class*.

        Never raises for provider problems; they are reported through
        :attr:`RotationOutcome.reason`.
        """
        try:
            instances = await self._inventory(shape_class)
        except ProvisionerError as exc:
            logger.warning("Rotation skipped: cannot list %s instances: %s", shape_class, exc)
            return RotationOutcome(
                shape_class=shape_class, dry_run=constraints.dry_run, reason=f"list failed: {exc}"
            )

        if _below_limit(instances, constraints):
            logger.info(
                "Rotation skipped: %s is below its limit (%d instance(s)).",
                shape_class,
                len(instances),
            )
            return RotationOutcome(
                shape_class=shape_class, dry_run=constraints.dry_run, reason="below limit"
            )

        ranked, skipped = self._eligible(instances, constraints)
        selected = ranked[: constraints.count]

        if not selected:
            logger.info(
                "Rotation found no eligible %s instance (%d too young).", shape_class, skipped
            )
            return RotationOutcome(
                shape_class=shape_class,
                skipped_due_to_age=skipped,
                dry_run=constraints.dry_run,
                reason="no eligible instance",
            )

        selected_ids = [i.id for i in selected]
        logger.info(
            "Rotation selected %s for %s (strategy=%s%s).",
            ", ".join(selected_ids),
            shape_class,
            constraints.strategy.value,
            ", dry-run" if constraints.dry_run else "",
            extra={"event": events.ROTATION_SELECTED},
        )

        terminated: list[str] = []
        gone = 0
        if not constraints.dry_run:
            for instance in selected:
                if not await self._still_live(instance, shape_class):
                    gone += 1
                    continue
                if await self._terminate(instance):
                    terminated.append(instance.id)

        outcome = RotationOutcome(
            shape_class=shape_class,
            attempted=len(selected) - gone,
            succeeded=len(terminated),
            skipped_due_to_age=skipped,
            selected_ids=selected_ids,
            already_gone=gone,
            dry_run=constraints.dry_run,
        )
        self._record(outcome, terminated)
        return outcome

    async def _still_live(self, instance: InstanceDescriptor, shape_class: str) -> bool:
        try:
            current = await self._provisioner.get_instance(instance.id, shape_class=shape_class)
        except ProvisionerError as exc:
            logger.warning("Could not re-check %s before terminating: %s", instance.id, exc)
            return True
        if current is None or current.gone:
            logger.info(
                "Skipping %s: already %s.",
                instance.id,
                "gone" if current is None else current.lifecycle_state.lower(),
            )
            return False
        return True

    async def _terminate(self, instance: InstanceDescriptor) -> bool:
        try:
            accepted = await self._provisioner.terminate(instance.id)
        except ProvisionerError as exc:
            logger.warning(
                "Terminate %s raised: %s",
                instance.id,
                exc,
                extra={"event": events.ROTATION_FAILED},
            )
            return False
        if accepted:
            logger.info(
                "Terminated %s (age %.1fh, health %d).",
                instance.id,
                instance.age_hours(self._clock()),
                instance.health_score,
                extra={"event": events.ROTATION_TERMINATED},
            )
        else:
            logger.warning(
                "Terminate %s was not accepted.",
                instance.id,
                extra={"event": events.ROTATION_FAILED},
            )
        return accepted

    def _record(self, outcome: RotationOutcome, terminated: list[str]) -> None:
        if self._store is None:
            return
        entry = RotationLogEntry(
            shape_class=outcome.shape_class,
            attempted=outcome.attempted,
            succeeded=outcome.succeeded,
            terminated_ids=terminated,
            dry_run=outcome.dry_run,
        )

        def _mutate(state: State) -> None:
            state.log_rotation(entry)

        try:
            self._store.update(_mutate)
        except StorageError:
            logger.warning("Could not record rotation history.", exc_info=True)
