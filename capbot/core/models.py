"""Capbot core domain models.

This module defines the value types shared by the classifier, the
acquisition attempt, the parallel orchestrator, the lifecycle manager and
the notifier:

* :class:`ErrorKind` and the fixed :data:`EXIT_CODES` table.
* :class:`LaunchRequest`: one logical acquisition request with its ordered
  fallback targets.
* :class:`ProvisionResult`: what a provisioner returns for one ``acquire``.
* :class:`InstanceDescriptor`: one existing instance from the inventory.
* :class:`AttemptResult`: the transient outcome of one acquisition attempt.
* :class:`RotationOutcome`: what the lifecycle manager did.

All models are pydantic and **frozen** so they can be shared between
concurrently running attempt tasks without accidental mutation.

Typical usage::

    from capbot.core.models import AttemptResult, AttemptStatus, ErrorKind

    result = AttemptResult.failed("a1-flex-sg", ErrorKind.CAPACITY, duration_s=3.1)
    result.exit_code   # 2
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = [
    "ErrorKind",
    "AttemptStatus",
    "Severity",
    "EXIT_SUCCESS",
    "EXIT_GENERAL",
    "EXIT_TIMEOUT",
    "EXIT_CODES",
    "exit_code_for",
    "severity_rank",
    "most_severe",
    "LaunchRequest",
    "ProvisionResult",
    "GONE_STATES",
    "InstanceDescriptor",
    "RotationOutcome",
    "AttemptResult",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    """Typed classification of a provisioner error payload."""

    CAPACITY = "capacity"
    RATE_LIMIT = "rate_limit"
    LIMIT_EXCEEDED = "limit_exceeded"
    INTERNAL_ERROR = "internal_error"
    DUPLICATE = "duplicate"
    AUTH = "auth"
    CONFIG = "config"
    NETWORK = "network"
    UNKNOWN = "unknown"


class AttemptStatus(StrEnum):
    """Terminal status of one acquisition attempt."""

    SUCCESS = "success"
    """An instance exists for the request (new, verified, or pre-existing)."""

    FAILED = "failed"
    """Every available target failed; ``error_kind`` is the aggregate."""

    EXHAUSTED = "exhausted"
    """The circuit breaker skipped every target; the provisioner was not called."""

    TIMEOUT = "timeout"
    """The orchestrator stopped the attempt at the execution deadline."""


class Severity(StrEnum):
    """Severity tag attached to every notification record."""

    SUCCESS = "success"
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS: Final[int] = 0
EXIT_GENERAL: Final[int] = 1
EXIT_TIMEOUT: Final[int] = 124

#: One process exit code per :class:`ErrorKind`.  The invoking trigger
#: branches on these to decide whether to alert.
EXIT_CODES: Final[dict[ErrorKind, int]] = {
    ErrorKind.CAPACITY: 2,
    ErrorKind.AUTH: 3,
    ErrorKind.CONFIG: 3,
    ErrorKind.NETWORK: 4,
    ErrorKind.INTERNAL_ERROR: 4,
    ErrorKind.LIMIT_EXCEEDED: 5,
    ErrorKind.RATE_LIMIT: 6,
    ErrorKind.DUPLICATE: EXIT_SUCCESS,
    ErrorKind.UNKNOWN: EXIT_GENERAL,
}


def exit_code_for(kind: ErrorKind | None) -> int:
    """Return the process exit code for *kind* (``None`` means success)."""
    if kind is None:
        return EXIT_SUCCESS
    return EXIT_CODES[kind]


# ---------------------------------------------------------------------------
# Severity ordering
# ---------------------------------------------------------------------------

#: Aggregation rank; higher wins.  Auth/Config outrank everything because a
#: configuration defect affects all targets equally.
_ERROR_RANK: Final[dict[ErrorKind, int]] = {
    ErrorKind.AUTH: 8,
    ErrorKind.CONFIG: 8,
    ErrorKind.UNKNOWN: 6,
    ErrorKind.NETWORK: 5,
    ErrorKind.INTERNAL_ERROR: 4,
    ErrorKind.LIMIT_EXCEEDED: 3,
    ErrorKind.RATE_LIMIT: 2,
    ErrorKind.CAPACITY: 1,
    ErrorKind.DUPLICATE: 0,
}

#: Rank of a timed-out attempt when comparing whole-run results.
_TIMEOUT_RANK: Final[int] = 7


def severity_rank(kind: ErrorKind) -> int:
    """Return the aggregation rank of *kind* (higher is more severe)."""
    return _ERROR_RANK[kind]


def most_severe(kinds: list[ErrorKind]) -> ErrorKind | None:
    """Return the most severe kind in *kinds*.

    Ties keep the kind encountered first, so the result is deterministic for
    a given target order.  Returns ``None`` for an empty list.
    """
    worst: ErrorKind | None = None
    for kind in kinds:
        if worst is None or _ERROR_RANK[kind] > _ERROR_RANK[worst]:
            worst = kind
    return worst


# ---------------------------------------------------------------------------
# Requests and provisioner payloads
# ---------------------------------------------------------------------------


class LaunchRequest(BaseModel):
    """One logical acquisition request.

    ``request_id`` doubles as the instance display name, which is what the
    idempotency guard and the LimitExceeded read-back look for.

    Attributes:
        request_id: Logical request identifier / display name.
        shape: Provider shape name (the shape class for rotation).
        targets: Ordered fallback targets (availability domains).
        ocpus: Flex-shape OCPU count; ``None`` for fixed shapes.
        memory_gb: Flex-shape memory in GB; ``None`` for fixed shapes.
    """

    model_config = {"frozen": True}

    request_id: str = Field(..., min_length=1, description="Logical request id / display name.")
    shape: str = Field(..., min_length=1, description="Provider shape name.")
    targets: list[str] = Field(..., min_length=1, description="Ordered fallback targets.")
    ocpus: float | None = Field(None, gt=0, description="Flex OCPUs.")
    memory_gb: float | None = Field(None, gt=0, description="Flex memory in GB.")

    @field_validator("targets")
    @classmethod
    def _targets_unique(cls, v: list[str]) -> list[str]:
        """Targets are resource keys and must be unique within a request."""
        cleaned = [t.strip() for t in v if t.strip()]
        if not cleaned:
            raise ValueError("targets must contain at least one non-blank entry")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError(f"targets must be unique, got {cleaned!r}")
        return cleaned

    @property
    def is_flex(self) -> bool:
        return self.ocpus is not None and self.memory_gb is not None


#: Lifecycle states of an instance that no longer holds quota.
GONE_STATES: Final[frozenset[str]] = frozenset({"TERMINATING", "TERMINATED"})


class InstanceDescriptor(BaseModel):
    """An instance as reported by the provisioner's inventory.

    Attributes:
        id: Provider-assigned instance identifier (OCID).
        shape_class: Shape name.
        created_at: UTC creation timestamp.
        health_score: 0-100, derived from the lifecycle state.
        display_name: Instance display name.
        lifecycle_state: Raw provider lifecycle state.
        ocpus: OCPUs allocated, when reported.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, description="Instance OCID.")
    shape_class: str = Field(..., description="Shape name.")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=UTC),
        description="UTC creation timestamp.",
    )
    health_score: int = Field(default=50, ge=0, le=100, description="0-100 health score.")
    display_name: str = Field(default="", description="Instance display name.")
    lifecycle_state: str = Field(default="UNKNOWN", description="Provider lifecycle state.")
    ocpus: float | None = Field(default=None, ge=0, description="Allocated OCPUs.")

    def age_hours(self, now: datetime | None = None) -> float:
        """Return the instance age in hours relative to *now* (UTC)."""
        current = now or datetime.now(tz=UTC)
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return (current - created).total_seconds() / 3600.0

    @property
    def gone(self) -> bool:
        return self.lifecycle_state.upper() in GONE_STATES


class ProvisionResult(BaseModel):
    """Outcome of one ``acquire`` call: exactly one of descriptor or error."""

    model_config = {"frozen": True}

    descriptor: InstanceDescriptor | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> ProvisionResult:
        if (self.descriptor is None) == (self.error is None):
            raise ValueError("ProvisionResult needs exactly one of descriptor or error")
        return self

    @property
    def ok(self) -> bool:
        return self.descriptor is not None

    @classmethod
    def success(cls, descriptor: InstanceDescriptor) -> ProvisionResult:
        return cls(descriptor=descriptor)

    @classmethod
    def failure(cls, raw_payload: str) -> ProvisionResult:
        return cls(error=raw_payload or "(empty error payload)")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class RotationOutcome(BaseModel):
    """Structured result of :meth:`~capbot.orchestrator.lifecycle.LifecycleManager.maybe_rotate`.

    Attributes:
        shape_class: Shape the rotation ran for.
        attempted: Termination calls issued (or that would be, in dry-run).
        succeeded: Termination calls that returned ``True``.
        skipped_due_to_age: Candidates filtered out by ``min_age_hours``.
        already_gone: Selected instances found terminating, terminated or
            missing when re-checked just before termination; not attempted.
        selected_ids: Instance ids chosen for retirement, in order.
        dry_run: ``True`` when nothing was actually terminated.
        reason: Short explanation when nothing was selected.
    """

    model_config = {"frozen": True}

    shape_class: str
    attempted: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    skipped_due_to_age: int = Field(default=0, ge=0)
    already_gone: int = Field(default=0, ge=0)
    selected_ids: list[str] = Field(default_factory=list)
    dry_run: bool = False
    reason: str = ""

    @property
    def freed_capacity(self) -> bool:
        """``True`` if at least one instance was really terminated."""
        return not self.dry_run and self.succeeded > 0


class AttemptResult(BaseModel):
    """Transient outcome of one :class:`~capbot.orchestrator.attempt.AcquisitionAttempt`.

    Attributes:
        request_id: Logical request the attempt served.
        status: Terminal :class:`AttemptStatus`.
        error_kind: Aggregated :class:`ErrorKind` for FAILED / EXHAUSTED.
        descriptor: Acquired (or pre-existing) instance on SUCCESS.
        target_used: Target that produced the success.
        duration_s: Wall-clock seconds the attempt took.
        detail: Human-readable detail (last raw error, reason...).
        already_satisfied: SUCCESS came from the idempotency guard.
        target_errors: Last classified error per tried target.
        rotation: Lifecycle rotation performed during the attempt, if any.
    """

    model_config = {"frozen": True}

    request_id: str
    status: AttemptStatus
    error_kind: ErrorKind | None = None
    descriptor: InstanceDescriptor | None = None
    target_used: str | None = None
    duration_s: float = Field(default=0.0, ge=0.0)
    detail: str = ""
    already_satisfied: bool = False
    target_errors: dict[str, ErrorKind] = Field(default_factory=dict)
    rotation: RotationOutcome | None = None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def failed(
        cls, request_id: str, kind: ErrorKind, *, duration_s: float = 0.0, **kwargs: object
    ) -> AttemptResult:
        return cls(
            request_id=request_id,
            status=AttemptStatus.FAILED,
            error_kind=kind,
            duration_s=duration_s,
            **kwargs,
        )

    @classmethod
    def timed_out(cls, request_id: str, *, duration_s: float) -> AttemptResult:
        return cls(
            request_id=request_id,
            status=AttemptStatus.TIMEOUT,
            duration_s=duration_s,
            detail=f"attempt stopped at the {duration_s:.0f}s execution deadline",
        )

    # ------------------------------------------------------------------
    # Derived properties
    # ------------------------------------------------------------------

    @property
    def succeeded(self) -> bool:
        return self.status == AttemptStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        """Process exit code for this result alone."""
        if self.status == AttemptStatus.SUCCESS:
            return EXIT_SUCCESS
        if self.status == AttemptStatus.TIMEOUT:
            return EXIT_TIMEOUT
        if self.status == AttemptStatus.EXHAUSTED:
            return EXIT_CODES[ErrorKind.CAPACITY]
        return exit_code_for(self.error_kind or ErrorKind.UNKNOWN)

    @property
    def rank(self) -> int:
        """Whole-run severity rank; successes rank below every failure."""
        if self.status == AttemptStatus.SUCCESS:
            return -1
        if self.status == AttemptStatus.TIMEOUT:
            return _TIMEOUT_RANK
        if self.status == AttemptStatus.EXHAUSTED:
            return _ERROR_RANK[ErrorKind.CAPACITY]
        return _ERROR_RANK[self.error_kind or ErrorKind.UNKNOWN]

    @property
    def severity(self) -> Severity:
        """Notification severity for this terminal outcome."""
        if self.status == AttemptStatus.SUCCESS:
            return Severity.SUCCESS
        if self.status == AttemptStatus.TIMEOUT:
            return Severity.WARNING
        if self.status == AttemptStatus.EXHAUSTED:
            return Severity.INFO
        kind = self.error_kind or ErrorKind.UNKNOWN
        if kind in (ErrorKind.AUTH, ErrorKind.CONFIG):
            return Severity.CRITICAL
        if kind in (ErrorKind.NETWORK, ErrorKind.INTERNAL_ERROR, ErrorKind.UNKNOWN):
            return Severity.WARNING
        return Severity.INFO

    @property
    def outcome_label(self) -> str:
        """Short label such as ``"success"``, ``"capacity"`` or ``"timeout"``."""
        if self.status == AttemptStatus.FAILED and self.error_kind is not None:
            return self.error_kind.value
        return self.status.value
