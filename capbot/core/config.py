"""Per-component configuration models.

Each orchestration component receives an explicit, immutable configuration
object at construction instead of reading environment variables itself.
:class:`~capbot.core.settings.Settings` builds these via its ``to_*``
helpers; tests construct them directly.

Typical usage::

    from capbot.core.config import AttemptConfig, RotationConstraints, RotationStrategy

    cfg = AttemptConfig(inter_target_delay_s=0.0)
    constraints = RotationConstraints(min_age_hours=24, strategy=RotationStrategy.OLDEST_FIRST)
"""

from __future__ import annotations

import logging
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "RotationStrategy",
    "AttemptConfig",
    "OrchestratorConfig",
    "RotationConstraints",
    "CacheConfig",
]

logger = logging.getLogger(__name__)


class RotationStrategy(StrEnum):
    """Ranking used to pick instances for retirement."""

    OLDEST_FIRST = "oldest_first"
    LEAST_UTILIZED = "least_utilized"


class AttemptConfig(BaseModel):
    """Timing knobs of one :class:`~capbot.orchestrator.attempt.AcquisitionAttempt`."""

    model_config = {"frozen": True}

    inter_target_delay_s: float = Field(
        default=2.0, ge=0.0, description="Pause between two fallback targets."
    )
    transient_max_retries: int = Field(
        default=1, ge=0, description="Extra tries on the same target for transient errors."
    )
    transient_retry_delay_s: float = Field(
        default=2.0, ge=0.0, description="Base back-off between transient retries."
    )
    verify_checks: int = Field(
        default=1, ge=1, description="Read-backs performed after a LimitExceeded."
    )
    verify_delay_s: float = Field(
        default=3.0, ge=0.0, description="Pause before each LimitExceeded read-back."
    )


class OrchestratorConfig(BaseModel):
    """Wall-clock budget of one parallel run."""

    model_config = {"frozen": True}

    timeout_s: float = Field(default=55.0, gt=0.0, description="Hard execution deadline.")
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Completion poll interval.")
    grace_period_s: float = Field(
        default=2.0, ge=0.0, description="Wait between graceful stop and forced cancel."
    )


class RotationConstraints(BaseModel):
    """Safety guards and strategy for one lifecycle rotation.

    Attributes:
        min_age_hours: Instances younger than this are never selected.
        strategy: Ranking strategy.
        count: Instances to retire per rotation.
        dry_run: Log the selection without terminating anything.
        max_instances: Shape-class instance limit; rotation only happens at
            or above it.  ``None`` disables the count check.
        max_ocpus: Shape-class OCPU limit; rotation only happens at or above
            it.  ``None`` disables the OCPU check.
    """

    model_config = {"frozen": True}

    min_age_hours: float = Field(default=24.0, ge=0.0)
    strategy: RotationStrategy = RotationStrategy.OLDEST_FIRST
    count: int = Field(default=1, ge=1)
    dry_run: bool = False
    max_instances: int | None = Field(default=None, ge=1)
    max_ocpus: float | None = Field(default=None, gt=0)


class CacheConfig(BaseModel):
    """Cache-key and TTL parameters of the state mirror.

    Attributes:
        namespace: Logical namespace hashed into the cache key (the region).
        version: Schema version embedded in the key.
        key_prefix: Leading key component.
        base_ttl_hours: Baseline TTL.
        high_contention_namespaces: Namespaces that get the reduced TTL.
        high_contention_multiplier: TTL factor for those namespaces.
        mirror_enabled: Mirror writes to the external cache (ephemeral runners).
        io_budget_s: Wall-clock bound on one restore or one flush, retries
            included.
    """

    model_config = {"frozen": True}

    namespace: str = Field(default="default", min_length=1)
    version: str = Field(default="v1", min_length=1)
    key_prefix: str = Field(default="oci-instances", min_length=1)
    base_ttl_hours: int = Field(default=24, ge=1, le=168)
    high_contention_namespaces: frozenset[str] = frozenset()
    high_contention_multiplier: float = Field(default=0.5, gt=0.0, le=1.0)
    mirror_enabled: bool = False
    io_budget_s: float = Field(default=3.0, gt=0.0)

    @field_validator("high_contention_namespaces")
    @classmethod
    def _lowercase_namespaces(cls, v: frozenset[str]) -> frozenset[str]:
        return frozenset(ns.strip().lower() for ns in v if ns.strip())
