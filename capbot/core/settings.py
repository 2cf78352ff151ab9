"""Environment-driven configuration for the ``capbot`` entry point.

Every knob is an environment variable named after the field in upper case
(``OCI_SUBNET_ID`` fills ``oci_subnet_id``).  A ``.env`` file in the working
directory is read as a fallback; real environment variables win over it and
both win over the defaults below.

:class:`Settings` stays at the edge: the runner converts it once into the
small frozen objects of :mod:`capbot.core.config` and hands those down.

Typical usage::

    settings = Settings()
    flex, micro = settings.to_launch_requests()
    budget = settings.to_orchestrator_config()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from capbot.core.config import (
    AttemptConfig,
    CacheConfig,
    OrchestratorConfig,
    RotationConstraints,
    RotationStrategy,
)
from capbot.core.logging_config import FORMATS, LEVELS
from capbot.core.models import LaunchRequest

__all__ = ["Settings"]

logger = logging.getLogger(__name__)

_DEFAULT_HIGH_CONTENTION_REGIONS = [
    "ap-singapore-1",
    "us-ashburn-1",
    "us-phoenix-1",
    "eu-frankfurt-1",
]


def _split_csv(raw: str) -> list[str]:
    """``"AD-1, AD-2,,"`` -> ``["AD-1", "AD-2"]``."""
    return [part.strip() for part in raw.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """All runtime configuration of one ``capbot`` process.

    The OCI identifiers default to empty so that the ``state`` sub-commands
    work on a machine with no cloud credentials; ``run`` checks
    :attr:`oci_configured` before building a provisioner.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # OCI / provisioner
    # ------------------------------------------------------------------
    oci_cli_path: str = Field(default="oci", description="Path to the OCI CLI binary.")
    oci_compartment_id: str = Field(default="", description="Compartment OCID.")
    oci_subnet_id: str = Field(default="", description="Subnet OCID for new instances.")
    oci_image_id: str = Field(default="", description="Image OCID for new instances.")
    oci_region: str = Field(default="ap-singapore-1", description="OCI region identifier.")
    oci_availability_domains: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Ordered fallback availability domains (comma-separated in env).",
    )
    ssh_public_key: str = Field(
        default="",
        description="SSH public key content installed on new instances.",
    )
    assign_public_ip: bool = Field(default=True, description="Assign a public IP on launch.")
    boot_volume_size_gb: int = Field(
        default=50, ge=50, description="Boot volume size in GB (OCI minimum 50)."
    )
    oci_connection_timeout_s: int = Field(default=5, ge=1, description="CLI connect timeout.")
    oci_read_timeout_s: int = Field(default=15, ge=1, description="CLI read timeout.")
    oci_call_timeout_s: float = Field(
        default=25.0,
        gt=0.0,
        description="Client-side bound on one CLI invocation.",
    )

    # ------------------------------------------------------------------
    # Shapes
    # ------------------------------------------------------------------
    a1_shape: str = Field(default="VM.Standard.A1.Flex", description="Flex shape name.")
    a1_ocpus: float = Field(default=4, gt=0, description="Flex shape OCPUs.")
    a1_memory_gb: float = Field(default=24, gt=0, description="Flex shape memory in GB.")
    a1_display_name: str = Field(default="a1-flex-sg", description="Flex instance name.")
    a1_max_ocpus: float = Field(default=4, gt=0, description="Free-tier OCPU limit for A1.")
    e2_shape: str = Field(default="VM.Standard.E2.1.Micro", description="Micro shape name.")
    e2_display_name: str = Field(default="e2-micro-sg", description="Micro instance name.")
    e2_max_instances: int = Field(
        default=2, ge=1, description="Free-tier instance limit for E2 micro."
    )

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    circuit_breaker_threshold: int = Field(
        default=3, ge=1, description="Consecutive failures before a target is skipped."
    )
    circuit_breaker_reset_hours: float = Field(
        default=24.0,
        ge=0.0,
        description="Hours after the last failure before a target is retried (0 = never).",
    )

    # ------------------------------------------------------------------
    # Attempt timing
    # ------------------------------------------------------------------
    inter_target_delay_s: float = Field(default=2.0, ge=0.0)
    transient_max_retries: int = Field(default=1, ge=0)
    transient_retry_delay_s: float = Field(default=2.0, ge=0.0)
    verify_checks: int = Field(default=1, ge=1)
    verify_delay_s: float = Field(default=3.0, ge=0.0)

    # ------------------------------------------------------------------
    # Orchestrator timing
    # ------------------------------------------------------------------
    execution_timeout_s: float = Field(
        default=55.0, gt=0.0, description="Hard deadline for both attempts."
    )
    billing_boundary_s: float = Field(
        default=60.0,
        gt=0.0,
        description="Billing unit of the invoking trigger; the timeout must stay below it.",
    )
    poll_interval_s: float = Field(default=1.0, gt=0.0)
    grace_period_s: float = Field(default=2.0, ge=0.0)

    # ------------------------------------------------------------------
    # State / cache
    # ------------------------------------------------------------------
    state_dir: str = Field(default=".cache/oci-state", description="Local state directory.")
    state_file_name: str = Field(default="instance-state.json")
    cache_enabled: bool = Field(default=True, description="Mirror state to the cache service.")
    cache_version: str = Field(default="v1")
    cache_ttl_hours: int = Field(default=24, ge=1, le=168)
    high_contention_regions: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(_DEFAULT_HIGH_CONTENTION_REGIONS),
        description="Regions that get the reduced cache TTL (comma-separated in env).",
    )
    high_contention_ttl_multiplier: float = Field(default=0.5, gt=0.0, le=1.0)
    cache_service_url: str = Field(
        default="",
        description="Base URL of an HTTP cache service; empty = directory cache.",
    )
    cache_service_token: str = Field(default="", description="Bearer token for the cache service.")
    cache_dir: str = Field(default=".cache/oci-cache", description="Directory cache location.")
    cache_budget_s: float = Field(
        default=3.0,
        gt=0.0,
        description="Bound on the cache restore before the run and the flush after it.",
    )
    github_actions: bool = Field(
        default=False,
        description="Set by GitHub Actions; enables mirroring to the cache service.",
    )

    # ------------------------------------------------------------------
    # Lifecycle rotation
    # ------------------------------------------------------------------
    auto_rotate_instances: bool = Field(default=False)
    instance_min_age_hours: float = Field(default=24.0, ge=0.0)
    rotation_strategy: RotationStrategy = Field(default=RotationStrategy.OLDEST_FIRST)
    rotation_count: int = Field(default=1, ge=1)
    rotation_dry_run: bool = Field(default=False)

    # ------------------------------------------------------------------
    # Telegram
    # ------------------------------------------------------------------
    telegram_bot_token: str = Field(default="", description="Bot token from @BotFather.")
    telegram_chat_id: str = Field(default="", description="Chat ID for notifications.")
    enable_notifications: bool = Field(default=True)
    notify_info: bool = Field(
        default=False,
        description="Also send info-severity outcomes (capacity, rate limit...).",
    )

    # ------------------------------------------------------------------
    # Runtime flags
    # ------------------------------------------------------------------
    dry_run: bool = Field(default=False)
    log_level: str = Field(default="INFO", description="Root logger level.")
    log_format: str = Field(default="text", description="'text' lines or 'json' objects.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("oci_availability_domains", "high_contention_regions", mode="before")
    @classmethod
    def _parse_csv(cls, v: str | list[str]) -> list[str]:
        return _split_csv(v) if isinstance(v, str) else v

    @field_validator("log_level", "log_format")
    @classmethod
    def _check_logging_choice(cls, v: str, info: ValidationInfo) -> str:
        choices = LEVELS if info.field_name == "log_level" else FORMATS
        normalised = v.upper() if info.field_name == "log_level" else v.lower()
        if normalised not in choices:
            raise ValueError(f"{v!r} is not one of {', '.join(choices)}")
        return normalised

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_budget(self) -> Settings:
        """Keep the execution deadline (plus grace) under the billing boundary."""
        if self.execution_timeout_s + self.grace_period_s >= self.billing_boundary_s:
            raise ValueError(
                f"execution_timeout_s ({self.execution_timeout_s}) + grace_period_s "
                f"({self.grace_period_s}) must stay below billing_boundary_s "
                f"({self.billing_boundary_s})"
            )
        if self.cache_budget_s >= self.execution_timeout_s:
            raise ValueError(
                f"cache_budget_s ({self.cache_budget_s}) "
                f"must be below execution_timeout_s ({self.execution_timeout_s})"
            )
        if self.poll_interval_s > self.execution_timeout_s:
            raise ValueError(
                f"poll_interval_s ({self.poll_interval_s}) "
                f"> execution_timeout_s ({self.execution_timeout_s})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    def to_launch_requests(self) -> list[LaunchRequest]:
        """Build the two logical requests (A1 flex first, then E2 micro).

        Raises:
            pydantic.ValidationError: If no availability domain is configured.
        """
        return [
            LaunchRequest(
                request_id=self.a1_display_name,
                shape=self.a1_shape,
                targets=self.oci_availability_domains,
                ocpus=self.a1_ocpus,
                memory_gb=self.a1_memory_gb,
            ),
            LaunchRequest(
                request_id=self.e2_display_name,
                shape=self.e2_shape,
                targets=self.oci_availability_domains,
            ),
        ]

    def to_attempt_config(self) -> AttemptConfig:
        return AttemptConfig(
            inter_target_delay_s=self.inter_target_delay_s,
            transient_max_retries=self.transient_max_retries,
            transient_retry_delay_s=self.transient_retry_delay_s,
            verify_checks=self.verify_checks,
            verify_delay_s=self.verify_delay_s,
        )

    def to_orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            timeout_s=self.execution_timeout_s,
            poll_interval_s=self.poll_interval_s,
            grace_period_s=self.grace_period_s,
        )

    def to_rotation_constraints(self, shape: str, *, dry_run: bool = False) -> RotationConstraints:
        """Build rotation constraints for *shape*, including its free-tier limit.

        Args:
            shape: Shape class being rotated.
            dry_run: Force dry-run in addition to :attr:`rotation_dry_run`.
        """
        return RotationConstraints(
            min_age_hours=self.instance_min_age_hours,
            strategy=self.rotation_strategy,
            count=self.rotation_count,
            dry_run=dry_run or self.rotation_dry_run,
            max_instances=self.e2_max_instances if shape == self.e2_shape else None,
            max_ocpus=self.a1_max_ocpus if shape == self.a1_shape else None,
        )

    def to_cache_config(self) -> CacheConfig:
        return CacheConfig(
            namespace=self.oci_region,
            version=self.cache_version,
            base_ttl_hours=self.cache_ttl_hours,
            high_contention_namespaces=frozenset(self.high_contention_regions),
            high_contention_multiplier=self.high_contention_ttl_multiplier,
            mirror_enabled=self.cache_enabled and self.github_actions,
            io_budget_s=self.cache_budget_s,
        )

    @property
    def state_path(self) -> Path:
        """Full path of the local state file."""
        return Path(self.state_dir) / self.state_file_name

    @property
    def telegram_configured(self) -> bool:
        """Both the bot token and the chat id are present."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @property
    def oci_configured(self) -> bool:
        """``True`` if every identifier needed to launch an instance is set."""
        return bool(
            self.oci_compartment_id
            and self.oci_subnet_id
            and self.oci_image_id
            and self.oci_availability_domains
        )
