"""Orchestrator entry-point: assemble all components and execute one run.

:func:`run_once` is what ``capbot run`` calls on every scheduled trigger.

Component wiring
----------------
1. Loads :class:`~capbot.core.settings.Settings` (or uses the supplied one)
   and tags every log line of the run with a fresh run id.
2. Builds the state store (:func:`~capbot.storage.cache.build_state_store`):
   the local JSON file, mirrored to the cache service on ephemeral CI
   runners.  The mirror is restored once, up front; the time it takes
   comes out of the execution budget.
3. Builds the provisioner, circuit breaker, optional lifecycle manager and
   the :class:`~capbot.orchestrator.attempt.AcquisitionAttempt`.
4. Runs both logical requests through
   :class:`~capbot.orchestrator.parallel.ParallelOrchestrator`, with SIGTERM
   and SIGINT wired to its graceful shutdown.
5. Stamps the state document, flushes the cache mirror, sends one
   notification per result and returns the process exit code.

Resources (provisioner, Telegram client, cache client) are released through
one :class:`contextlib.AsyncExitStack`, including on exceptions.

Dry-run
-------
``ctx.dry_run`` keeps acquisitions real but turns lifecycle terminations and
notifications into log entries.

Typical usage::

    import asyncio
    from capbot.core.run_context import RunContext
    from capbot.orchestrator.runner import run_once

    exit_code = asyncio.run(run_once(RunContext(dry_run=True)))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
import uuid
from contextlib import AsyncExitStack

from capbot.core import events
from capbot.core.exceptions import ConfigError, StorageError
from capbot.core.logging_config import RUN_ID_CTX
from capbot.core.models import InstanceDescriptor, LaunchRequest, RotationOutcome
from capbot.core.run_context import RunContext
from capbot.core.settings import Settings
from capbot.notifiers.notifier import Notifier
from capbot.notifiers.telegram import TelegramClient
from capbot.orchestrator.attempt import AcquisitionAttempt
from capbot.orchestrator.circuit_breaker import CircuitBreaker
from capbot.orchestrator.lifecycle import LifecycleManager
from capbot.orchestrator.parallel import ParallelOrchestrator, RunReport
from capbot.providers.base import Provisioner
from capbot.providers.oci_cli import OciCliProvisioner
from capbot.storage.cache import build_state_store, get_dynamic_ttl_hours
from capbot.storage.state import State, StateStore

__all__ = [
    "build_provisioner",
    "build_attempt",
    "run_once",
    "list_rotation_candidates",
    "rotate_shape",
]

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_provisioner(settings: Settings) -> Provisioner:
    """Return the provisioner adapter.

    Raises:
        ConfigError: When the OCI identifiers or availability domains are
            not configured.
    """
    if not settings.oci_configured:
        raise ConfigError(
            "OCI is not configured. Set OCI_COMPARTMENT_ID, OCI_SUBNET_ID, "
            "OCI_IMAGE_ID and OCI_AVAILABILITY_DOMAINS."
        )
    return OciCliProvisioner.from_settings(settings)


def build_attempt(
    settings: Settings,
    provisioner: Provisioner,
    store: StateStore,
    *,
    dry_run: bool = False,
) -> AcquisitionAttempt:
    """Wire one :class:`AcquisitionAttempt` from *settings*."""
    breaker = CircuitBreaker(
        store,
        threshold=settings.circuit_breaker_threshold,
        reset_after_hours=settings.circuit_breaker_reset_hours,
    )
    lifecycle = LifecycleManager(provisioner, store) if settings.auto_rotate_instances else None
    return AcquisitionAttempt(
        provisioner,
        store,
        breaker,
        config=settings.to_attempt_config(),
        lifecycle=lifecycle,
        rotation_constraints=lambda shape: settings.to_rotation_constraints(
            shape, dry_run=dry_run
        ),
        limit_ttl_hours=get_dynamic_ttl_hours(settings.to_cache_config()),
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _run_with_signals(
    orchestrator: ParallelOrchestrator, requests: list[LaunchRequest], *, timeout: float
) -> RunReport:
    """Run *requests*; SIGTERM / SIGINT trigger the orchestrator's shutdown."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        logger.warning("Received %s.", sig.name, extra={"event": events.RUN_SIGNAL})
        orchestrator.shutdown()

    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Cannot install a %s handler here.", sig.name)
            continue
        installed.append(sig)

    try:
        return await orchestrator.run_all(requests, timeout=timeout)
    finally:
        for sig in installed:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(sig)


async def _finalize_state(store: StateStore) -> None:
    def _stamp(_state: State) -> None:
        return None

    try:
        store.update(_stamp)
    except StorageError:
        logger.error("Could not persist the final state document.", exc_info=True)
    await store.flush()


# ---------------------------------------------------------------------------
# Public entry-points
# ---------------------------------------------------------------------------


async def run_once(
    ctx: RunContext,
    settings: Settings | None = None,
    *,
    provisioner: Provisioner | None = None,
    store: StateStore | None = None,
    telegram: TelegramClient | None = None,
) -> int:
    """Execute one full acquisition run and return the process exit code.

    Args:
        ctx: Operating mode.
        settings: Pre-loaded settings; loaded from the environment if ``None``.
        provisioner: Override of the provisioner (tests).
        store: Override of the state store (tests).
        telegram: Override of the Telegram client (tests).  When ``None`` a
            client is built if credentials are configured and notifications
            are enabled.

    Returns:
        ``0`` if any attempt succeeded, otherwise the exit code of the most
        severe result.

    Raises:
        ConfigError: Missing OCI configuration.
        pydantic.ValidationError: Invalid request configuration.
    """
    if settings is None:
        settings = Settings()

    run_id = uuid.uuid4().hex[:8]
    RUN_ID_CTX.set(run_id)

    if provisioner is None:
        provisioner = build_provisioner(settings)
    requests = settings.to_launch_requests()
    if store is None:
        store = build_state_store(settings)

    logger.info(
        "Run %s starting (mode=%s, requests=%s, targets=%s).",
        run_id,
        ctx.mode_label,
        ", ".join(r.request_id for r in requests),
        ", ".join(settings.oci_availability_domains),
        extra={"event": events.RUN_START},
    )

    async with AsyncExitStack() as stack:
        stack.push_async_callback(store.close)
        await stack.enter_async_context(provisioner)

        started = time.monotonic()
        await store.restore()
        remaining = settings.execution_timeout_s - (time.monotonic() - started)

        attempt = build_attempt(settings, provisioner, store, dry_run=ctx.dry_run)
        orchestrator = ParallelOrchestrator(attempt, settings.to_orchestrator_config())
        report = await _run_with_signals(orchestrator, requests, timeout=remaining)

        await _finalize_state(store)
        logger.info("%s", report.format_report(), extra={"event": events.RUN_COMPLETE})

        client = telegram
        if (
            client is None
            and settings.enable_notifications
            and settings.telegram_configured
            and ctx.should_notify
        ):
            client = TelegramClient(settings.telegram_bot_token, settings.telegram_chat_id)
        if client is not None:
            await stack.enter_async_context(client)

        notifier = Notifier(client, ctx, notify_info=settings.notify_info, run_id=run_id)
        await notifier.notify_results(report.results)

    return report.exit_code


async def list_rotation_candidates(
    settings: Settings, shape: str, *, provisioner: Provisioner | None = None
) -> tuple[list[InstanceDescriptor], int]:
    """Ranked rotation candidates of *shape* and the count skipped for age."""
    provisioner = provisioner or build_provisioner(settings)
    async with provisioner:
        manager = LifecycleManager(provisioner)
        return await manager.list_candidates(shape, settings.to_rotation_constraints(shape))


async def rotate_shape(
    settings: Settings,
    shape: str,
    *,
    dry_run: bool = False,
    provisioner: Provisioner | None = None,
    store: StateStore | None = None,
) -> RotationOutcome:
    """Run one manual lifecycle rotation for *shape*."""
    provisioner = provisioner or build_provisioner(settings)
    store = store or build_state_store(settings)
    try:
        await store.restore()
        async with provisioner:
            manager = LifecycleManager(provisioner, store)
            outcome = await manager.maybe_rotate(
                shape, settings.to_rotation_constraints(shape, dry_run=dry_run)
            )
        await store.flush()
        return outcome
    finally:
        await store.close()
