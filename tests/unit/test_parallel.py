"""Unit tests for :class:`~capbot.orchestrator.parallel.ParallelOrchestrator`."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from capbot.core.config import OrchestratorConfig
from capbot.core.exceptions import OrchestratorError
from capbot.core.models import (
    EXIT_TIMEOUT,
    AttemptResult,
    AttemptStatus,
    ErrorKind,
    LaunchRequest,
)
from capbot.orchestrator.parallel import CANCEL_WAIT_S, ParallelOrchestrator, RunReport

_FAST = OrchestratorConfig(timeout_s=0.3, poll_interval_s=0.05, grace_period_s=0.1)


def _ok(request: LaunchRequest) -> AttemptResult:
    return AttemptResult(request_id=request.request_id, status=AttemptStatus.SUCCESS)


class _ScriptedRunner:
    """Per-request behaviour keyed by request id.

    Each behaviour is a coroutine function ``(request, stop, workdir)``.
    """

    def __init__(self, behaviours: dict) -> None:
        self.behaviours = behaviours
        self.workdirs: list[Path] = []

    async def run(
        self,
        request: LaunchRequest,
        *,
        stop: asyncio.Event | None = None,
        workdir: Path | None = None,
    ) -> AttemptResult:
        assert workdir is not None
        self.workdirs.append(workdir)
        return await self.behaviours[request.request_id](request, stop, workdir)


async def _succeed(request: LaunchRequest, _stop: asyncio.Event, _workdir: Path) -> AttemptResult:
    return _ok(request)


async def _capacity(request: LaunchRequest, _stop: asyncio.Event, _workdir: Path) -> AttemptResult:
    return AttemptResult.failed(request.request_id, ErrorKind.CAPACITY)


async def _hang(request: LaunchRequest, _stop: asyncio.Event, _workdir: Path) -> AttemptResult:
    await asyncio.sleep(3600)
    raise AssertionError("unreachable")


async def _ignore_cancel(
    request: LaunchRequest, _stop: asyncio.Event, _workdir: Path
) -> AttemptResult:
    """Swallows the first cancellation, like a provider call stuck in cleanup."""
    try:
        await asyncio.sleep(3600)
    except asyncio.CancelledError:
        await asyncio.sleep(3600)
    raise AssertionError("unreachable")


async def _honour_stop(
    request: LaunchRequest, stop: asyncio.Event, _workdir: Path
) -> AttemptResult:
    await stop.wait()
    return AttemptResult.timed_out(request.request_id, duration_s=0.3)


async def _succeed_on_stop(
    request: LaunchRequest, stop: asyncio.Event, _workdir: Path
) -> AttemptResult:
    await stop.wait()
    return _ok(request)


async def _crash(request: LaunchRequest, _stop: asyncio.Event, _workdir: Path) -> AttemptResult:
    raise RuntimeError("provider adapter bug")


class TestRun:
    @pytest.mark.asyncio
    async def test_results_in_request_order(
        self, flex_request: LaunchRequest, micro_request: LaunchRequest
    ) -> None:
        runner = _ScriptedRunner(
            {flex_request.request_id: _capacity, micro_request.request_id: _succeed}
        )
        result_a, result_b = await ParallelOrchestrator(runner, _FAST).run(
            flex_request, micro_request
        )

        assert result_a.request_id == flex_request.request_id
        assert result_a.error_kind == ErrorKind.CAPACITY
        assert result_b.succeeded

    @pytest.mark.asyncio
    async def test_workdirs_are_distinct_and_removed(
        self, tmp_path: Path, flex_request: LaunchRequest, micro_request: LaunchRequest
    ) -> None:
        runner = _ScriptedRunner(
            {flex_request.request_id: _succeed, micro_request.request_id: _succeed}
        )
        orchestrator = ParallelOrchestrator(runner, _FAST, workdir_root=tmp_path)

        await orchestrator.run(flex_request, micro_request)

        assert len(set(runner.workdirs)) == 2
        assert all(w.parent == tmp_path for w in runner.workdirs)
        assert not any(w.exists() for w in runner.workdirs)

    @pytest.mark.asyncio
    async def test_crash_is_isolated(
        self, flex_request: LaunchRequest, micro_request: LaunchRequest
    ) -> None:
        runner = _ScriptedRunner(
            {flex_request.request_id: _crash, micro_request.request_id: _succeed}
        )
        result_a, result_b = await ParallelOrchestrator(runner, _FAST).run(
            flex_request, micro_request
        )

        assert result_a.status == AttemptStatus.FAILED
        assert result_a.error_kind == ErrorKind.UNKNOWN
        assert "provider adapter bug" in result_a.detail
        assert result_b.succeeded


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_requests(self) -> None:
        with pytest.raises(OrchestratorError):
            await ParallelOrchestrator(_ScriptedRunner({}), _FAST).run_all([])

    @pytest.mark.asyncio
    async def test_duplicate_ids(self, flex_request: LaunchRequest) -> None:
        runner = _ScriptedRunner({flex_request.request_id: _succeed})
        with pytest.raises(OrchestratorError, match="distinct"):
            await ParallelOrchestrator(runner, _FAST).run_all([flex_request, flex_request])


class TestDeadline:
    @pytest.mark.asyncio
    async def test_hung_attempt_times_out_within_bound(
        self, flex_request: LaunchRequest, micro_request: LaunchRequest
    ) -> None:
        runner = _ScriptedRunner(
            {flex_request.request_id: _hang, micro_request.request_id: _capacity}
        )
        orchestrator = ParallelOrchestrator(runner, _FAST)

        started = time.monotonic()
        report = await orchestrator.run_all([flex_request, micro_request])
        elapsed = time.monotonic() - started

        assert elapsed < _FAST.timeout_s + _FAST.grace_period_s + CANCEL_WAIT_S + 0.5
        assert report.deadline_hit
        assert report.results[0].status == AttemptStatus.TIMEOUT
        assert report.results[1].error_kind == ErrorKind.CAPACITY

    @pytest.mark.asyncio
    async def test_uncancellable_attempt_still_bounded(
        self, tmp_path: Path, flex_request: LaunchRequest
    ) -> None:
        runner = _ScriptedRunner({flex_request.request_id: _ignore_cancel})
        orchestrator = ParallelOrchestrator(runner, _FAST, workdir_root=tmp_path)

        started = time.monotonic()
        report = await orchestrator.run_all([flex_request])
        elapsed = time.monotonic() - started

        assert elapsed < _FAST.timeout_s + _FAST.grace_period_s + CANCEL_WAIT_S + 0.5
        assert report.results[0].status == AttemptStatus.TIMEOUT
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_graceful_stop_is_honoured(self, flex_request: LaunchRequest) -> None:
        runner = _ScriptedRunner({flex_request.request_id: _honour_stop})
        report = await ParallelOrchestrator(runner, _FAST).run_all([flex_request])

        assert report.results[0].status == AttemptStatus.TIMEOUT
        assert report.exit_code == EXIT_TIMEOUT

    @pytest.mark.asyncio
    async def test_success_during_grace_period_is_kept(self, flex_request: LaunchRequest) -> None:
        runner = _ScriptedRunner({flex_request.request_id: _succeed_on_stop})
        report = await ParallelOrchestrator(runner, _FAST).run_all([flex_request])

        assert report.deadline_hit
        assert report.results[0].succeeded
        assert report.exit_code == 0

    @pytest.mark.asyncio
    async def test_timeout_override(self, flex_request: LaunchRequest) -> None:
        runner = _ScriptedRunner({flex_request.request_id: _hang})
        config = OrchestratorConfig(timeout_s=30, poll_interval_s=0.05, grace_period_s=0)

        started = time.monotonic()
        await ParallelOrchestrator(runner, config).run_all([flex_request], timeout=0.1)

        assert time.monotonic() - started < 2


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_stops_early(self, flex_request: LaunchRequest) -> None:
        runner = _ScriptedRunner({flex_request.request_id: _honour_stop})
        config = OrchestratorConfig(timeout_s=30, poll_interval_s=0.05, grace_period_s=0.5)
        orchestrator = ParallelOrchestrator(runner, config)

        task = asyncio.create_task(orchestrator.run_all([flex_request]))
        await asyncio.sleep(0.1)
        orchestrator.shutdown()
        report = await asyncio.wait_for(task, timeout=3)

        assert report.deadline_hit
        assert report.results[0].status == AttemptStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_shutdown_does_not_carry_over_to_the_next_run(
        self, flex_request: LaunchRequest, micro_request: LaunchRequest
    ) -> None:
        runner = _ScriptedRunner(
            {flex_request.request_id: _honour_stop, micro_request.request_id: _succeed}
        )
        config = OrchestratorConfig(timeout_s=30, poll_interval_s=0.05, grace_period_s=0.5)
        orchestrator = ParallelOrchestrator(runner, config)

        task = asyncio.create_task(orchestrator.run_all([flex_request]))
        await asyncio.sleep(0.1)
        orchestrator.shutdown()
        await asyncio.wait_for(task, timeout=3)

        report = await orchestrator.run_all([micro_request])

        assert not report.deadline_hit
        assert report.results[0].succeeded


class TestRunReport:
    def test_any_success_exits_zero(self) -> None:
        report = RunReport(
            results=[
                AttemptResult.failed("a", ErrorKind.AUTH),
                AttemptResult(request_id="b", status=AttemptStatus.SUCCESS),
            ]
        )
        assert report.exit_code == 0

    def test_worst_failure_wins(self) -> None:
        report = RunReport(
            results=[
                AttemptResult.failed("a", ErrorKind.CAPACITY),
                AttemptResult.failed("b", ErrorKind.NETWORK),
            ]
        )
        assert report.worst is not None
        assert report.worst.request_id == "b"
        assert report.exit_code == 4

    def test_timeout_outranks_unknown(self) -> None:
        report = RunReport(
            results=[
                AttemptResult.failed("a", ErrorKind.UNKNOWN),
                AttemptResult.timed_out("b", duration_s=55),
            ]
        )
        assert report.exit_code == EXIT_TIMEOUT

    def test_tie_keeps_first(self) -> None:
        report = RunReport(
            results=[
                AttemptResult.failed("a", ErrorKind.CONFIG),
                AttemptResult.failed("b", ErrorKind.AUTH),
            ]
        )
        assert report.worst is not None
        assert report.worst.request_id == "a"

    def test_empty_report(self) -> None:
        assert RunReport().exit_code == 0

    def test_format_report(self) -> None:
        report = RunReport(
            results=[
                AttemptResult(
                    request_id="a1-flex-sg",
                    status=AttemptStatus.SUCCESS,
                    target_used="AD-2",
                    duration_s=3.2,
                ),
                AttemptResult.failed("e2-micro-sg", ErrorKind.CAPACITY, duration_s=9.0),
            ],
            duration_s=9.4,
        )
        line = report.format_report()
        assert "a1-flex-sg=success@AD-2 (3.2s)" in line
        assert "e2-micro-sg=capacity (9.0s)" in line
        assert line.endswith("exit=0")
