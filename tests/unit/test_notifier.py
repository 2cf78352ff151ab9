"""Unit tests for the notification stack.

Covers:
- :mod:`capbot.notifiers.formatter`: MarkdownV2 escaping and layout.
- :class:`~capbot.notifiers.telegram.TelegramClient` against an
  :class:`httpx.MockTransport`: success, ``ok=false``, 429 handling,
  server-error retries, truncation.
- :class:`~capbot.notifiers.notifier.Notifier`: severity policy, dry-run,
  delivery failures.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from capbot.core.exceptions import TelegramError, TelegramRateLimitError
from capbot.core.models import (
    AttemptResult,
    AttemptStatus,
    ErrorKind,
    InstanceDescriptor,
    RotationOutcome,
    Severity,
)
from capbot.core.run_context import RunContext
from capbot.notifiers.formatter import DETAIL_MAX_CHARS, escape_mdv2, format_notification
from capbot.notifiers.notifier import NotificationRecord, Notifier, record_for
from capbot.notifiers.telegram import TelegramClient

TOKEN = "123:ABC"
CHAT = "-1001"


def _client(handler, **kwargs) -> TelegramClient:
    return TelegramClient(TOKEN, CHAT, transport=httpx.MockTransport(handler), **kwargs)


def _ok_response(message_id: int = 42) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "result": {"message_id": message_id}})


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class TestFormatter:
    def test_escape(self) -> None:
        assert escape_mdv2("AD-1 (3.2s)") == r"AD\-1 \(3\.2s\)"
        assert escape_mdv2("a_b*c[d]") == r"a\_b\*c\[d\]"

    def test_layout(self) -> None:
        text = format_notification(
            Severity.SUCCESS,
            "a1-flex-sg acquired",
            "Instance ocid1.x in AD-2.",
            run_id="1a2b3c4d",
            timestamp=datetime(2026, 10, 19, 6, 0, tzinfo=UTC),
        )
        lines = text.split("\n")
        assert lines[0] == "✅ *a1\\-flex\\-sg acquired*"
        assert lines[1] == "Instance ocid1\\.x in AD\\-2\\."
        assert lines[-1] == "_2026\\-10\\-19 06:00 UTC · run 1a2b3c4d_"

    def test_detail_truncated(self) -> None:
        text = format_notification(Severity.WARNING, "t", "x" * (DETAIL_MAX_CHARS + 50))
        assert "x" * DETAIL_MAX_CHARS + "…" in text
        assert "x" * (DETAIL_MAX_CHARS + 1) not in text

    def test_empty_detail_omitted(self) -> None:
        text = format_notification(Severity.INFO, "t", "   ")
        assert text.count("\n") == 2


# ---------------------------------------------------------------------------
# Telegram client
# ---------------------------------------------------------------------------


class TestTelegramClient:
    @pytest.mark.asyncio
    async def test_send_message(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok_response(7)

        async with _client(handler) as client:
            message_id = await client.send_message("hello")

        assert message_id == 7
        assert seen[0].url.path == f"/bot{TOKEN}/sendMessage"
        body = json.loads(seen[0].content)
        assert body["chat_id"] == CHAT
        assert body["text"] == "hello"
        assert body["parse_mode"] == "MarkdownV2"

    @pytest.mark.asyncio
    async def test_ok_false_is_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"ok": False, "description": "chat not found"})

        async with _client(handler) as client:
            with pytest.raises(TelegramError, match="chat not found"):
                await client.send_message("hello")
        assert calls == 1

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"ok": False, "description": "can't parse entities"})

        async with _client(handler) as client:
            with pytest.raises(TelegramError) as exc_info:
                await client.send_message("*broken")
        assert exc_info.value.status_code == 400
        assert calls == 1

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self) -> None:
        responses = [
            httpx.Response(429, json={"ok": False, "parameters": {"retry_after": 1}}),
            _ok_response(),
        ]

        async with _client(lambda request: responses.pop(0)) as client:
            assert await client.send_message("hello") == 42

    @pytest.mark.asyncio
    async def test_long_retry_after_gives_up(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(429, headers={"Retry-After": "30"}, json={"ok": False})

        async with _client(handler) as client:
            with pytest.raises(TelegramError) as exc_info:
                await client.send_message("hello")
        assert not isinstance(exc_info.value, TelegramRateLimitError)
        assert exc_info.value.status_code == 429
        assert calls == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self) -> None:
        responses = [httpx.Response(502, text="Bad Gateway"), _ok_response()]

        async with _client(lambda request: responses.pop(0)) as client:
            assert await client.send_message("hello") == 42

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_attempts(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        async with _client(handler, max_attempts=2) as client:
            with pytest.raises(TelegramError):
                await client.send_message("hello")
        assert calls == 2

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler, max_attempts=1) as client:
            with pytest.raises(TelegramError, match="transport failure"):
                await client.send_message("hello")

    @pytest.mark.asyncio
    async def test_long_text_truncated(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content)["text"])
            return _ok_response()

        async with _client(handler) as client:
            await client.send_message("y" * 5000)
        assert len(seen[0]) == 4096
        assert seen[0].endswith("…")

    def test_requires_credentials(self) -> None:
        with pytest.raises(ValueError):
            TelegramClient("", CHAT)


# ---------------------------------------------------------------------------
# Records and notifier
# ---------------------------------------------------------------------------


class TestRecordFor:
    def test_success(self) -> None:
        result = AttemptResult(
            request_id="a1-flex-sg",
            status=AttemptStatus.SUCCESS,
            descriptor=InstanceDescriptor(id="ocid1.instance.x", shape_class="s"),
            target_used="AD-2",
            duration_s=3.2,
        )
        record = record_for(result)
        assert record.severity == Severity.SUCCESS
        assert record.title == "a1-flex-sg acquired"
        assert "ocid1.instance.x in AD-2" in record.detail

    def test_already_satisfied_is_info(self) -> None:
        result = AttemptResult(
            request_id="r", status=AttemptStatus.SUCCESS, already_satisfied=True
        )
        assert record_for(result).severity == Severity.INFO

    def test_failure_lists_targets_and_rotation(self) -> None:
        result = AttemptResult.failed(
            "r",
            ErrorKind.LIMIT_EXCEEDED,
            target_errors={"AD-1": ErrorKind.LIMIT_EXCEEDED, "AD-2": ErrorKind.CAPACITY},
            rotation=RotationOutcome(shape_class="s", attempted=1, dry_run=True),
        )
        record = record_for(result)
        assert record.title == "r: limit exceeded"
        assert "exit code 5" in record.detail
        assert "AD-1=limit_exceeded, AD-2=capacity" in record.detail
        assert "Rotation: 0/1 retired (dry-run)" in record.detail

    def test_auth_is_critical(self) -> None:
        assert record_for(AttemptResult.failed("r", ErrorKind.AUTH)).severity == Severity.CRITICAL


def _mock_client(*, fail: bool = False) -> MagicMock:
    client = MagicMock(spec=TelegramClient)
    client.send_message = AsyncMock(
        side_effect=TelegramError("boom", status_code=500) if fail else None, return_value=1
    )
    return client


def _sent(client: MagicMock) -> list[str]:
    return [call.args[0] for call in client.send_message.await_args_list]


class TestNotifier:
    @pytest.mark.asyncio
    async def test_info_suppressed_by_default(self) -> None:
        client = _mock_client()
        notifier = Notifier(client, RunContext())
        assert not await notifier.notify(NotificationRecord(severity=Severity.INFO, title="t"))
        client.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_info_sent_when_enabled(self) -> None:
        client = _mock_client()
        notifier = Notifier(client, RunContext(), notify_info=True)
        assert await notifier.notify(NotificationRecord(severity=Severity.INFO, title="t"))
        client.send_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dry_run_logs_instead_of_sending(self, caplog: pytest.LogCaptureFixture) -> None:
        client = _mock_client()
        notifier = Notifier(client, RunContext(dry_run=True))
        with caplog.at_level("INFO", logger="capbot.notifiers.notifier"):
            sent = await notifier.notify(
                NotificationRecord(severity=Severity.CRITICAL, title="auth broken")
            )
        assert sent
        client.send_message.assert_not_awaited()
        assert "Would send critical notification" in caplog.text

    @pytest.mark.asyncio
    async def test_no_client(self) -> None:
        notifier = Notifier(None, RunContext())
        assert not await notifier.notify(
            NotificationRecord(severity=Severity.WARNING, title="t")
        )

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self) -> None:
        notifier = Notifier(_mock_client(fail=True), RunContext())
        assert not await notifier.notify(
            NotificationRecord(severity=Severity.WARNING, title="t")
        )

    @pytest.mark.asyncio
    async def test_notify_results_counts(self) -> None:
        client = _mock_client()
        notifier = Notifier(client, RunContext(), run_id="1a2b3c4d")
        results = [
            AttemptResult(request_id="a", status=AttemptStatus.SUCCESS),
            AttemptResult.failed("b", ErrorKind.CAPACITY),
        ]
        assert await notifier.notify_results(results) == (1, 1)
        assert "run 1a2b3c4d" in _sent(client)[0]
