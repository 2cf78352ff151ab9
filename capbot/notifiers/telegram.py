"""Telegram Bot API transport for run notifications.

:class:`TelegramClient` posts to the ``sendMessage`` endpoint through one
keep-alive :class:`httpx.AsyncClient`.  A notification is sent at the very
end of a run whose wall-clock budget is nearly spent, so delivery is bounded
twice:

* ``max_attempts`` total tries (tenacity), with short jittered exponential
  back-off between them;
* ``send_budget_s`` total seconds across all tries (``stop_after_delay``).

A ``retry_after`` longer than ``max_retry_after_s`` is not waited out: the
send fails immediately with :class:`~capbot.core.exceptions.TelegramError`.

Non-retryable responses (4xx other than 429, ``ok=false`` bodies) raise
:class:`~capbot.core.exceptions.TelegramError` at once.

Typical usage::

    async with TelegramClient(settings.telegram_bot_token, settings.telegram_chat_id) as tg:
        await tg.send_message("*capbot* run finished")
"""

from __future__ import annotations

import logging
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_random_exponential,
)

from capbot.core.exceptions import TelegramError, TelegramRateLimitError

__all__ = ["TelegramClient", "TELEGRAM_API_URL"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TELEGRAM_API_URL: Final[str] = "https://api.telegram.org"

#: Telegram rejects longer texts with HTTP 400.
_MAX_MESSAGE_CHARS: Final[int] = 4096

_SERVER_ERRORS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

_DEFAULT_TRIES: Final[int] = 3

#: Total seconds a single notification may take, retries included.
_DEFAULT_SEND_BUDGET_S: Final[float] = 8.0

#: Longest ``retry_after`` honoured before giving up.
_DEFAULT_MAX_RETRY_AFTER_S: Final[float] = 3.0

_BACKOFF = wait_random_exponential(multiplier=0.5, max=2.0)


class _ServerHiccup(TelegramError):
    """Raised on 5xx so tenacity retries; never escapes :meth:`TelegramClient._post`."""


def _wait(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, TelegramRateLimitError):
        return exc.retry_after
    return _BACKOFF(retry_state)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TelegramClient:
    """Async ``sendMessage`` client with bounded retries.

    Args:
        token: Bot token from @BotFather.
        chat_id: Destination chat identifier.
        base_url: API root; tests point it at a mock.
        timeout_s: Per-request timeout (connect, read and write).
        max_attempts: Total tries including the first (>= 1).
        send_budget_s: Wall-clock bound across all tries.
        max_retry_after_s: Longest rate-limit pause that is waited out.
        transport: Optional :class:`httpx.AsyncBaseTransport` (tests use
            :class:`httpx.MockTransport`).

    Raises:
        ValueError: Empty *token* / *chat_id* or ``max_attempts < 1``.
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        *,
        base_url: str = TELEGRAM_API_URL,
        timeout_s: float = 5.0,
        max_attempts: int = _DEFAULT_TRIES,
        send_budget_s: float = _DEFAULT_SEND_BUDGET_S,
        max_retry_after_s: float = _DEFAULT_MAX_RETRY_AFTER_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token or not chat_id:
            raise ValueError("TelegramClient requires a token and a chat_id.")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}.")
        self._token = token
        self._chat_id = chat_id
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_s, pool=2.0)
        self._max_attempts = max_attempts
        self._send_budget_s = send_budget_s
        self._max_retry_after_s = max_retry_after_s
        self._transport = transport
        self._session: httpx.AsyncClient | None = None

    async def __aenter__(self) -> TelegramClient:
        self._client()
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session; safe to call more than once."""
        if self._session is not None and not self._session.is_closed:
            await self._session.aclose()
        self._session = None

    def _client(self) -> httpx.AsyncClient:
        if self._session is None or self._session.is_closed:
            self._session = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"User-Agent": "capbot/0.1"},
            )
        return self._session

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message(self, text: str, *, parse_mode: str = "MarkdownV2") -> int | None:
        """Send *text* to the configured chat.

        Texts longer than Telegram's limit are truncated.

        Returns:
            The ``message_id`` Telegram assigned, when reported.

        Raises:
            TelegramRateLimitError: Still rate limited on the last try.
            TelegramError: Any other delivery failure after retries,
                including a ``retry_after`` above ``max_retry_after_s``.
        """
        if len(text) > _MAX_MESSAGE_CHARS:
            text = text[: _MAX_MESSAGE_CHARS - 1] + "…"

        body: dict[str, Any] = {
            "chat_id": self._chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            body["parse_mode"] = parse_mode

        def _log_retry(state: RetryCallState) -> None:
            failure = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Telegram send try %d/%d failed (%s); retrying.",
                state.attempt_number,
                self._max_attempts,
                failure,
            )

        try:
            async for attempt in AsyncRetrying(
                wait=_wait,
                stop=stop_after_attempt(self._max_attempts) | stop_after_delay(self._send_budget_s),
                retry=retry_if_exception_type(
                    (TelegramRateLimitError, _ServerHiccup, httpx.TransportError)
                ),
                reraise=True,
                before_sleep=_log_retry,
            ):
                with attempt:
                    return await self._post(body)
        except httpx.TransportError as exc:
            raise TelegramError(f"transport failure: {exc}") from exc
        return None  # pragma: no cover

    async def _post(self, payload: dict[str, Any]) -> int | None:
        response = await self._client().post(f"/bot{self._token}/sendMessage", json=payload)
        status = response.status_code
        body = _json_body(response)

        if status == 200:
            if not body.get("ok"):
                raise TelegramError(
                    f"ok=false: {body.get('description', '(no description)')}", status_code=200
                )
            result = body.get("result") or {}
            return result.get("message_id")

        if status == 429:
            retry_after = _retry_after(response, body)
            if retry_after > self._max_retry_after_s:
                logger.warning(
                    "Telegram asks to wait %.0fs; not waiting within the run budget.",
                    retry_after,
                )
                raise TelegramError(f"rate limited for {retry_after:.0f}s", status_code=429)
            raise TelegramRateLimitError(retry_after)

        if status in _SERVER_ERRORS:
            raise _ServerHiccup(f"HTTP {status}", status_code=status)

        raise TelegramError(
            str(body.get("description") or response.text or f"HTTP {status}"), status_code=status
        )


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _retry_after(response: httpx.Response, body: dict[str, Any]) -> float:
    """Delay requested by a 429: JSON ``parameters.retry_after``, then the header, then 1s."""
    candidates = [
        (body.get("parameters") or {}).get("retry_after"),
        response.headers.get("retry-after"),
    ]
    for value in candidates:
        if value in (None, ""):
            continue
        try:
            return max(float(value), 1.0)
        except (TypeError, ValueError):
            continue
    return 1.0
