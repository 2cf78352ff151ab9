"""Severity-tagged run notifications.

:class:`Notifier` turns terminal :class:`~capbot.core.models.AttemptResult`
objects into :class:`NotificationRecord` values (``{severity, title,
detail}``) and delivers them through
:class:`~capbot.notifiers.telegram.TelegramClient`.

Delivery policy:

* ``info`` records are sent only when ``notify_info`` is enabled; expected
  outcomes (capacity, rate limits, an already satisfied request) would
  otherwise produce a message every scheduled run.
* **dry-run** logs the formatted message instead of sending it.
* No client (credentials missing or notifications disabled) means records
  are logged at DEBUG and dropped.
* Delivery failures are logged with ``events.NOTIFY_ERROR`` and reported as
  ``False``; they never propagate, so they cannot change the exit code.

Typical usage::

    async with TelegramClient(token, chat_id) as client:
        notifier = Notifier(client, RunContext(), notify_info=False, run_id="1a2b3c4d")
        await notifier.notify_results([result_a, result_b])
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from capbot.core import events
from capbot.core.exceptions import NotificationError
from capbot.core.models import AttemptResult, AttemptStatus, Severity
from capbot.core.run_context import RunContext
from capbot.notifiers.formatter import format_notification
from capbot.notifiers.telegram import TelegramClient

__all__ = ["NotificationRecord", "Notifier", "record_for"]

logger = logging.getLogger(__name__)


class NotificationRecord(BaseModel):
    """Input contract of the notification channel."""

    model_config = {"frozen": True}

    severity: Severity
    title: str = Field(..., min_length=1)
    detail: str = ""


def record_for(result: AttemptResult) -> NotificationRecord:
    """Build the notification record describing *result*."""
    rid = result.request_id

    if result.status == AttemptStatus.SUCCESS:
        descriptor_id = result.descriptor.id if result.descriptor else "(unknown id)"
        if result.already_satisfied:
            return NotificationRecord(
                severity=Severity.INFO,
                title=f"{rid} already provisioned",
                detail=f"Instance {descriptor_id}; nothing to do.",
            )
        where = f" in {result.target_used}" if result.target_used else ""
        detail = f"Instance {descriptor_id}{where} after {result.duration_s:.1f}s."
        if result.detail:
            detail += f"\n{result.detail}"
        return NotificationRecord(
            severity=Severity.SUCCESS, title=f"{rid} acquired", detail=detail
        )

    lines = [f"Outcome {result.outcome_label}, exit code {result.exit_code}."]
    if result.target_errors:
        lines.append(
            "Targets: " + ", ".join(f"{t}={k.value}" for t, k in result.target_errors.items())
        )
    if result.rotation is not None and result.rotation.attempted:
        rotation = result.rotation
        lines.append(
            f"Rotation: {rotation.succeeded}/{rotation.attempted} retired"
            + (" (dry-run)" if rotation.dry_run else "")
        )
    if result.detail:
        lines.append(result.detail)
    return NotificationRecord(
        severity=result.severity,
        title=f"{rid}: {result.outcome_label.replace('_', ' ')}",
        detail="\n".join(lines),
    )


class Notifier:
    """Decides whether and how a record is delivered.

    Args:
        client: Open Telegram client, or ``None`` when notifications are off.
            The caller owns the client's lifecycle.
        ctx: Operating mode.
        notify_info: Deliver ``info`` records too.
        run_id: Shown in every message footer.
    """

    def __init__(
        self,
        client: TelegramClient | None,
        ctx: RunContext,
        *,
        notify_info: bool = False,
        run_id: str = "",
    ) -> None:
        self._client = client
        self._ctx = ctx
        self._notify_info = notify_info
        self._run_id = run_id

    async def notify(self, record: NotificationRecord) -> bool:
        """Deliver *record* according to the policy above.

        Returns:
            ``True`` if the message was sent (or logged in dry-run).
        """
        if record.severity == Severity.INFO and not self._notify_info:
            logger.debug("Info notification suppressed: %s", record.title)
            return False

        text = format_notification(
            record.severity, record.title, record.detail, run_id=self._run_id
        )

        if not self._ctx.should_notify:
            logger.info(
                "[%s] Would send %s notification:\n%s", self._ctx.mode_label, record.severity, text
            )
            return True

        if self._client is None:
            logger.debug("Notifications disabled; dropping %r.", record.title)
            return False

        try:
            await self._client.send_message(text)
        except NotificationError as exc:
            logger.error(
                "Notification %r not delivered: %s",
                record.title,
                exc,
                extra={"event": events.NOTIFY_ERROR},
            )
            return False
        logger.info("Notification sent: [%s] %s", record.severity, record.title)
        return True

    async def notify_results(self, results: list[AttemptResult]) -> tuple[int, int]:
        """Notify one record per result.

        Returns:
            ``(sent, not_sent)``; suppressed info records count as not sent.
        """
        sent = 0
        for result in results:
            if await self.notify(record_for(result)):
                sent += 1
        return sent, len(results) - sent
