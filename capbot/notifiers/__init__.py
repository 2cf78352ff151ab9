"""Run notifications: Telegram transport, MarkdownV2 formatting, delivery policy."""

from capbot.notifiers.formatter import escape_mdv2, format_notification
from capbot.notifiers.notifier import NotificationRecord, Notifier, record_for
from capbot.notifiers.telegram import TelegramClient

__all__ = [
    "NotificationRecord",
    "Notifier",
    "TelegramClient",
    "escape_mdv2",
    "format_notification",
    "record_for",
]
