"""Telegram MarkdownV2 formatting of notification records.

Message layout::

    ✅ *A1 Flex acquired*
    Instance ocid1.instance... in AD\\-1 \\(3\\.2s\\)

    _2026\\-10\\-19 06:00 UTC · run 1a2b3c4d_

Every piece of dynamic text goes through :func:`escape_mdv2`; only the
bold title and the italic footer markers are literal markup.

Reference: https://core.telegram.org/bots/api#markdownv2-style
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Final

from capbot.core.models import Severity

__all__ = ["escape_mdv2", "format_notification", "SEVERITY_ICONS"]

logger = logging.getLogger(__name__)

# Characters the MarkdownV2 parser treats as markup outside code blocks.
_MDV2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")

SEVERITY_ICONS: Final[dict[Severity, str]] = {
    Severity.SUCCESS: "✅",
    Severity.CRITICAL: "🚨",
    Severity.WARNING: "⚠️",
    Severity.INFO: "ℹ️",
}

#: Detail text beyond this is cut; raw provider errors can be long.
DETAIL_MAX_CHARS: Final[int] = 800


def escape_mdv2(text: str) -> str:
    """Backslash-escape every MarkdownV2 special character in *text*.

    Examples:
        >>> escape_mdv2("AD-1 (3.2s)")
        'AD\\\\-1 \\\\(3\\\\.2s\\\\)'
    """
    return _MDV2_SPECIAL.sub(r"\\\1", text)


def format_notification(
    severity: Severity,
    title: str,
    detail: str = "",
    *,
    run_id: str = "",
    timestamp: datetime | None = None,
) -> str:
    """Render one notification as a MarkdownV2 message.

    Args:
        severity: Decides the leading icon.
        title: Short headline (bold).
        detail: Free text; truncated to :data:`DETAIL_MAX_CHARS`.
        run_id: Shown in the footer when non-empty.
        timestamp: Footer time; defaults to now (UTC).
    """
    when = (timestamp or datetime.now(tz=UTC)).astimezone(UTC)
    lines = [f"{SEVERITY_ICONS[severity]} *{escape_mdv2(title)}*"]

    body = detail.strip()
    if body:
        if len(body) > DETAIL_MAX_CHARS:
            body = body[:DETAIL_MAX_CHARS].rstrip() + "…"
        lines.append(escape_mdv2(body))

    footer = when.strftime("%Y-%m-%d %H:%M UTC")
    if run_id:
        footer += f" · run {run_id}"
    lines.append(f"\n_{escape_mdv2(footer)}_")
    return "\n".join(lines)
