"""Notification service - user-facing notices plus optional Slack forwarding of errors."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
import structlog

logger = structlog.get_logger()


async def send_slack_notification(
    webhook_url: str,
    text: str,
    blocks: list | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Send a notification via Slack incoming webhook."""
    if not webhook_url:
        logger.info("slack_notification_skipped_no_webhook")
        return False

    payload: dict = {"text": text}
    if blocks:
        payload["blocks"] = blocks

    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            resp = await client.post(webhook_url, json=payload)
            resp.raise_for_status()
        logger.info("slack_notification_sent", text=text[:100])
        return True
    except Exception as e:
        logger.error("slack_notification_failed", error=str(e))
        return False


def format_error_notification(text: str, context: dict) -> tuple[str, list]:
    """Format an error notice for Slack."""
    fields = [{"type": "mrkdwn", "text": f"*{k}:* {v}"} for k, v in context.items() if v is not None]
    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "Marketdesk error"}
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text[:500]}
        },
    ]
    if fields:
        blocks.append({"type": "section", "fields": fields[:10]})
    return text, blocks


@dataclass
class Notice:
    level: str  # success, info, error
    text: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier:
    """Collects notices for the current view, the equivalent of toast messages."""

    def __init__(
        self,
        slack_webhook_url: str = "",
        max_notices: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.slack_webhook_url = slack_webhook_url
        self.notices: deque[Notice] = deque(maxlen=max_notices)
        self._transport = transport

    async def success(self, text: str) -> None:
        self.notices.append(Notice("success", text))
        logger.info("notice_success", text=text)

    async def info(self, text: str) -> None:
        self.notices.append(Notice("info", text))
        logger.info("notice_info", text=text)

    async def error(self, text: str, **context) -> None:
        self.notices.append(Notice("error", text))
        logger.error("notice_error", text=text, **context)
        if self.slack_webhook_url:
            message, blocks = format_error_notification(text, context)
            await send_slack_notification(self.slack_webhook_url, message, blocks=blocks,
                                          transport=self._transport)

    def drain(self) -> list[Notice]:
        notices = list(self.notices)
        self.notices.clear()
        return notices

    def last(self, level: str | None = None) -> Notice | None:
        for notice in reversed(self.notices):
            if level is None or notice.level == level:
                return notice
        return None
