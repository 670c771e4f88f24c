"""Store-facing notifications: in-app rows, owner emails and an optional outgoing webhook."""

from datetime import datetime, timezone
from html import escape
from typing import Optional, Tuple
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from shopbot.config import settings
from shopbot.database import SessionRunner
from shopbot.logging_config import get_logger
from shopbot.models import Notification

logger = get_logger("notification_service")

EVENT_NEW_CUSTOMER = "new_customer"
EVENT_NEW_MESSAGE = "new_message"
EVENT_ESCALATION = "escalation"

PREVIEW_LENGTH = 100
EMAIL_PREVIEW_LENGTH = 200

ESCALATION_LABELS = {
    "low": "Бага",
    "medium": "Дунд",
    "high": "Яаралтай",
    "critical": "Маш яаралтай",
}


def build_notification_content(event: str, data: dict) -> Tuple[str, str]:
    """Localized (title, body) for an event."""
    if event == EVENT_NEW_MESSAGE:
        message = data.get("message") or ""
        if len(message) > PREVIEW_LENGTH:
            message = message[:PREVIEW_LENGTH] + "..."
        return f"Шинэ мессеж: {data.get('customer_name') or 'Харилцагч'}", message
    if event == EVENT_NEW_CUSTOMER:
        return "Шинэ харилцагч", f"{data.get('name') or 'Нэргүй'} ({data.get('channel') or 'web'})"
    if event == EVENT_ESCALATION:
        level = data.get("level") or ""
        signals = data.get("signals") or []
        if isinstance(signals, (list, tuple)):
            signals = ", ".join(str(s) for s in signals)
        return "Яаралтай чат шилжсэн", f"Түвшин: {ESCALATION_LABELS.get(level, level)}. Шалтгаан: {signals}"
    return event, ""


def build_email_content(event: str, data: dict) -> Optional[Tuple[str, str]]:
    """(subject, html) for events that have an email template, else None."""
    if event == EVENT_NEW_MESSAGE:
        customer_name = escape(data.get("customer_name") or "Харилцагч")
        message = data.get("message") or ""
        if len(message) > EMAIL_PREVIEW_LENGTH:
            message = message[:EMAIL_PREVIEW_LENGTH] + "..."
        return (
            f"Шинэ мессеж: {data.get('customer_name') or 'Харилцагч'}",
            "<h2>Шинэ мессеж ирлээ</h2>"
            f"<p><strong>Харилцагч:</strong> {customer_name}</p>"
            f"<p><strong>Мессеж:</strong></p><p>{escape(message)}</p>"
            "<p>Чат хэсгээс хариу бичнэ үү.</p>",
        )
    if event == EVENT_ESCALATION:
        title, body = build_notification_content(event, data)
        return title, f"<h2>{escape(title)}</h2><p>{escape(body)}</p><p>Чат хэсгээс хариу бичнэ үү.</p>"
    return None


def save_notification(db: Session, store_id: UUID, event: str, title: str, body: str, data: dict) -> Notification:
    notification = Notification(
        store_id=store_id,
        type=event,
        title=title,
        body=body,
        data=data,
        is_read=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    db.flush()
    return notification


class NotificationDispatcher:
    def __init__(self, runner: SessionRunner, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.runner = runner
        self.transport = transport

    async def dispatch(
        self,
        store_id: UUID,
        event: str,
        payload: dict,
        notification_settings: Optional[dict] = None,
    ) -> None:
        """Deliver one event to every destination the store configured. Never raises."""
        notification_settings = notification_settings or {}
        data = {key: value for key, value in payload.items() if value is not None}
        title, body = build_notification_content(event, data)

        if notification_settings.get("in_app", True):
            try:
                await self.runner.run(save_notification, store_id, event, title, body, data)
            except Exception as e:
                logger.warning(
                    f"Failed to save in-app notification: {e}",
                    extra={"context": {"store_id": str(store_id), "event": event}},
                )

        webhook_url = notification_settings.get("webhook_url")
        if webhook_url:
            await self._post_webhook(webhook_url, store_id, event, data)

        email = notification_settings.get("email")
        if email and notification_settings.get(f"email_{event}"):
            await self._send_email(email, store_id, event, data)

    async def _send_email(self, to: str, store_id: UUID, event: str, data: dict) -> None:
        content = build_email_content(event, data)
        if content is None:
            return
        if not settings.email_api_key:
            logger.warning(
                "Email API not configured, skipping email notification",
                extra={"context": {"store_id": str(store_id), "event": event}},
            )
            return

        subject, html = content
        try:
            async with httpx.AsyncClient(timeout=settings.email_timeout_seconds, transport=self.transport) as client:
                response = await client.post(
                    settings.email_api_url,
                    headers={"Authorization": f"Bearer {settings.email_api_key}"},
                    json={"from": settings.email_from, "to": to, "subject": subject, "html": html},
                )
            if response.status_code >= 400:
                logger.warning(
                    f"Email API returned {response.status_code}",
                    extra={"context": {"store_id": str(store_id), "event": event}},
                )
        except Exception as e:
            logger.warning(
                f"Email notification failed: {e}",
                extra={"context": {"store_id": str(store_id), "event": event}},
            )

    async def _post_webhook(self, url: str, store_id: UUID, event: str, data: dict) -> None:
        body = {
            "event": event,
            "store_id": str(store_id),
            "data": data,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            async with httpx.AsyncClient(
                timeout=settings.notification_webhook_timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(url, json=body)
            if response.status_code >= 400:
                logger.info(
                    f"Notification webhook returned {response.status_code}",
                    extra={"context": {"store_id": str(store_id), "event": event}},
                )
        except Exception as e:
            logger.info(
                f"Notification webhook failed: {e}",
                extra={"context": {"store_id": str(store_id), "event": event}},
            )
