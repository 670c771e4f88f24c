"""Ops alerts delivered to a Telegram chat."""

from typing import Optional

import httpx

from shopbot.config import settings
from shopbot.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


async def send_alert(
    level: str,
    message: str,
    context: Optional[dict] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Send an alert to the ops chat.

    Returns True if Telegram accepted it. Never raises: alerting must not
    break the code path that is reporting a problem.
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("ERROR", message, context)


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("CRITICAL", message, context)
