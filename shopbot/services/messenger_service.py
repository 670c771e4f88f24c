"""Outbound Messenger / Instagram Send API client."""

from typing import List, Optional

import httpx

from shopbot.config import settings
from shopbot.logging_config import get_logger
from shopbot.schemas.outbound import (
    MESSAGE_CARDS,
    MESSAGE_QUICK_REPLIES,
    MESSAGE_TEXT,
    OutboundMessage,
    ProductCard,
    QuickReplyOption,
)
from shopbot.services.alert_service import alert_error
from shopbot.services.background import spawn_detached
from shopbot.services.result import Result
from shopbot.services.tenant_service import CHANNEL_INSTAGRAM

logger = get_logger("messenger_service")

MAX_TEXT_LENGTH = 2000
MAX_QUICK_REPLIES = 13
MAX_QUICK_REPLY_TITLE = 20
MAX_CARDS = 10
MAX_CARD_TEXT = 80


def split_text(text: str, limit: int = MAX_TEXT_LENGTH) -> List[str]:
    """Split long text into chunks the Send API accepts, preferring line then word breaks."""
    chunks = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = window.rfind("\n")
        if cut < limit * 0.5:
            cut = window.rfind(" ")
            if cut < limit * 0.3:
                cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


class ChannelClient:
    """Sends messages for one store on one channel.

    Deliverable sends (text, quick replies, cards) return a Result and are
    logged and alerted on failure. Cosmetic calls (typing, mark seen) swallow
    their errors.
    """

    def __init__(
        self,
        channel: str,
        access_token: str,
        *,
        store_id=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.channel = channel
        self.access_token = access_token
        self.store_id = store_id
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.outbound_timeout_seconds

    @property
    def api_base(self) -> str:
        base = settings.instagram_api_base if self.channel == CHANNEL_INSTAGRAM else settings.messenger_api_base
        return f"{base.rstrip('/')}/{settings.graph_api_version}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _post_message(self, payload: dict) -> httpx.Response:
        async with self._client() as client:
            response = await client.post(
                f"{self.api_base}/me/messages",
                params={"access_token": self.access_token},
                json=payload,
            )
        response.raise_for_status()
        return response

    async def _deliver(self, recipient_id: str, kind: str, payload: dict) -> Result[str]:
        try:
            response = await self._post_message(payload)
        except Exception as e:
            context = {
                "recipient_id": recipient_id,
                "store_id": str(self.store_id),
                "channel": self.channel,
                "kind": kind,
                "error": str(e),
            }
            logger.error("Outbound send failed", extra={"context": context})
            spawn_detached(lambda: alert_error("Outbound message failed", context), name="alert_outbound")
            return Result.from_exception(e, code="send_failed")

        message_id = None
        try:
            message_id = response.json().get("message_id")
        except ValueError:
            pass
        return Result.success(message_id)

    async def send_text(self, recipient_id: str, text: str) -> Result[str]:
        result: Result[str] = Result.failure("empty text", code="empty")
        for chunk in split_text(text):
            result = await self._deliver(
                recipient_id,
                MESSAGE_TEXT,
                {"recipient": {"id": recipient_id}, "message": {"text": chunk}, "messaging_type": "RESPONSE"},
            )
            if not result.ok:
                return result
        return result

    async def send_quick_replies(
        self, recipient_id: str, text: str, options: List[QuickReplyOption]
    ) -> Result[str]:
        quick_replies = [
            {
                "content_type": "text",
                "title": option.title[:MAX_QUICK_REPLY_TITLE],
                "payload": option.payload,
            }
            for option in options[:MAX_QUICK_REPLIES]
        ]
        return await self._deliver(
            recipient_id,
            MESSAGE_QUICK_REPLIES,
            {
                "recipient": {"id": recipient_id},
                "message": {"text": text[:MAX_TEXT_LENGTH], "quick_replies": quick_replies},
                "messaging_type": "RESPONSE",
            },
        )

    async def send_product_cards(self, recipient_id: str, cards: List[ProductCard]) -> Result[str]:
        elements = []
        for card in cards[:MAX_CARDS]:
            element = {"title": card.title[:MAX_CARD_TEXT]}
            if card.subtitle:
                element["subtitle"] = card.subtitle[:MAX_CARD_TEXT]
            if card.image_url:
                element["image_url"] = card.image_url
            if card.button_url:
                element["buttons"] = [{"type": "web_url", "url": card.button_url, "title": card.button_title}]
            elements.append(element)

        return await self._deliver(
            recipient_id,
            MESSAGE_CARDS,
            {
                "recipient": {"id": recipient_id},
                "message": {
                    "attachment": {
                        "type": "template",
                        "payload": {"template_type": "generic", "elements": elements},
                    }
                },
                "messaging_type": "RESPONSE",
            },
        )

    async def send(self, recipient_id: str, message: OutboundMessage) -> Result[str]:
        if message.kind == MESSAGE_CARDS:
            return await self.send_product_cards(recipient_id, message.cards)
        if message.kind == MESSAGE_QUICK_REPLIES:
            return await self.send_quick_replies(recipient_id, message.text or "", message.quick_replies)
        return await self.send_text(recipient_id, message.text or "")

    async def _sender_action(self, recipient_id: str, action: str) -> None:
        try:
            await self._post_message({"recipient": {"id": recipient_id}, "sender_action": action})
        except Exception as e:
            logger.debug(f"Sender action {action} failed: {e}")

    async def send_typing_indicator(self, recipient_id: str, on: bool) -> None:
        await self._sender_action(recipient_id, "typing_on" if on else "typing_off")

    async def mark_seen(self, recipient_id: str) -> None:
        await self._sender_action(recipient_id, "mark_seen")

    async def fetch_profile_name(self, user_id: str) -> Optional[str]:
        """Best-effort display name lookup; None on any failure."""
        fields = "name,username" if self.channel == CHANNEL_INSTAGRAM else "first_name,last_name"
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.api_base}/{user_id}",
                    params={"fields": fields, "access_token": self.access_token},
                )
            if response.status_code != 200:
                logger.info(f"Profile lookup returned {response.status_code}")
                return None
            data = response.json()
        except Exception as e:
            logger.info(f"Profile lookup failed: {e}")
            return None

        if self.channel == CHANNEL_INSTAGRAM:
            name = data.get("name") or data.get("username")
        else:
            name = " ".join(part for part in (data.get("first_name"), data.get("last_name")) if part)
        return (name or "").strip() or None
