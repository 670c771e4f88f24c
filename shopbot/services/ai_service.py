"""AI auto-reply: call the chat engine and shape its answer for the channel."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, List, Optional

import httpx

from shopbot.config import settings
from shopbot.logging_config import get_logger
from shopbot.schemas.chatbot import ChatbotSettings
from shopbot.schemas.outbound import (
    MESSAGE_CARDS,
    MESSAGE_QUICK_REPLIES,
    MESSAGE_TEXT,
    OutboundMessage,
    ProductCard,
    QuickReplyOption,
)
from shopbot.services.background import spawn_detached

logger = get_logger("ai_service")

MAX_CARDS = 10
CARD_DESCRIPTION_LENGTH = 60

ORDER_CONFIRM_OPTIONS = (
    QuickReplyOption(title="Тийм", payload="ORDER_CONFIRM"),
    QuickReplyOption(title="Үгүй", payload="ORDER_CANCEL"),
)

SUGGESTION_OPTIONS = (
    QuickReplyOption(title="Бүтээгдэхүүн", payload="BROWSE_PRODUCTS"),
    QuickReplyOption(title="Захиалга шалгах", payload="CHECK_ORDER"),
    QuickReplyOption(title="Хүргэлт", payload="SHIPPING_INFO"),
)


@dataclass
class Product:
    name: str
    id: Optional[str] = None
    base_price: Optional[float] = None
    description: Optional[str] = None
    images: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Product":
        images = data.get("images") or []
        if isinstance(images, str):
            images = [images]
        price = data.get("base_price")
        return cls(
            name=str(data.get("name") or ""),
            id=str(data["id"]) if data.get("id") is not None else None,
            base_price=float(price) if price is not None else None,
            description=data.get("description"),
            images=[str(image) for image in images if image],
        )


@dataclass
class AIResult:
    response: Optional[str]
    intent: str = "general"
    products: List[Product] = field(default_factory=list)
    order_step: Optional[str] = None  # variant, confirm, address, phone
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "AIResult":
        response = data.get("response")
        return cls(
            response=response if isinstance(response, str) else None,
            intent=str(data.get("intent") or "general"),
            products=[Product.from_dict(p) for p in data.get("products") or [] if isinstance(p, dict)],
            order_step=data.get("order_step") or data.get("orderStep"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class ChatRequest:
    conversation_id: str
    customer_message: str
    store_id: str
    store_name: str
    customer_id: str
    customer_name: str
    channel: str
    chatbot_settings: dict


class ChatEngine(ABC):
    """The AI chat engine collaborator."""

    @abstractmethod
    async def respond(self, request: ChatRequest) -> AIResult:
        """Produce a reply for one customer message."""


class HttpChatEngine(ChatEngine):
    def __init__(self, url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.transport = transport

    async def respond(self, request: ChatRequest) -> AIResult:
        async with httpx.AsyncClient(timeout=settings.ai_timeout_seconds, transport=self.transport) as client:
            response = await client.post(self.url, json=asdict(request))
        response.raise_for_status()
        return AIResult.from_dict(response.json())


def format_price(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:,.0f}₮"


def build_product_card(product: Product, *, show_price: bool = True, app_url: Optional[str] = None) -> ProductCard:
    parts = []
    if show_price and product.base_price is not None:
        parts.append(format_price(product.base_price))
    if product.description:
        parts.append(product.description.strip()[:CARD_DESCRIPTION_LENGTH])
    button_url = f"{app_url.rstrip('/')}/products/{product.id}" if app_url and product.id else None
    return ProductCard(
        title=product.name,
        subtitle="\n".join(parts) or None,
        image_url=product.images[0] if product.images else None,
        button_url=button_url,
    )


def build_reply_plan(
    result: AIResult,
    *,
    show_prices: bool = True,
    app_url: Optional[str] = None,
) -> List[OutboundMessage]:
    """Map an AI result to the messages to send, first matching rule wins."""
    text = (result.response or "").strip()
    if not text:
        return []

    if result.intent == "product_search" and result.products:
        cards = [build_product_card(p, show_price=show_prices, app_url=app_url) for p in result.products[:MAX_CARDS]]
        return [OutboundMessage(MESSAGE_TEXT, text=text), OutboundMessage(MESSAGE_CARDS, cards=cards)]

    if result.order_step == "confirm":
        return [OutboundMessage(MESSAGE_QUICK_REPLIES, text=text, quick_replies=list(ORDER_CONFIRM_OPTIONS))]

    if result.intent in ("order_created", "order_collection"):
        return [OutboundMessage(MESSAGE_TEXT, text=text)]

    if result.intent in ("greeting", "general"):
        return [OutboundMessage(MESSAGE_QUICK_REPLIES, text=text, quick_replies=list(SUGGESTION_OPTIONS))]

    return [OutboundMessage(MESSAGE_TEXT, text=text)]


class AIOrchestrator:
    def __init__(self, engine: Optional[ChatEngine], timeout_seconds: Optional[float] = None):
        self.engine = engine
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.ai_timeout_seconds

    async def respond(
        self,
        conversation: Any,
        customer_message: str,
        tenant: Any,
        customer: Any,
        chatbot_settings: ChatbotSettings,
        channel_client: Any = None,
        recipient_id: Optional[str] = None,
    ) -> Optional[AIResult]:
        """Ask the chat engine for a reply. Returns None on any failure or timeout."""
        context = {"conversation_id": str(conversation.id), "store_id": str(tenant.store_id)}
        if self.engine is None:
            logger.info("Chat engine not configured, skipping auto-reply", extra={"context": context})
            return None

        show_typing = channel_client is not None and recipient_id is not None
        if show_typing:
            spawn_detached(lambda: channel_client.send_typing_indicator(recipient_id, True), name="typing_on")

        request = ChatRequest(
            conversation_id=str(conversation.id),
            customer_message=customer_message,
            store_id=str(tenant.store_id),
            store_name=tenant.store_name,
            customer_id=str(customer.id),
            customer_name=customer.name,
            channel=tenant.channel,
            chatbot_settings=chatbot_settings.model_dump(),
        )
        try:
            return await asyncio.wait_for(self.engine.respond(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"AI response timed out after {self.timeout_seconds}s", extra={"context": context})
            return None
        except Exception as e:
            logger.error(f"AI response failed: {e}", extra={"context": context}, exc_info=True)
            return None
        finally:
            if show_typing:
                spawn_detached(lambda: channel_client.send_typing_indicator(recipient_id, False), name="typing_off")
