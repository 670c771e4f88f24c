from dataclasses import dataclass, field
from typing import List, Optional

MESSAGE_TEXT = "text"
MESSAGE_QUICK_REPLIES = "quick_replies"
MESSAGE_CARDS = "cards"


@dataclass
class QuickReplyOption:
    title: str
    payload: str


@dataclass
class ProductCard:
    title: str
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    button_url: Optional[str] = None
    button_title: str = "Дэлгэрэнгүй"


@dataclass
class OutboundMessage:
    """One message the pipeline intends to send to the customer."""

    kind: str  # text, quick_replies, cards
    text: Optional[str] = None
    quick_replies: List[QuickReplyOption] = field(default_factory=list)
    cards: List[ProductCard] = field(default_factory=list)
