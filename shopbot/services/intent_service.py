"""Deterministic keyword classification of customer messages.

Used as the always-available fallback of the message tagger and as the
intent source for flow triggers. Keywords match at the start of a word so
Mongolian suffixed forms ("захиалгаа", "хүргэлтийн") still hit.
"""

import re
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Intent(str, Enum):
    PRODUCT_SEARCH = "product_search"  # asks about products, prices, availability
    ORDER_STATUS = "order_status"  # where is my order
    SHIPPING = "shipping"  # delivery terms
    PAYMENT = "payment"  # how / where to pay
    COMPLAINT = "complaint"  # something is wrong
    RETURN_EXCHANGE = "return_exchange"  # wants to return or swap
    HUMAN_REQUEST = "human_request"  # wants a person
    GREETING = "greeting"
    THANKS = "thanks"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


# Ordered: the first intent that matches is the primary one
INTENT_KEYWORDS: Dict[Intent, Tuple[str, ...]] = {
    Intent.HUMAN_REQUEST: (
        "менежер", "оператор", "ажилтан", "хүнтэй ярих", "хүнтэй холбо", "хүн холбо",
        "human", "real person", "operator", "manager", "agent",
    ),
    Intent.COMPLAINT: (
        "гомдол", "асуудал", "муу", "буруу", "алдаа", "эвдэрсэн", "гэмтсэн", "хуурамч", "луйвар",
        "complaint", "broken", "damaged", "wrong", "fake", "scam",
    ),
    Intent.RETURN_EXCHANGE: (
        "буцаах", "буцаалт", "буцааж", "солих", "солилцох",
        "return", "refund", "exchange",
    ),
    Intent.ORDER_STATUS: (
        "захиалга", "захиалсан", "захиалгын", "трэк", "статус", "илгээсэн", "хэзээ ирэх",
        "order", "tracking", "track", "shipped",
    ),
    Intent.SHIPPING: (
        "хүргэлт", "хүргэх", "хүргэж", "хүргүүл",
        "shipping", "delivery", "deliver",
    ),
    Intent.PAYMENT: (
        "төлбөр", "төлөх", "төлсөн", "данс", "qpay", "карт",
        "payment", "pay", "invoice",
    ),
    Intent.PRODUCT_SEARCH: (
        "бүтээгдэхүүн", "бараа", "үнэ", "хувцас", "гутал", "цүнх", "пүүз", "хэдээр", "хэд вэ",
        "байгаа юу", "бий юу", "загвар", "өнгө", "размер", "хэмжээ",
        "product", "price", "how much", "buy", "catalog", "in stock", "available", "size",
    ),
    Intent.GREETING: (
        "сайн байна", "сайн уу", "сайнуу", "сн бну", "сбну", "мэнд",
        "hello", "hi", "hey", "good morning", "good evening",
    ),
    Intent.THANKS: (
        "баярлалаа", "баярлаа", "thanks", "thank you", "thx",
    ),
}

NEGATIVE_KEYWORDS = (
    "уурласан", "бухимдсан", "залхсан", "ичмээр", "аймар", "хэрэггүй", "яагаад",
    "angry", "terrible", "awful", "worst", "disappointed",
)

POSITIVE_KEYWORDS = (
    "гоё", "гоеё", "сайхан", "таалагдсан", "маш сайн", "гайхалтай",
    "great", "love", "awesome", "perfect", "nice",
)

NEGATIVE_INTENTS = {Intent.COMPLAINT, Intent.RETURN_EXCHANGE}

# Intents that carry a concrete question; welcome flows step aside for these
SUBSTANTIVE_INTENTS = {
    Intent.PRODUCT_SEARCH,
    Intent.ORDER_STATUS,
    Intent.SHIPPING,
    Intent.PAYMENT,
    Intent.COMPLAINT,
    Intent.RETURN_EXCHANGE,
}

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    text = _PUNCTUATION.sub(" ", (text or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def _keyword_pattern(keywords: Tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(keyword) for keyword in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternatives})", re.UNICODE)


INTENT_PATTERNS = {intent: _keyword_pattern(keywords) for intent, keywords in INTENT_KEYWORDS.items()}
NEGATIVE_PATTERN = _keyword_pattern(NEGATIVE_KEYWORDS)
POSITIVE_PATTERN = _keyword_pattern(POSITIVE_KEYWORDS)


def matches_keyword(normalized: str, keyword: str) -> bool:
    """Word-start match of a single (already normalized) keyword."""
    keyword = normalize_text(keyword)
    if not keyword:
        return False
    return re.search(rf"(?<!\w){re.escape(keyword)}", normalized, re.UNICODE) is not None


def classify_topics(text: str) -> List[Intent]:
    """All intents whose keywords occur in ``text``, in priority order."""
    normalized = normalize_text(text)
    if not normalized:
        return []
    return [intent for intent, pattern in INTENT_PATTERNS.items() if pattern.search(normalized)]


def classify_intent(text: str) -> Optional[Intent]:
    topics = classify_topics(text)
    return topics[0] if topics else None


def detect_sentiment(text: str, topics: Optional[List[Intent]] = None) -> Sentiment:
    normalized = normalize_text(text)
    topics = classify_topics(text) if topics is None else topics

    if NEGATIVE_PATTERN.search(normalized) or any(topic in NEGATIVE_INTENTS for topic in topics):
        return Sentiment.NEGATIVE
    if POSITIVE_PATTERN.search(normalized) or Intent.THANKS in topics:
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL


def is_substantive(intent) -> bool:
    if intent is None:
        return False
    value = intent.value if isinstance(intent, Enum) else str(intent)
    return value in {i.value for i in SUBSTANTIVE_INTENTS}
