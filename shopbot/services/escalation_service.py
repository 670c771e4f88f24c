"""Escalation of conversations from automation to a human agent.

Each customer message adds weighted signals to the conversation's running
score. Crossing the store's threshold, or explicitly asking for a person,
hands the conversation to a human; after that no automated reply is sent.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shopbot.logging_config import get_logger
from shopbot.models import Conversation
from shopbot.schemas.chatbot import ChatbotSettings
from shopbot.services.intent_service import matches_keyword, normalize_text
from shopbot.services.message_service import fetch_recent_messages
from shopbot.services.state_machine import ConversationStatus, escalate

logger = get_logger("escalation_service")

COMPLAINT_KEYWORDS = (
    "гомдол", "асуудал", "муу", "буруу", "алдаа",
    "сэтгэл ханамжгүй", "чанар муу", "эвдэрсэн", "гэмтсэн",
    "хуурамч", "луйвар", "тохиромжгүй",
)

FRUSTRATION_KEYWORDS = (
    "яагаад", "яаж ийм", "битгий", "хэрэггүй",
    "уурласан", "бухимдсан", "залхсан", "ичмээр",
    "ямар ч", "хариулахгүй", "хэзээ ч",
)

RETURN_EXCHANGE_KEYWORDS = (
    "буцаах", "буцаалт", "солих", "солилцох",
    "буцааж өгөх", "мөнгө буцаах",
)

PAYMENT_DISPUTE_KEYWORDS = (
    "төлбөр буруу", "давхар төлсөн", "мөнгө ирээгүй",
    "залилсан", "хуурсан", "төлбөр төлсөн ч",
)

HUMAN_REQUEST_PATTERNS = (
    re.compile(r"(?<!\w)(менежер|оператор|ажилтан)\w*"),
    re.compile(r"(?<!\w)хүн(тэй|ээр)\s+(ярь|ярих|холбо)\w*"),
    re.compile(r"\b(real person|human agent|talk to (a )?(human|person|manager))\b"),
)

WEIGHTS = {
    "complaint": 25,
    "frustration": 20,
    "return_exchange": 20,
    "payment_dispute": 25,
    "repeated_message": 15,
    "ai_fail_to_resolve": 15,
    "long_unresolved": 10,
}

MAX_SCORE = 100
REPEAT_SIMILARITY = 0.8
REPEAT_WINDOW = 5
UNANSWERED_STREAK = 5
LONG_THREAD_CUSTOMER_MESSAGES = 6
HISTORY_LIMIT = 10

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)


@dataclass
class RecentMessage:
    content: str
    is_from_customer: bool
    is_ai_response: bool = False


@dataclass
class EscalationResult:
    new_score: int
    level: str
    should_escalate: bool
    signals: List[str] = field(default_factory=list)
    points: int = 0


@dataclass
class EscalationDecision:
    escalated: bool
    level: str = "low"
    escalation_message: Optional[str] = None
    signals: List[str] = field(default_factory=list)
    score: int = 0


def score_to_level(score: int) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def _contains_any(lower: str, keywords: Sequence[str]) -> bool:
    return any(keyword in lower for keyword in keywords)


def _word_set(text: str) -> set:
    return set(_NON_WORD.sub("", text.lower()).split())


def is_repeated_message(message: str, previous: Sequence[str]) -> bool:
    """Jaccard similarity of word sets against earlier customer messages."""
    words = _word_set(message)
    if not words:
        return False
    for prev in previous:
        prev_words = _word_set(prev)
        if not prev_words:
            continue
        if len(words & prev_words) / len(words | prev_words) >= REPEAT_SIMILARITY:
            return True
    return False


def count_unanswered_streak(messages: Sequence[RecentMessage]) -> int:
    """Customer messages at the end of the history with no reply of any kind."""
    streak = 0
    for message in reversed(messages):
        if not message.is_from_customer:
            break
        streak += 1
    return streak


def is_human_request(text: str, settings: ChatbotSettings) -> bool:
    normalized = normalize_text(text)
    if settings.auto_handoff and any(matches_keyword(normalized, kw) for kw in settings.handoff_keywords):
        return True
    return any(pattern.search(normalized) for pattern in HUMAN_REQUEST_PATTERNS)


def evaluate_escalation(
    current_score: int,
    message: str,
    recent_messages: Sequence[RecentMessage],
    settings: ChatbotSettings,
) -> EscalationResult:
    """Score one customer message.

    ``recent_messages`` is the chronological history and ends with the
    message being scored, which is already stored.
    """
    current_score = current_score or 0
    if not settings.escalation_enabled:
        return EscalationResult(current_score, score_to_level(current_score), False, [])

    lower = message.lower()
    added = 0
    signals = []

    for signal, keywords in (
        ("complaint", COMPLAINT_KEYWORDS),
        ("frustration", FRUSTRATION_KEYWORDS),
        ("return_exchange", RETURN_EXCHANGE_KEYWORDS),
        ("payment_dispute", PAYMENT_DISPUTE_KEYWORDS),
    ):
        if _contains_any(lower, keywords):
            added += WEIGHTS[signal]
            signals.append(signal)

    customer_texts = [m.content for m in recent_messages if m.is_from_customer]
    # The last customer entry is the current message itself
    previous = customer_texts[:-1][-REPEAT_WINDOW:]
    if is_repeated_message(message, previous):
        added += WEIGHTS["repeated_message"]
        signals.append("repeated_message")

    if count_unanswered_streak(recent_messages) >= UNANSWERED_STREAK:
        added += WEIGHTS["ai_fail_to_resolve"]
        signals.append("ai_fail_to_resolve")

    has_human_reply = any(not m.is_from_customer and not m.is_ai_response for m in recent_messages)
    if len(customer_texts) >= LONG_THREAD_CUSTOMER_MESSAGES and not has_human_reply:
        added += WEIGHTS["long_unresolved"]
        signals.append("long_unresolved")

    new_score = min(current_score + added, MAX_SCORE)
    crossed = current_score < settings.escalation_threshold <= new_score

    human_request = is_human_request(message, settings)
    if human_request:
        signals.append("human_request")

    return EscalationResult(new_score, score_to_level(new_score), crossed or human_request, signals, added)


def _add_to_score(db: Session, conversation_id: UUID, points: int) -> Optional[Tuple[int, int]]:
    """Atomically add ``points`` to the running score, capped at MAX_SCORE.

    Returns ``(previous, new)`` or None if the conversation does not exist.
    The conversation row stays locked until the transaction ends, so
    concurrent evaluations of one conversation apply one after another.
    """
    bumped = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(escalation_score=Conversation.escalation_score + points)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount == 0:
        return None

    raw = db.execute(select(Conversation.escalation_score).where(Conversation.id == conversation_id)).scalar_one()
    new_score = min(raw, MAX_SCORE)
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(escalation_score=new_score, escalation_level=score_to_level(new_score))
        .execution_options(synchronize_session=False)
    )
    return raw - points, new_score


def _mark_escalated(db: Session, conversation_id: UUID) -> bool:
    """Move an active conversation to escalated. False if it was not active."""
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id, Conversation.status == ConversationStatus.ACTIVE.value)
        .values(status=escalate(ConversationStatus.ACTIVE).value, escalated_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def process_escalation(
    db: Session,
    conversation_id: UUID,
    message_text: str,
    store_id: UUID,
    chatbot_settings: ChatbotSettings,
    *,
    message_id: UUID,
) -> EscalationDecision:
    """Score the stored customer message ``message_id`` and escalate when required.

    History is read only up to that message, so messages arriving at the
    same time are scored against what came before each of them. The
    escalation message is returned, not stored: the caller stores it once
    it was delivered.
    """
    if not chatbot_settings.escalation_enabled:
        return EscalationDecision(escalated=False)

    history = [
        RecentMessage(m.content, bool(m.is_from_customer), bool(m.is_ai_response))
        for m in fetch_recent_messages(db, conversation_id, limit=HISTORY_LIMIT, up_to_message_id=message_id)
        if m.id != message_id
    ]
    history.append(RecentMessage(message_text, is_from_customer=True))
    result = evaluate_escalation(0, message_text, history, chatbot_settings)

    scores = _add_to_score(db, conversation_id, result.points)
    if scores is None:
        logger.warning("Conversation not found for escalation", extra={"context": {"conversation_id": str(conversation_id)}})
        return EscalationDecision(escalated=False)

    previous, new_score = scores
    level = score_to_level(new_score)
    crossed = previous < chatbot_settings.escalation_threshold <= new_score
    should_escalate = crossed or "human_request" in result.signals
    if not should_escalate or not _mark_escalated(db, conversation_id):
        return EscalationDecision(escalated=False, level=level, signals=result.signals, score=new_score)

    logger.info(
        "Conversation escalated",
        extra={
            "context": {
                "conversation_id": str(conversation_id),
                "store_id": str(store_id),
                "score": new_score,
                "signals": result.signals,
            }
        },
    )
    return EscalationDecision(
        escalated=True,
        level=level,
        escalation_message=chatbot_settings.resolved_escalation_message,
        signals=result.signals,
        score=new_score,
    )
