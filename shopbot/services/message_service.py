from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from shopbot.logging_config import get_logger
from shopbot.models import Message

logger = get_logger("message_service")


def build_inbound_metadata(quick_reply_payload: Optional[str] = None, mid: Optional[str] = None) -> dict:
    metadata = {}
    if quick_reply_payload:
        metadata["quick_reply"] = quick_reply_payload
    if mid:
        metadata["mid"] = mid
    return metadata


def save_message(
    db: Session,
    conversation_id: UUID,
    content: str,
    *,
    is_from_customer: bool,
    is_ai_response: bool = False,
    metadata: Optional[dict] = None,
) -> Message:
    message = Message(
        conversation_id=conversation_id,
        content=content,
        is_from_customer=is_from_customer,
        is_ai_response=is_ai_response,
        message_metadata=dict(metadata or {}),
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def merge_message_metadata(db: Session, message_id: UUID, patch: dict) -> Optional[Message]:
    """Read-modify-write merge of ``patch`` into a message's metadata."""
    message = db.query(Message).filter(Message.id == message_id).first()
    if message is None:
        logger.warning("Message not found for metadata merge", extra={"context": {"message_id": str(message_id)}})
        return None

    # Reassign so the JSON column is flagged dirty
    message.message_metadata = {**(message.message_metadata or {}), **patch}
    db.flush()
    return message


def fetch_recent_messages(
    db: Session,
    conversation_id: UUID,
    limit: int = 10,
    up_to_message_id: Optional[UUID] = None,
) -> List[Message]:
    """Last ``limit`` messages of a conversation, oldest first.

    With ``up_to_message_id`` only messages created no later than that
    message are returned, so later arrivals never leak into its history.
    """
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if up_to_message_id is not None:
        anchor = aliased(Message)
        cutoff = select(anchor.created_at).where(anchor.id == up_to_message_id).scalar_subquery()
        query = query.filter(Message.created_at <= cutoff)
    rows = query.order_by(Message.created_at.desc()).limit(limit).all()
    return list(reversed(rows))
