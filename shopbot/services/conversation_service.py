from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shopbot.logging_config import get_logger
from shopbot.models import Conversation, Customer
from shopbot.services.state_machine import ConversationStatus
from shopbot.services.tenant_service import CHANNEL_INSTAGRAM, CHANNEL_MESSENGER

logger = get_logger("conversation_service")

PLACEHOLDER_NAMES = {
    CHANNEL_MESSENGER: "Messenger хэрэглэгч",
    CHANNEL_INSTAGRAM: "Instagram хэрэглэгч",
}


def placeholder_name(channel: str) -> str:
    return PLACEHOLDER_NAMES.get(channel, "Хэрэглэгч")


def _external_id_column(channel: str):
    if channel == CHANNEL_INSTAGRAM:
        return Customer.instagram_id
    return Customer.messenger_id


def find_customer(db: Session, store_id: UUID, channel: str, external_id: str) -> Optional[Customer]:
    return (
        db.query(Customer)
        .filter(Customer.store_id == store_id, _external_id_column(channel) == external_id)
        .first()
    )


def create_customer(
    db: Session,
    store_id: UUID,
    channel: str,
    external_id: str,
    name: Optional[str],
) -> Tuple[Customer, bool]:
    """Insert a customer, or return the row a concurrent request inserted first.

    Returns (customer, created).
    """
    customer = Customer(
        store_id=store_id,
        name=name or placeholder_name(channel),
        channel=channel,
        created_at=datetime.now(timezone.utc),
    )
    if channel == CHANNEL_INSTAGRAM:
        customer.instagram_id = external_id
    else:
        customer.messenger_id = external_id

    db.add(customer)
    try:
        db.flush()
        return customer, True
    except IntegrityError:
        db.rollback()
        existing = find_customer(db, store_id, channel, external_id)
        if existing is None:
            raise
        logger.info(
            "Customer created concurrently, reusing existing row",
            extra={"context": {"store_id": str(store_id), "channel": channel}},
        )
        return existing, False


def find_open_conversation(db: Session, store_id: UUID, customer_id: UUID) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.store_id == store_id,
            Conversation.customer_id == customer_id,
            Conversation.status != ConversationStatus.CLOSED.value,
        )
        .order_by(Conversation.updated_at.desc())
        .first()
    )


def get_or_create_conversation(
    db: Session,
    store_id: UUID,
    customer_id: UUID,
    channel: str,
) -> Tuple[Conversation, bool]:
    """Return the customer's open conversation, creating one if none exists.

    The partial unique index over open conversations makes a concurrent
    creator fail on insert; the loser rolls back and reads the winner's row.
    Returns (conversation, is_new).
    """
    conversation = find_open_conversation(db, store_id, customer_id)
    if conversation:
        return conversation, False

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        store_id=store_id,
        customer_id=customer_id,
        channel=channel,
        status=ConversationStatus.ACTIVE.value,
        unread_count=0,
        escalation_score=0,
        escalation_level="low",
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    try:
        db.flush()
        return conversation, True
    except IntegrityError:
        db.rollback()
        existing = find_open_conversation(db, store_id, customer_id)
        if existing is None:
            raise
        logger.info(
            "Open conversation created concurrently, reusing existing row",
            extra={"context": {"store_id": str(store_id), "customer_id": str(customer_id)}},
        )
        return existing, False


def increment_unread(db: Session, conversation_id: UUID) -> int:
    """Atomically add one to the unread counter and touch updated_at.

    Returns the number of rows updated (0 if the conversation vanished).
    """
    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            unread_count=Conversation.unread_count + 1,
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount
