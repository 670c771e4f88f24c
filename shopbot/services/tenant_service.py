from dataclasses import dataclass, field
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from shopbot.config import settings
from shopbot.logging_config import get_logger
from shopbot.models import Store
from shopbot.schemas.chatbot import ChatbotSettings

logger = get_logger("tenant_service")

CHANNEL_MESSENGER = "messenger"
CHANNEL_INSTAGRAM = "instagram"


@dataclass
class ResolvedTenant:
    store_id: UUID
    store_name: str
    channel: str
    access_token: Optional[str]
    ai_auto_reply: bool
    chatbot_settings: ChatbotSettings
    notification_settings: dict = field(default_factory=dict)

    @property
    def can_send(self) -> bool:
        return bool(self.access_token)


def find_store_for_entry(db: Session, entry_id: str) -> Optional[Tuple[Store, str]]:
    """Match a webhook entry id to a store: page id first, then Instagram account id."""
    store = db.query(Store).filter(Store.facebook_page_id == entry_id).first()
    if store:
        return store, CHANNEL_MESSENGER

    store = db.query(Store).filter(Store.instagram_business_account_id == entry_id).first()
    if store:
        return store, CHANNEL_INSTAGRAM

    return None


def resolve_access_token(store: Store, channel: str) -> Optional[str]:
    if channel == CHANNEL_INSTAGRAM:
        own_token = store.instagram_access_token
    else:
        own_token = store.facebook_page_access_token
    # Stores connected before per-store tokens existed use the app-wide token
    return own_token or settings.facebook_page_access_token or None


def resolve_tenant(db: Session, object_type: str, entry_id: str) -> Optional[ResolvedTenant]:
    match = find_store_for_entry(db, entry_id)
    if match is None:
        logger.info(
            "No store for webhook entry",
            extra={"context": {"object": object_type, "entry_id": entry_id}},
        )
        return None

    store, channel = match
    return ResolvedTenant(
        store_id=store.id,
        store_name=store.name,
        channel=channel,
        access_token=resolve_access_token(store, channel),
        ai_auto_reply=bool(store.ai_auto_reply),
        chatbot_settings=ChatbotSettings.from_blob(store.chatbot_settings, store_id=store.id),
        notification_settings=dict(store.notification_settings or {}),
    )
