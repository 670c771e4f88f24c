from dataclasses import dataclass
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

MAX_TEXT_LENGTH = 2000
SUPPORTED_OBJECTS = {"page", "instagram"}


def _coerce_id(value: Any) -> Any:
    if isinstance(value, int):
        return str(value)
    return value


class Participant(BaseModel):
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        return _coerce_id(value)


class QuickReply(BaseModel):
    payload: Optional[str] = None


class InboundMessage(BaseModel):
    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False
    quick_reply: Optional[QuickReply] = None


class MessagingEvent(BaseModel):
    sender: Optional[Participant] = None
    recipient: Optional[Participant] = None
    timestamp: Optional[int] = None
    message: Optional[InboundMessage] = None


class WebhookEntry(BaseModel):
    id: str
    time: Optional[int] = None
    # events stay raw so one malformed event cannot reject its siblings
    messaging: Optional[List[Any]] = None
    changes: Optional[List[Any]] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        return _coerce_id(value)


class WebhookPayload(BaseModel):
    """Outer envelope. Entries are validated one by one by the pipeline."""

    object: str
    entry: List[Any] = Field(default_factory=list)


class WebhookAck(BaseModel):
    status: str


# Entries are either direct-message batches or feed/comment changes.
@dataclass(frozen=True)
class MessagingEntry:
    entry_id: str
    events: List[Any]


@dataclass(frozen=True)
class FeedEntry:
    entry_id: str
    changes: List[Any]


@dataclass(frozen=True)
class UnknownEntry:
    entry_id: str


Entry = Union[MessagingEntry, FeedEntry, UnknownEntry]


def classify_entry(entry: WebhookEntry) -> Entry:
    if entry.messaging is not None:
        return MessagingEntry(entry_id=entry.id, events=entry.messaging)
    if entry.changes is not None:
        return FeedEntry(entry_id=entry.id, changes=entry.changes)
    return UnknownEntry(entry_id=entry.id)


@dataclass
class InboundText:
    """A validated customer text message, ready for the pipeline."""

    sender_id: str
    text: str
    mid: Optional[str] = None
    quick_reply_payload: Optional[str] = None
    timestamp: Optional[int] = None


def extract_inbound_text(event: MessagingEvent) -> Optional[InboundText]:
    """Return the customer text carried by an event, or None when it must be skipped."""
    message = event.message
    if message is None or message.is_echo:
        return None
    sender_id = event.sender.id if event.sender else None
    if not sender_id:
        return None
    text = message.text
    if not text or not text.strip() or len(text) > MAX_TEXT_LENGTH:
        return None
    return InboundText(
        sender_id=sender_id,
        text=text,
        mid=message.mid,
        quick_reply_payload=message.quick_reply.payload if message.quick_reply else None,
        timestamp=event.timestamp,
    )
