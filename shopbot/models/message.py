import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid

from shopbot.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    is_from_customer = Column(Boolean, nullable=False, default=True)
    is_ai_response = Column(Boolean, nullable=False, default=False)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
