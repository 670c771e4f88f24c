import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid

from shopbot.database import Base, JSONType


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False)
    type = Column(Text, nullable=False)  # new_customer, new_message, escalation
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSONType, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
