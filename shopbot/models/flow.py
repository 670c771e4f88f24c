import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid

from shopbot.database import Base, JSONType


class Flow(Base):
    __tablename__ = "flows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="draft")  # draft, active, archived
    trigger_type = Column(Text, nullable=False)  # keyword, new_conversation, button_click, intent_match
    trigger_config = Column(JSONType, nullable=False, default=dict)
    nodes = Column(JSONType, nullable=False, default=list)
    edges = Column(JSONType, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    times_triggered = Column(Integer, nullable=False, default=0)
    times_completed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
