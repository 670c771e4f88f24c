import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text

from shopbot.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # One open conversation per (store, customer)
        Index(
            "uq_conversations_open_per_customer",
            "store_id",
            "customer_id",
            unique=True,
            postgresql_where=text("status <> 'closed'"),
            sqlite_where=text("status <> 'closed'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    channel = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, escalated, closed
    unread_count = Column(Integer, nullable=False, default=0)
    escalation_score = Column(Integer, nullable=False, default=0)
    escalation_level = Column(Text, nullable=False, default="low")  # low, medium, high, critical
    escalated_at = Column(DateTime(timezone=True))
    flow_state = Column(JSONType)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
