import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid

from shopbot.database import Base


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("store_id", "messenger_id", name="uq_customers_store_messenger"),
        UniqueConstraint("store_id", "instagram_id", name="uq_customers_store_instagram"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False)
    name = Column(Text, nullable=False)
    messenger_id = Column(Text)
    instagram_id = Column(Text)
    channel = Column(Text, nullable=False)  # messenger, instagram
    created_at = Column(DateTime(timezone=True))
