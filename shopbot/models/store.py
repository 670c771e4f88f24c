import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from shopbot.database import Base, JSONType


class Store(Base):
    __tablename__ = "stores"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    facebook_page_id = Column(Text, unique=True)
    facebook_page_access_token = Column(Text)
    instagram_business_account_id = Column(Text, unique=True)
    instagram_access_token = Column(Text)
    ai_auto_reply = Column(Boolean, nullable=False, default=False)
    chatbot_settings = Column(JSONType, nullable=False, default=dict)
    notification_settings = Column(JSONType, nullable=False, default=dict)  # in_app, webhook_url, email, email_<event>
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
