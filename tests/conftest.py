import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest

import shopbot.models  # noqa: F401  registers tables on Base.metadata
from shopbot.database import Base, SessionRunner, build_engine, build_session_factory
from shopbot.models import Store
from shopbot.schemas.outbound import MESSAGE_TEXT, OutboundMessage
from shopbot.services.result import Result


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'shopbot.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def runner(session_factory):
    return SessionRunner(session_factory)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_store(session_factory):
    def _make_store(**overrides):
        values = {
            "id": uuid.uuid4(),
            "name": "Test Shop",
            "facebook_page_id": "page-1",
            "facebook_page_access_token": "page-token",
            "ai_auto_reply": True,
            "chatbot_settings": {},
            "notification_settings": {},
        }
        values.update(overrides)
        session = session_factory()
        try:
            store = Store(**values)
            session.add(store)
            session.commit()
            return store
        finally:
            session.close()

    return _make_store


class FakeChannelClient:
    """Records outbound calls instead of hitting the Graph API."""

    def __init__(self, channel, access_token, *, store_id=None, profile_name="Бат Болд"):
        self.channel = channel
        self.access_token = access_token
        self.store_id = store_id
        self.profile_name = profile_name
        self.sent = []
        self.seen = []
        self.typing = []

    async def send(self, recipient_id, message):
        self.sent.append(message)
        return Result.success("mid.out")

    async def send_text(self, recipient_id, text):
        self.sent.append(OutboundMessage(MESSAGE_TEXT, text=text))
        return Result.success("mid.out")

    async def mark_seen(self, recipient_id):
        self.seen.append(recipient_id)

    async def send_typing_indicator(self, recipient_id, on):
        self.typing.append(on)

    async def fetch_profile_name(self, user_id):
        return self.profile_name


@pytest.fixture
def channel_clients():
    """Factory that hands out FakeChannelClients and keeps every instance."""
    created = []

    def factory(channel, access_token, *, store_id=None):
        client = FakeChannelClient(channel, access_token, store_id=store_id)
        created.append(client)
        return client

    factory.created = created
    return factory

