import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from shopbot.models import Conversation, Customer
from shopbot.services import conversation_service
from shopbot.services.conversation_service import (
    create_customer,
    find_customer,
    get_or_create_conversation,
    increment_unread,
    placeholder_name,
)


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def customer(runner, store):
    customer, _ = runner.run_sync(create_customer, store.id, "messenger", "user-1", "Болд")
    return customer


class TestCustomers:
    def test_create_and_find(self, runner, store):
        customer, created = runner.run_sync(create_customer, store.id, "messenger", "user-1", "Болд")

        assert created is True
        found = runner.run_sync(find_customer, store.id, "messenger", "user-1")
        assert found.id == customer.id
        assert found.messenger_id == "user-1"
        assert found.instagram_id is None

    def test_instagram_customer_uses_instagram_column(self, runner, store):
        customer, _ = runner.run_sync(create_customer, store.id, "instagram", "ig-user", None)

        assert customer.instagram_id == "ig-user"
        assert customer.messenger_id is None
        assert runner.run_sync(find_customer, store.id, "messenger", "ig-user") is None

    def test_placeholder_name(self, runner, store):
        customer, _ = runner.run_sync(create_customer, store.id, "messenger", "user-2", None)
        assert customer.name == "Messenger хэрэглэгч"
        assert placeholder_name("instagram") == "Instagram хэрэглэгч"

    def test_duplicate_insert_returns_existing(self, runner, store, db):
        first, _ = runner.run_sync(create_customer, store.id, "messenger", "user-1", "Болд")
        second, created = runner.run_sync(create_customer, store.id, "messenger", "user-1", "Other")

        assert created is False
        assert second.id == first.id
        assert db.query(Customer).count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_creation_single_row(self, runner, store, db):
        results = await asyncio.gather(
            *[runner.run(create_customer, store.id, "messenger", "user-9", "Болд") for _ in range(6)]
        )

        assert len({customer.id for customer, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
        assert db.query(Customer).filter(Customer.messenger_id == "user-9").count() == 1


class TestConversations:
    def test_creates_active_conversation(self, runner, store, customer):
        conversation, is_new = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")

        assert is_new is True
        assert conversation.status == "active"
        assert conversation.unread_count == 0

    def test_reuses_open_conversation(self, runner, store, customer):
        first, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")
        second, is_new = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")

        assert is_new is False
        assert second.id == first.id

    def test_escalated_conversation_is_still_open(self, runner, store, customer, db):
        first, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")
        db.query(Conversation).filter(Conversation.id == first.id).update({"status": "escalated"})
        db.commit()

        second, is_new = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")

        assert is_new is False
        assert second.id == first.id

    def test_closed_conversation_starts_new_one(self, runner, store, customer, db):
        first, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")
        db.query(Conversation).filter(Conversation.id == first.id).update({"status": "closed"})
        db.commit()

        second, is_new = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")

        assert is_new is True
        assert second.id != first.id

    def test_stale_lookup_recovers_from_unique_violation(self, runner, store, customer, monkeypatch):
        existing, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")

        real_find = conversation_service.find_open_conversation
        calls = []

        def stale_then_real(db, store_id, customer_id):
            calls.append(1)
            if len(calls) == 1:
                return None  # another worker inserted after our read
            return real_find(db, store_id, customer_id)

        monkeypatch.setattr(conversation_service, "find_open_conversation", stale_then_real)

        conversation, is_new = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")

        assert is_new is False
        assert conversation.id == existing.id
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_simultaneous_inbound_creates_one_open_conversation(self, runner, store, customer, db):
        results = await asyncio.gather(
            *[runner.run(get_or_create_conversation, store.id, customer.id, "messenger") for _ in range(8)]
        )

        assert len({conversation.id for conversation, _ in results}) == 1
        open_count = (
            db.query(Conversation)
            .filter(Conversation.customer_id == customer.id, Conversation.status != "closed")
            .count()
        )
        assert open_count == 1


class TestIncrementUnread:
    def test_increments_and_touches_updated_at(self, runner, store, customer, db):
        conversation, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")
        before = datetime.now(timezone.utc)

        assert runner.run_sync(increment_unread, conversation.id) == 1

        row = db.query(Conversation).filter(Conversation.id == conversation.id).one()
        assert row.unread_count == 1
        assert row.updated_at.replace(tzinfo=timezone.utc) >= before.replace(microsecond=0)

    def test_missing_conversation(self, runner):
        assert runner.run_sync(increment_unread, uuid.uuid4()) == 0

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, runner, store, customer, db):
        conversation, _ = runner.run_sync(get_or_create_conversation, store.id, customer.id, "messenger")
        db.query(Conversation).filter(Conversation.id == conversation.id).update({"unread_count": 3})
        db.commit()

        n = 20
        await asyncio.gather(*[runner.run(increment_unread, conversation.id) for _ in range(n)])

        db.expire_all()
        row = db.query(Conversation).filter(Conversation.id == conversation.id).one()
        assert row.unread_count == 3 + n
