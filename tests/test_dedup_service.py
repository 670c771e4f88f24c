import pytest

from shopbot.services.dedup_service import KEY_PREFIX, DeliveryDeduplicator


class FakeRedis:
    def __init__(self, fail=False):
        self.store = {}
        self.fail = fail
        self.calls = []

    async def set(self, key, value, ex=None, nx=False):
        self.calls.append((key, ex, nx))
        if self.fail:
            raise ConnectionError("redis down")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        self.store.pop(key, None)


class TestDeliveryDeduplicator:
    @pytest.mark.asyncio
    async def test_second_delivery_is_duplicate(self):
        dedup = DeliveryDeduplicator(FakeRedis(), ttl_seconds=60)

        assert await dedup.is_duplicate("page-1", "mid.1") is False
        assert await dedup.is_duplicate("page-1", "mid.1") is True

    @pytest.mark.asyncio
    async def test_claim_uses_nx_and_ttl(self):
        redis_client = FakeRedis()
        await DeliveryDeduplicator(redis_client, ttl_seconds=60).is_duplicate("page-1", "mid.1")

        assert redis_client.calls == [(f"{KEY_PREFIX}:page-1:mid.1", 60, True)]

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self):
        dedup = DeliveryDeduplicator(FakeRedis())

        await dedup.is_duplicate("page-1", "mid.1")
        assert await dedup.is_duplicate("page-2", "mid.1") is False

    @pytest.mark.asyncio
    async def test_release_allows_retry(self):
        dedup = DeliveryDeduplicator(FakeRedis())

        await dedup.is_duplicate("page-1", "mid.1")
        await dedup.release("page-1", "mid.1")

        assert await dedup.is_duplicate("page-1", "mid.1") is False

    @pytest.mark.asyncio
    async def test_redis_errors_fail_open(self):
        dedup = DeliveryDeduplicator(FakeRedis(fail=True))

        assert await dedup.is_duplicate("page-1", "mid.1") is False
        await dedup.release("page-1", "mid.1")

    @pytest.mark.asyncio
    async def test_disabled_without_client(self):
        dedup = DeliveryDeduplicator(None)

        assert dedup.enabled is False
        assert await dedup.is_duplicate("page-1", "mid.1") is False

    @pytest.mark.asyncio
    async def test_missing_message_id_never_duplicate(self):
        redis_client = FakeRedis()
        dedup = DeliveryDeduplicator(redis_client)

        assert await dedup.is_duplicate("page-1", None) is False
        assert redis_client.calls == []
