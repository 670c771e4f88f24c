import asyncio
import logging

import pytest

from shopbot.services.background import spawn_detached, wait_for_detached


class TestSpawnDetached:
    @pytest.mark.asyncio
    async def test_runs_without_being_awaited(self):
        done = []

        async def work():
            done.append(True)

        spawn_detached(work, name="work")
        assert await wait_for_detached(1) == 0
        assert done == [True]

    @pytest.mark.asyncio
    async def test_errors_are_logged_not_raised(self, caplog):
        async def boom():
            raise RuntimeError("boom")

        with caplog.at_level(logging.WARNING, logger="shopbot.background"):
            task = spawn_detached(boom, name="boom", context={"store_id": "s1"})
            await wait_for_detached(1)

        assert task.done()
        assert task.exception() is None
        assert "Detached task boom failed: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_factory_errors_are_contained(self):
        def factory():
            raise ValueError("cannot build")

        task = spawn_detached(factory, name="bad_factory")
        await wait_for_detached(1)

        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_waits_for_nested_tasks(self):
        done = []

        async def inner():
            await asyncio.sleep(0.01)
            done.append("inner")

        async def outer():
            spawn_detached(inner, name="inner")
            done.append("outer")

        spawn_detached(outer, name="outer")
        await wait_for_detached(1)

        assert done == ["outer", "inner"]

    @pytest.mark.asyncio
    async def test_timeout_reports_pending(self):
        release = asyncio.Event()

        spawn_detached(release.wait, name="slow")

        assert await wait_for_detached(0.01) == 1
        release.set()
        assert await wait_for_detached(1) == 0
