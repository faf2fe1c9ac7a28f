"""Tests for per-user mutation locks."""

import asyncio
import uuid

import pytest

from app.core.locks import user_lock


class TestUserLock:
    @pytest.mark.asyncio
    async def test_same_user_serialized(self):
        user_id = uuid.uuid4()
        order: list[str] = []
        first_inside = asyncio.Event()
        release_first = asyncio.Event()

        async def first():
            async with user_lock(user_id):
                order.append("first:start")
                first_inside.set()
                await release_first.wait()
                order.append("first:end")

        async def second():
            await first_inside.wait()
            async with user_lock(user_id):
                order.append("second")

        tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
        await first_inside.wait()
        await asyncio.sleep(0)
        assert order == ["first:start"]

        release_first.set()
        await asyncio.gather(*tasks)
        assert order == ["first:start", "first:end", "second"]

    @pytest.mark.asyncio
    async def test_different_users_independent(self):
        held = asyncio.Event()
        release = asyncio.Event()
        user_a, user_b = uuid.uuid4(), uuid.uuid4()

        async def hold_a():
            async with user_lock(user_a):
                held.set()
                await release.wait()

        task = asyncio.create_task(hold_a())
        await held.wait()

        # Would hang if user_b shared user_a's lock
        async with user_lock(user_b):
            pass

        release.set()
        await task

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        user_id = uuid.uuid4()
        with pytest.raises(RuntimeError):
            async with user_lock(user_id):
                raise RuntimeError("boom")

        async with user_lock(user_id):
            pass
