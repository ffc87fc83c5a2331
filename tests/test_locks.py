"""Tests for the per-key lock registry."""

import asyncio

import pytest

from pppmon.core.locks import KeyedLock


class TestKeyedLock:
    async def test_same_key_is_serialised(self):
        locks = KeyedLock()
        order = []

        async def worker(tag):
            async with locks.hold("alice"):
                order.append(f"{tag}-start")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-end")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-start", "a-end", "b-start", "b-end"]

    async def test_different_keys_run_together(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def first():
            async with locks.hold(1):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with locks.hold(2):
                inside.set()

        await asyncio.gather(first(), second())

    async def test_lock_is_dropped_once_idle(self):
        locks = KeyedLock()
        async with locks.hold(7):
            assert len(locks) == 1
        assert len(locks) == 0

    async def test_lock_survives_while_someone_waits(self):
        locks = KeyedLock()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("k"):
                await release.wait()

        async def waiter():
            async with locks.hold("k"):
                pass

        tasks = [asyncio.create_task(holder()), asyncio.create_task(waiter())]
        await asyncio.sleep(0)
        assert len(locks) == 1
        release.set()
        await asyncio.gather(*tasks)
        assert len(locks) == 0

    async def test_error_inside_still_drops_the_lock(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")
        assert len(locks) == 0
