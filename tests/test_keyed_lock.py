# tests/test_keyed_lock.py
import asyncio

import pytest

from app.services.keyed_lock import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock()
    order = []

    async def worker(name):
        async with locks.hold(("m-1", "user:1")):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_do_not_wait_on_each_other():
    locks = KeyedLock()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with locks.hold("a"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await inside.wait()

    assert locks.locked("a")
    async with locks.hold("b"):
        assert locks.locked("b")

    release.set()
    await task


@pytest.mark.asyncio
async def test_entries_are_dropped_when_released():
    locks = KeyedLock()
    async with locks.hold("a"):
        assert len(locks) == 1

    assert len(locks) == 0
    assert not locks.locked("a")


@pytest.mark.asyncio
async def test_entry_is_released_when_body_raises():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("a"):
            raise RuntimeError("boom")

    assert len(locks) == 0
