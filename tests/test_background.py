import asyncio
import logging

import pytest

from callleads.background import BackgroundTasks


@pytest.mark.asyncio
async def test_drain_collects_results():
    tasks = BackgroundTasks()

    async def value(v):
        await asyncio.sleep(0)
        return v

    tasks.spawn(value(1), label="one")
    tasks.spawn(value(None), label="none")
    tasks.spawn(value(2), label="two")
    assert sorted(await tasks.drain()) == [1, 2]
    assert len(tasks) == 0


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_spawned_by_tasks():
    tasks = BackgroundTasks()

    async def child():
        return "child"

    async def parent():
        tasks.spawn(child(), label="child")
        return "parent"

    tasks.spawn(parent(), label="parent")
    assert sorted(await tasks.drain()) == ["child", "parent"]


@pytest.mark.asyncio
async def test_failure_is_logged_not_raised(caplog):
    tasks = BackgroundTasks()

    async def boom():
        raise RuntimeError("store down")

    with caplog.at_level(logging.ERROR):
        tasks.spawn(boom(), label="final write")
        assert await tasks.drain() == []
    assert "Background final write failed: store down" in caplog.text


@pytest.mark.asyncio
async def test_cancel_all():
    tasks = BackgroundTasks()
    task = tasks.spawn(asyncio.sleep(10), label="slow")
    await asyncio.sleep(0)
    tasks.cancel_all()
    await tasks.drain()
    assert task.cancelled()
