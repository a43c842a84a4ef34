from __future__ import annotations

import asyncio
import time

import pytest

from models import Thread
from schemas import ThreadCreate, ThreadUpdate
from services import ThreadResolver, ThreadService
from services.errors import Forbidden


async def test_resolve_creates_then_reuses(session_factory):
    resolver = ThreadResolver(session_factory)

    first = await resolver.resolve("alice")
    second = await resolver.resolve("alice")

    assert first == second
    with session_factory() as db:
        thread = ThreadService.get_thread(db, first)
        assert thread.user_id == "alice"
        assert db.query(Thread).count() == 1


async def test_concurrent_resolution_creates_one_thread(session_factory):
    resolver = ThreadResolver(session_factory)

    ids = await asyncio.gather(*[resolver.resolve("bob") for _ in range(5)])

    assert len(set(ids)) == 1
    with session_factory() as db:
        assert len(ThreadService.get_user_threads(db, "bob")) == 1


async def test_resolution_is_per_user(session_factory):
    resolver = ThreadResolver(session_factory)

    assert await resolver.resolve("alice") != await resolver.resolve("bob")


async def test_explicit_thread_must_belong_to_caller(session_factory):
    resolver = ThreadResolver(session_factory)
    with session_factory() as db:
        owned = ThreadService.create_thread(db, "alice")

    assert await resolver.resolve("alice", owned.id) == owned.id
    with pytest.raises(Forbidden):
        await resolver.resolve("mallory", owned.id)
    with pytest.raises(Forbidden):
        await resolver.resolve("alice", "does-not-exist")


async def test_deleted_thread_is_not_resumed(session_factory):
    resolver = ThreadResolver(session_factory)
    first = await resolver.resolve("alice")
    with session_factory() as db:
        assert ThreadService.delete_thread(db, first, "alice")

    with pytest.raises(Forbidden):
        await resolver.resolve("alice", first)
    assert await resolver.resolve("alice") != first


def test_crud_is_scoped_to_owner(session_factory):
    with session_factory() as db:
        thread = ThreadService.create_thread(db, "alice", ThreadCreate(title="Trip", metadata={"tag": "travel"}))

        assert ThreadService.get_thread(db, thread.id, "bob") is None
        assert ThreadService.update_thread(db, thread.id, "bob", ThreadUpdate(title="Mine")) is None
        assert ThreadService.delete_thread(db, thread.id, "bob") is False

        renamed = ThreadService.update_thread(db, thread.id, "alice", ThreadUpdate(title="Lisbon trip"))
        assert renamed.title == "Lisbon trip"
        assert renamed.thread_metadata == '{"tag": "travel"}'


def test_soft_delete_hides_thread_but_keeps_row(session_factory):
    with session_factory() as db:
        thread = ThreadService.create_thread(db, "alice")
        ThreadService.delete_thread(db, thread.id, "alice")

        assert ThreadService.get_thread(db, thread.id, "alice") is None
        assert ThreadService.get_user_threads(db, "alice") == []
        assert db.get(Thread, thread.id).is_deleted is True


async def test_resolution_runs_database_work_off_the_event_loop(session_factory):
    def slow_factory():
        time.sleep(0.2)
        return session_factory()

    resolver = ThreadResolver(slow_factory)
    ticks = []

    async def ticker():
        while True:
            ticks.append(1)
            await asyncio.sleep(0.01)

    task = asyncio.create_task(ticker())
    try:
        await asyncio.gather(resolver.resolve("alice"), resolver.resolve("bob"))
    finally:
        task.cancel()

    assert len(ticks) >= 10
