import asyncio

import pytest

from tutorbot.db import Database
from tutorbot.feed import MAX_HANDLER_ATTEMPTS, MessageFeed


def _db(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    return db


@pytest.mark.asyncio
async def test_poll_once_hands_over_each_message_once(tmp_path):
    db = _db(tmp_path)
    db.add_message("conv-1", "student", "first")
    db.add_message("conv-1", "student", "second")
    db.add_message("conv-1", "assistant", "a reply", role="assistant")
    seen = []

    async def handler(message):
        seen.append(message.text)

    feed = MessageFeed(db, handler)

    assert await feed.poll_once() == 2
    assert await feed.poll_once() == 0
    assert seen == ["first", "second"]


@pytest.mark.asyncio
async def test_failing_message_is_retried_then_dropped(tmp_path):
    db = _db(tmp_path)
    db.add_message("conv-1", "student", "poison")
    calls = []

    async def handler(message):
        calls.append(message.id)
        raise RuntimeError("handler crashed")

    feed = MessageFeed(db, handler)

    for _ in range(MAX_HANDLER_ATTEMPTS):
        assert await feed.poll_once() == 1
    assert await feed.poll_once() == 0
    assert len(calls) == MAX_HANDLER_ATTEMPTS


@pytest.mark.asyncio
async def test_run_forever_stops(tmp_path):
    db = _db(tmp_path)
    seen = []

    async def handler(message):
        seen.append(message.text)
        feed.stop()

    feed = MessageFeed(db, handler, poll_interval_seconds=0.01)
    db.add_message("conv-1", "student", "hello")

    await asyncio.wait_for(feed.run_forever(), timeout=1)

    assert seen == ["hello"]
