"""Tests for chatrelay.dispatcher (Dispatcher)."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatrelay.connection import ConnectionRegistry
from chatrelay.dispatcher import Dispatcher
from chatrelay.types import Message

# pylint: disable=protected-access


@pytest.mark.asyncio
async def test_dispatch_to_registered_recipient_writes_once():
    """A registered recipient gets exactly one write with the message."""
    reg = ConnectionRegistry()
    ws = AsyncMock()
    reg.register("alice", ws)
    dispatcher = Dispatcher(reg)
    m = Message.create("bob", "alice", "hi")
    assert await dispatcher.dispatch_one(m) is True
    ws.send.assert_awaited_once_with(m.serialize())


@pytest.mark.asyncio
async def test_dispatch_to_absent_recipient_drops():
    """No registration: no write on any handle, message dropped."""
    reg = ConnectionRegistry()
    other = AsyncMock()
    reg.register("carol", other)
    dispatcher = Dispatcher(reg)
    assert await dispatcher.dispatch_one(Message.create("bob", "alice", "hi")) is False
    other.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_dispatch_write_failure_evicts_connection():
    """A failed write closes the handle and unregisters it; no retry."""
    reg = ConnectionRegistry()
    ws = AsyncMock()
    ws.send.side_effect = ConnectionError("broken pipe")
    reg.register("alice", ws)
    dispatcher = Dispatcher(reg)
    assert await dispatcher.dispatch_one(Message.create("bob", "alice", "hi")) is False
    assert ws.send.await_count == 1
    ws.close.assert_awaited_once()
    assert reg.lookup("alice") is None


@pytest.mark.asyncio
async def test_dispatch_write_failure_close_error_is_contained():
    reg = ConnectionRegistry()
    ws = AsyncMock()
    ws.send.side_effect = ConnectionError("gone")
    ws.close.side_effect = RuntimeError("already closed")
    reg.register("alice", ws)
    dispatcher = Dispatcher(reg)
    assert await dispatcher.dispatch_one(Message.create("bob", "alice", "hi")) is False
    assert reg.lookup("alice") is None


@pytest.mark.asyncio
async def test_dispatch_failure_keeps_newer_registration():
    """If the identity re-registered meanwhile, only the dead handle is evicted."""
    reg = ConnectionRegistry()
    old, new = AsyncMock(), AsyncMock()
    reg.register("alice", old)

    async def fail_and_reconnect(_frame):
        reg.register("alice", new)
        raise ConnectionError("gone")

    old.send.side_effect = fail_and_reconnect
    dispatcher = Dispatcher(reg)
    await dispatcher.dispatch_one(Message.create("bob", "alice", "hi"))
    assert reg.lookup("alice") is new


@pytest.mark.asyncio
async def test_run_delivers_in_fifo_order():
    reg = ConnectionRegistry()
    ws = AsyncMock()
    reg.register("alice", ws)
    dispatcher = Dispatcher(reg).start()
    messages = [Message.create("bob", "alice", f"m{i}") for i in range(5)]
    for m in messages:
        await dispatcher.enqueue(m)
    await asyncio.wait_for(dispatcher.queue.join(), timeout=2.0)
    await dispatcher.stop()
    assert [c.args[0] for c in ws.send.await_args_list] == [
        m.serialize() for m in messages
    ]
    assert dispatcher.is_running() is False


@pytest.mark.asyncio
async def test_run_survives_failed_delivery():
    """One dead connection does not stop the consumer."""
    reg = ConnectionRegistry()
    dead, alive = AsyncMock(), AsyncMock()
    dead.send.side_effect = OSError("reset")
    reg.register("dead", dead)
    reg.register("alive", alive)
    dispatcher = Dispatcher(reg).start()
    await dispatcher.enqueue(Message.create("x", "dead", "1"))
    await dispatcher.enqueue(Message.create("x", "alive", "2"))
    await asyncio.wait_for(dispatcher.queue.join(), timeout=2.0)
    assert dispatcher.is_running() is True
    await dispatcher.stop()
    alive.send.assert_awaited_once()
    assert reg.lookup("dead") is None


@pytest.mark.asyncio
async def test_bounded_queue_blocks_producer_until_drained():
    """With maxsize, enqueue waits for space instead of dropping."""
    dispatcher = Dispatcher(ConnectionRegistry(), maxsize=1)
    await dispatcher.enqueue(Message.create("a", "b", "1"))
    blocked = asyncio.create_task(dispatcher.enqueue(Message.create("a", "b", "2")))
    await asyncio.sleep(0.05)
    assert not blocked.done()
    dispatcher.start()
    await asyncio.wait_for(blocked, timeout=2.0)
    await asyncio.wait_for(dispatcher.queue.join(), timeout=2.0)
    await dispatcher.stop()
