"""Integration tests"""

import asyncio

import aiohttp
import pytest

from chatrelay.client import RelayClient
from chatrelay.server import Server
from chatrelay.types import Message

# pylint: disable=missing-function-docstring

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _start() -> Server:
    return await Server(host="127.0.0.1", port=0, http_port=0).start()


def _urls(server: Server) -> tuple[str, str]:
    return f"ws://127.0.0.1:{server.port}", f"http://127.0.0.1:{server.http_port}"


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_live_delivery_and_storage():
    """A is connected; B submits to A; A gets the frame and (B, A) stores it."""
    server = await _start()
    ws_url, http_url = _urls(server)
    try:
        async with RelayClient(ws_url, http_url=http_url) as a:
            await a.connect("A", peer="B")
            await _wait_until(lambda: server.registry.lookup("A") is not None)
            with pytest.raises(asyncio.TimeoutError):
                await a.recv(timeout=0.1)  # no stored history

            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{http_url}/send",
                    json={"sender": "B", "recipient": "A", "content": "hi"},
                ) as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"status": "ok"}

            got = await a.recv(timeout=2.0)
            assert (got.sender, got.recipient, got.content) == ("B", "A", "hi")
            assert await server.mailbox.retrieve("B", "A") == [got]
    finally:
        await server.stop(grace=1.0)


@pytest.mark.asyncio
async def test_offline_recipient_gets_history_on_connect():
    """C is offline when D submits; C later connects with sender=D and gets it."""
    server = await _start()
    ws_url, http_url = _urls(server)
    try:
        async with RelayClient(ws_url, http_url=http_url) as d:
            assert await d.submit("C", "are you there?", sender="D") == {"status": "ok"}

        async with RelayClient(ws_url) as c:
            await c.connect("C", peer="D")
            got = await c.recv(timeout=2.0)
            assert (got.sender, got.recipient, got.content) == ("D", "C", "are you there?")
            await _wait_until(lambda: server.registry.lookup("C") is not None)

            # Live stream continues after the replay.
            m = await server.submit("D", "C", "now live")
            assert await c.recv(timeout=2.0) == m
    finally:
        await server.stop(grace=1.0)


@pytest.mark.asyncio
async def test_send_rejects_invalid_requests():
    server = await _start()
    _, http_url = _urls(server)
    try:
        async with aiohttp.ClientSession() as session:
            for body in (
                {"sender": "B", "recipient": "A"},
                {"sender": "B", "recipient": "", "content": "x"},
                ["not", "an", "object"],
            ):
                async with session.post(f"{http_url}/send", json=body) as resp:
                    assert resp.status == 400
                    assert "error" in await resp.json()
            async with session.post(f"{http_url}/send", data=b"{oops") as resp:
                assert resp.status == 400
        assert server.dispatcher.queue.empty()
        assert await server.mailbox.retrieve("B", "A") == []
    finally:
        await server.stop(grace=1.0)


@pytest.mark.asyncio
async def test_online_and_messages_endpoints():
    server = await _start()
    ws_url, http_url = _urls(server)
    try:
        async with RelayClient(ws_url, http_url=http_url) as alice:
            await alice.connect("alice", peer="bob")
            await _wait_until(lambda: server.registry.lookup("alice") is not None)
            await alice.submit("bob", "hello bob")

            async with aiohttp.ClientSession() as session:
                async with session.get(f"{http_url}/online") as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"users": ["alice"]}
                async with session.get(
                    f"{http_url}/messages", params={"sender": "alice", "recipient": "bob"}
                ) as resp:
                    data = await resp.json()
                    assert [m["content"] for m in data["messages"]] == ["hello bob"]
                    assert Message.model_validate(data["messages"][0]).sender == "alice"
                async with session.get(
                    f"{http_url}/messages", params={"sender": "alice"}
                ) as resp:
                    assert resp.status == 400

        await _wait_until(lambda: not server.sessions)
        assert await server.presence.list_online() == []
    finally:
        await server.stop(grace=1.0)


@pytest.mark.asyncio
async def test_client_stream_send_between_two_clients():
    server = await _start()
    ws_url, _ = _urls(server)
    try:
        async with RelayClient(ws_url) as alice, RelayClient(ws_url) as bob:
            await alice.connect("alice", peer="bob")
            await bob.connect("bob", peer="alice")
            await _wait_until(lambda: len(server.registry) == 2)
            sent = await alice.send("bob", "ping")
            assert await bob.recv(timeout=2.0) == sent
            sent = await bob.send("alice", "pong")
            assert await alice.recv(timeout=2.0) == sent
    finally:
        await server.stop(grace=1.0)


@pytest.mark.asyncio
async def test_stop_tears_down_open_connections():
    """Shutdown closes live connections and marks them offline before the store closes."""
    server = await _start()
    ws_url, _ = _urls(server)
    client = RelayClient(ws_url)
    await client.connect("alice", peer="bob")
    await _wait_until(lambda: server.registry.lookup("alice") is not None)
    store = server._store  # pylint: disable=protected-access
    await server.stop(grace=2.0)
    assert len(server.registry) == 0
    assert store._data["online_users"] == b"[]"  # pylint: disable=protected-access
    await client.close()


@pytest.mark.asyncio
async def test_send_accepts_whitespace_only_content():
    server = await _start()
    _, http_url = _urls(server)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{http_url}/send",
                json={"sender": "B", "recipient": "A", "content": "   "},
            ) as resp:
                assert resp.status == 200
        (stored,) = await server.mailbox.retrieve("B", "A")
        assert stored.content == "   "
    finally:
        await server.stop(grace=1.0)
