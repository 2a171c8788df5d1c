"""
Relay client: attach to the relay as one identity and exchange messages.

Usage:
    client = RelayClient("ws://localhost:8001", http_url="http://localhost:8000")
    await client.connect("alice", peer="bob")   # replays bob -> alice history
    await client.send("bob", "hi bob")          # live only, over the stream
    await client.submit("bob", "stored hi")     # live + stored, over HTTP
    message = await client.recv(timeout=2.0)
    await client.close()
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode

import aiohttp
import websockets

from chatrelay.types import Identity, Message

logger = logging.getLogger(__name__)


class RelayClient:
    """
    Client for the relay: one stream connection for one identity.

    connect(identity, peer) opens /ws with recipient=identity and
    sender=peer, so the server replays the peer -> identity mailbox first.
    """

    def __init__(self, url: str, *, http_url: Optional[str] = None) -> None:
        self.url = url.rstrip("/")
        self.http_url = http_url.rstrip("/") if http_url else None
        self.identity: Optional[Identity] = None
        self._ws = None

    async def connect(self, identity: Identity, peer: Identity) -> "RelayClient":
        """Open the stream as identity, replaying stored messages from peer."""
        query = urlencode({"sender": peer, "recipient": identity})
        self._ws = await websockets.connect(f"{self.url}/ws?{query}")
        self.identity = identity
        logger.info("RelayClient connected to %s as %s", self.url, identity)
        return self

    async def recv(self, timeout: Optional[float] = None) -> Message:
        """Receive the next message (stored history first, then live)."""
        if self._ws is None:
            raise RuntimeError("RelayClient not connected")
        if timeout is not None:
            raw = await asyncio.wait_for(self._ws.recv(), timeout=timeout)
        else:
            raw = await self._ws.recv()
        return Message.deserialize(raw)

    async def send(self, recipient: Identity, content: str) -> Message:
        """Send a message over the stream. It is delivered live only, not stored."""
        if self._ws is None or self.identity is None:
            raise RuntimeError("RelayClient not connected")
        message = Message.create(self.identity, recipient, content)
        await self._ws.send(message.serialize())
        return message

    async def submit(
        self, recipient: Identity, content: str, *, sender: Optional[Identity] = None
    ) -> dict:
        """POST a message to the HTTP boundary. Raises ClientResponseError on 4xx/5xx."""
        if self.http_url is None:
            raise RuntimeError("RelayClient has no http_url")
        body = {
            "sender": sender or self.identity or "",
            "recipient": recipient,
            "content": content,
        }
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.http_url}/send", json=body) as resp:
                resp.raise_for_status()
                return await resp.json()

    def is_connected(self) -> bool:
        return self._ws is not None

    async def close(self) -> None:
        """Close the stream connection."""
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:  # pylint: disable=broad-exception-caught
                pass
            self._ws = None

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
