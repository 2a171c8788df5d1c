"""
Relay server: WebSocket endpoint for the chat relay.

Clients connect to /ws?sender=<peer>&recipient=<identity>. The connecting
client is `recipient`; `sender` names the peer whose stored messages it
wants replayed. On connect the server marks the recipient online, registers
the connection, flushes the (sender, recipient) mailbox in stored order,
then reads frames and queues each decoded Message for dispatch. On
disconnect it unregisters and marks the recipient offline.

Messages can also be submitted out of band (see submit() and chatrelay.api);
those are queued for live delivery and stored in the mailbox.
"""

import asyncio
import logging
import ssl
from datetime import datetime, timezone
from http import HTTPStatus
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from aiohttp import web
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from chatrelay.api import create_app
from chatrelay.connection import ConnectionRegistry
from chatrelay.dispatcher import Dispatcher
from chatrelay.mailbox import MailboxStore
from chatrelay.presence import PresenceTracker
from chatrelay.store import KeyValueStore, MemoryStore
from chatrelay.types import ConnectionState, DecodeError, Identity, Message

logger = logging.getLogger(__name__)

WS_PATH = "/ws"

# WebSocket close codes
CLOSE_INVALID_DATA = 1007
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


def parse_identities(path: str) -> Tuple[str, str]:
    """Return (sender, recipient) from a request path's query string, verbatim."""
    query = parse_qs(urlsplit(path).query)
    sender = (query.get("sender") or [""])[0]
    recipient = (query.get("recipient") or [""])[0]
    return sender, recipient


def _require(name: str, value) -> str:
    # Values are kept verbatim; only "" counts as missing.
    if not isinstance(value, str) or value == "":
        raise ValueError(f"{name} is required")
    return value


class Session:
    """State of one persistent connection, from handshake to close."""

    def __init__(self, ws: ServerConnection, sender: Identity, recipient: Identity):
        self.ws = ws
        self.sender = sender
        self.recipient = recipient
        self.state = ConnectionState.CONNECTING
        self.history: List[ConnectionState] = [ConnectionState.CONNECTING]

    def transition(self, state: ConnectionState) -> None:
        logger.debug(
            "connection %s<-%s: %s -> %s",
            self.recipient or "?",
            self.sender or "?",
            self.state,
            state,
        )
        self.state = state
        self.history.append(state)


# pylint: disable=too-many-instance-attributes
class Server:
    """
    Chat relay server.

    - Persistent connections are served by a websockets server on `port`.
    - The HTTP boundary (submit, presence, history) is served by aiohttp on
      `http_port`; pass http_port=None to run without it.
    - One Dispatcher task delivers queued messages to connected recipients.
    - Presence and mailboxes are kept in `store` (MemoryStore by default).
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        *,
        http_port: Optional[int] = 0,
        store: Optional[KeyValueStore] = None,
        queue_maxsize: int = 0,
        ping_interval: Optional[float] = 20,
        shutdown_grace: float = 10.0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.http_port = http_port
        self._ssl_context = ssl_context
        self._ping_interval = ping_interval
        self._shutdown_grace = shutdown_grace
        self._store: KeyValueStore = store if store is not None else MemoryStore()
        self._registry = ConnectionRegistry()
        self._presence = PresenceTracker(self._store)
        self._mailbox = MailboxStore(self._store)
        self._dispatcher = Dispatcher(self._registry, maxsize=queue_maxsize)
        self._server = None
        self._http_runner: Optional[web.AppRunner] = None
        self._sessions: set[Session] = set()

    @property
    def registry(self) -> ConnectionRegistry:
        """ConnectionRegistry used by this server (for tests or custom routing)."""
        return self._registry

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    @property
    def mailbox(self) -> MailboxStore:
        return self._mailbox

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def sessions(self) -> set[Session]:
        """Sessions currently past the handshake and not yet closed."""
        return set(self._sessions)

    # ------------------------------------------------------------------
    # Persistent connections
    # ------------------------------------------------------------------

    def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Optional[Response]:
        """Reject bad handshakes before the upgrade, without side effects."""
        if urlsplit(request.path).path != WS_PATH:
            return connection.respond(HTTPStatus.NOT_FOUND, "not found\n")
        sender, recipient = parse_identities(request.path)
        if not sender or not recipient:
            logger.warning("rejecting connection: sender or recipient is empty")
            return connection.respond(
                HTTPStatus.BAD_REQUEST, "sender and recipient are required\n"
            )
        return None

    async def _handle(self, ws: ServerConnection) -> None:
        sender, recipient = parse_identities(ws.request.path if ws.request else "")
        session = Session(ws, sender, recipient)
        try:
            await self._presence.mark_online(recipient)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("connection %s: mark online failed: %s", recipient, e)
            session.transition(ConnectionState.CLOSED)
            await ws.close(CLOSE_INTERNAL_ERROR, "presence unavailable")
            return

        previous = self._registry.register(recipient, ws)
        if previous is not None:
            logger.info("connection %s: replaced an older connection", recipient)
            await self._close_replaced(recipient, previous)
        session.transition(ConnectionState.ONLINE)
        self._sessions.add(session)
        logger.info("connection %s online (history from %s)", recipient, sender)
        try:
            if await self._flush_history(session):
                await self._read_loop(session)
        except ConnectionClosed as e:
            logger.debug("connection %s closed: %s", recipient, e)
        finally:
            session.transition(ConnectionState.DRAINING)
            await self._drain(session)
            self._sessions.discard(session)
            session.transition(ConnectionState.CLOSED)
            logger.info("connection %s closed", recipient)

    async def _flush_history(self, session: Session) -> bool:
        """Send the stored (sender, recipient) mailbox. Returns False on failure."""
        try:
            messages = await self._mailbox.retrieve(session.sender, session.recipient)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning(
                "connection %s: cannot load history from %s: %s",
                session.recipient,
                session.sender,
                e,
            )
            await session.ws.close(CLOSE_INTERNAL_ERROR, "history unavailable")
            return False
        for message in messages:
            await session.ws.send(message.serialize())
        logger.debug(
            "connection %s: flushed %d stored messages", session.recipient, len(messages)
        )
        return True

    async def _read_loop(self, session: Session) -> None:
        """Queue every inbound frame; stop at the first undecodable one."""
        async for raw in session.ws:
            try:
                message = Message.deserialize(
                    raw, default_timestamp=datetime.now(timezone.utc)
                )
            except DecodeError as e:
                logger.warning(
                    "connection %s: invalid message, closing: %s", session.recipient, e
                )
                await session.ws.close(CLOSE_INVALID_DATA, "invalid message")
                return
            await self._dispatcher.enqueue(message)

    async def _drain(self, session: Session) -> None:
        """Unregister and mark offline. Best effort; failures are only logged."""
        recipient = session.recipient
        try:
            self._registry.unregister(recipient, session.ws)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("connection %s: unregister failed: %s", recipient, e)
        if self._registry.lookup(recipient) is not None:
            # A newer connection for this identity is live; it stays online.
            return
        try:
            await self._presence.mark_offline(recipient)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("connection %s: mark offline failed: %s", recipient, e)

    async def _close_replaced(self, recipient: Identity, previous) -> None:
        """Close a connection that a newer one for the same identity replaced."""
        try:
            await previous.close(CLOSE_POLICY_VIOLATION, "replaced by a newer connection")
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.debug("connection %s: closing replaced handle: %s", recipient, e)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(
        self, sender: Identity, recipient: Identity, content: str
    ) -> Message:
        """
        Queue a new message for live delivery and store it in the mailbox.

        Raises ValueError if a field is missing or empty. Storage failures are
        logged and not raised: live delivery is best effort and the caller is
        acknowledged either way.
        """
        message = Message.create(
            sender=_require("sender", sender),
            recipient=_require("recipient", recipient),
            content=_require("content", content),
        )
        await self._dispatcher.enqueue(message)
        try:
            await self._mailbox.append(message)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning(
                "submit: storing message %s -> %s failed: %s", sender, recipient, e
            )
        return message

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> "Server":
        """Start the dispatcher, the WebSocket server and the HTTP boundary."""
        self._dispatcher.start()
        kwargs = {
            "ping_interval": self._ping_interval,
            "ping_timeout": self._ping_interval,
            "process_request": self._process_request,
        }
        if self._ssl_context is not None:
            kwargs["ssl"] = self._ssl_context
        self._server = await serve(self._handle, self.host, self.port, **kwargs)
        # Resolve actual port if port=0
        if self.port == 0 and self._server.sockets:
            self.port = self._server.sockets[0].getsockname()[1]
        logger.info("relay server listening on %s:%s", self.host, self.port)

        if self.http_port is not None:
            self._http_runner = web.AppRunner(
                create_app(self), shutdown_timeout=self._shutdown_grace
            )
            await self._http_runner.setup()
            site = web.TCPSite(
                self._http_runner, self.host, self.http_port, ssl_context=self._ssl_context
            )
            await site.start()
            if self.http_port == 0 and self._http_runner.addresses:
                self.http_port = self._http_runner.addresses[0][1]
            logger.info("relay http listening on %s:%s", self.host, self.http_port)
        return self

    async def run_forever(self) -> None:
        """Run the server until it is closed. Call after start()."""
        if self._server is None:
            raise RuntimeError("Server not started; call start() first")
        await self._server.serve_forever()

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop accepting work, give in-flight requests and connections up to
        `grace` seconds to finish, stop the dispatcher, then close the store.
        """
        grace = self._shutdown_grace if grace is None else grace
        if self._http_runner is not None:
            await self._http_runner.cleanup()
            self._http_runner = None
        if self._server is not None:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("relay server: connections still open after %.1fs", grace)
            self._server = None
        await self._dispatcher.stop()
        await self._store.close()
        logger.info("relay server stopped")
