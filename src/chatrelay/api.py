"""
HTTP boundary for the chat relay (aiohttp).

Routes:
  POST /send                              {sender, recipient, content} -> {"status": "ok"}
  GET  /online                            -> {"users": [...]}
  GET  /messages?sender=<id>&recipient=<id> -> {"messages": [...]}

Only validation problems are reported to the caller (400). A submitted
message is acknowledged whether or not it was delivered live or stored.
"""

import json
import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from chatrelay.server import Server

logger = logging.getLogger(__name__)


def _bad_request(error: str) -> web.Response:
    return web.json_response({"error": error}, status=400)


class RelayAPI:
    """Request handlers bound to one relay Server."""

    def __init__(self, relay: "Server") -> None:
        self._relay = relay

    async def send(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("send: invalid JSON body: %s", e)
            return _bad_request("request body must be JSON")
        if not isinstance(data, dict):
            return _bad_request("request body must be a JSON object")
        try:
            await self._relay.submit(
                data.get("sender"), data.get("recipient"), data.get("content")
            )
        except ValueError as e:
            logger.warning("send: rejected: %s", e)
            return _bad_request(str(e))
        return web.json_response({"status": "ok"})

    async def online(self, _request: web.Request) -> web.Response:
        users = await self._relay.presence.list_online()
        return web.json_response({"users": users})

    async def messages(self, request: web.Request) -> web.Response:
        sender = request.query.get("sender", "")
        recipient = request.query.get("recipient", "")
        if not sender or not recipient:
            return _bad_request("sender and recipient are required")
        stored = await self._relay.mailbox.retrieve(sender, recipient)
        return web.json_response({"messages": [m.model_dump() for m in stored]})


def create_app(relay: "Server") -> web.Application:
    """Build the aiohttp application for relay."""
    api = RelayAPI(relay)
    app = web.Application()
    app.router.add_post("/send", api.send)
    app.router.add_get("/online", api.online)
    app.router.add_get("/messages", api.messages)
    return app
