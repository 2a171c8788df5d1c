"""
Presence tracker: which identities currently hold a connection.

The whole set lives as one JSON array under ONLINE_USERS_KEY. Every
transition reads the array, edits it, and writes it back. There is no
version check, so two transitions racing on the key can lose one update
(last write wins). Presence is informational; callers must not rely on it
being exact under concurrent load.
"""

import json
import logging
from typing import List

from chatrelay.store import KeyValueStore
from chatrelay.types import ONLINE_USERS_KEY, DecodeError, Identity

logger = logging.getLogger(__name__)


def _decode(raw: bytes) -> List[Identity]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"invalid presence JSON: {e}") from e
    if not isinstance(data, list) or not all(isinstance(u, str) for u in data):
        raise DecodeError("presence must be a JSON array of strings")
    return data


def _encode(users: List[Identity]) -> bytes:
    return json.dumps(users, ensure_ascii=False).encode("utf-8")


class PresenceTracker:
    """Online/offline bookkeeping on top of a KeyValueStore."""

    def __init__(self, store: KeyValueStore, *, key: str = ONLINE_USERS_KEY) -> None:
        self._store = store
        self._key = key

    async def _load(self) -> List[Identity]:
        raw = await self._store.get(self._key)
        if raw is None:
            return []
        return _decode(raw)

    async def mark_online(self, identity: Identity) -> None:
        """Add identity to the online set (no-op if already present)."""
        users = await self._load()
        if identity not in users:
            users.append(identity)
        await self._store.set(self._key, _encode(users))
        logger.debug("presence: %s online (%d online)", identity, len(users))

    async def mark_offline(self, identity: Identity) -> None:
        """Remove one occurrence of identity from the online set, if present."""
        users = await self._load()
        if identity in users:
            users.remove(identity)
        await self._store.set(self._key, _encode(users))
        logger.debug("presence: %s offline (%d online)", identity, len(users))

    async def list_online(self) -> List[Identity]:
        """Return the online identities in the order they came online."""
        return await self._load()

    async def is_online(self, identity: Identity) -> bool:
        return identity in await self._load()
