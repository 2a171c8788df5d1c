"""
Mailbox store: durable, ordered message history per (sender, recipient).

Each directional pair has one append-only JSON array. Appends read the whole
log, add the message at the end, and write it back; like presence, two
appends racing on the same pair can lose one of them.
"""

import logging
from typing import List

from chatrelay.store import KeyValueStore
from chatrelay.types import (
    Identity,
    Message,
    dump_messages,
    load_messages,
    mailbox_key,
)

logger = logging.getLogger(__name__)


class MailboxStore:
    """Append/retrieve mailbox logs on top of a KeyValueStore."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def append(self, message: Message) -> None:
        """Append message to the log for (message.sender, message.recipient)."""
        key = mailbox_key(message.sender, message.recipient)
        messages = await self._load(key)
        messages.append(message)
        await self._store.set(key, dump_messages(messages))
        logger.debug("mailbox: appended to %s (%d messages)", key, len(messages))

    async def retrieve(self, sender: Identity, recipient: Identity) -> List[Message]:
        """
        Return the log for exactly (sender, recipient), oldest first.
        An unknown pair yields an empty list.
        """
        return await self._load(mailbox_key(sender, recipient))

    async def _load(self, key: str) -> List[Message]:
        raw = await self._store.get(key)
        if raw is None:
            return []
        return load_messages(raw)
