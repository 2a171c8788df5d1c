"""
Key-value store used for presence and mailboxes.

The relay only needs get/set on byte strings keyed by string, with a
distinguishable "not found" outcome (get returns None). Each call is
atomic on its own; read-modify-write sequences built from two calls are not.
"""

import logging
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol for relay persistence (e.g. PostgreSQL)."""

    async def get(self, key: str) -> Optional[bytes]:
        """Return the value stored under key, or None if the key is absent."""

    async def set(self, key: str, value: bytes) -> None:
        """Store value under key, replacing any previous value. Raises on failure."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemoryStore:
    """
    In-process store backed by a dict. Data is lost when the process exits.
    """

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._closed = False

    async def get(self, key: str) -> Optional[bytes]:
        """Return the value for key, or None."""
        self._check_open()
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        """Store value under key."""
        self._check_open()
        self._data[key] = bytes(value)

    async def close(self) -> None:
        """Mark the store closed; later calls raise RuntimeError."""
        self._closed = True
        logger.debug("memory store closed (%d keys)", len(self._data))

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("store is closed")

    def __len__(self) -> int:
        return len(self._data)
