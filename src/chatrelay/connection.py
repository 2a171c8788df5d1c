"""
Connection layer for the chat relay.

Provides ConnectionRegistry (server-side): maps each recipient identity to
the one live connection currently attached for it. It is the only shared
mutable state in the relay that is guarded by a lock.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from chatrelay.types import Identity

logger = logging.getLogger(__name__)

# Generic connection handle: anything with async send(str) and async close().
Handle = Any


class ConnectionRegistry:
    """
    Server-side registry: identity -> live handle.

    One handle per identity; registering again replaces the previous handle
    (last writer wins) without closing it. Every operation runs inside one
    process-wide critical section.
    """

    def __init__(self) -> None:
        self._connections: Dict[Identity, Handle] = {}
        self._lock = threading.Lock()

    def register(self, identity: Identity, handle: Handle) -> Optional[Handle]:
        """Map identity to handle. Returns the handle it replaced, if any."""
        with self._lock:
            previous = self._connections.get(identity)
            self._connections[identity] = handle
        if previous is not None and previous is not handle:
            logger.debug("registry: %s replaced an existing handle", identity)
            return previous
        return None

    def unregister(self, identity: Identity, handle: Optional[Handle] = None) -> bool:
        """
        Remove the entry for identity. Idempotent.

        If handle is given, the entry is removed only while it still maps to
        that handle. Returns True if an entry was removed.
        """
        with self._lock:
            current = self._connections.get(identity)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            del self._connections[identity]
        return True

    def lookup(self, identity: Identity) -> Optional[Handle]:
        """Return the handle registered for identity, or None."""
        with self._lock:
            return self._connections.get(identity)

    def identities(self) -> List[Identity]:
        """Snapshot of the registered identities."""
        with self._lock:
            return list(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
