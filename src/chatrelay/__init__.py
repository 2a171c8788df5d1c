"""
chatrelay - A store-and-forward WebSocket chat relay
"""

__version__ = "0.1.0"

from chatrelay.server import Server
from chatrelay.client import RelayClient
from chatrelay.config import RelayConfig
from chatrelay.store import KeyValueStore, MemoryStore
from chatrelay.types import (
    ConnectionState,
    DecodeError,
    Identity,
    Message,
)

__all__ = [
    "ConnectionState",
    "DecodeError",
    "Identity",
    "KeyValueStore",
    "MemoryStore",
    "Message",
    "RelayClient",
    "RelayConfig",
    "Server",
    "__version__",
]
