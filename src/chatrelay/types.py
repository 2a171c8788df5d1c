"""
Types for the chat relay.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional
import json

# ─── Persisted state layout ─────────────────────────────────────────────────
#
#  key                                   value
# +-------------------------------------+----------------------------------+
# | online_users                        | JSON array of identity strings   |
# | user:messages:<sender>:<recipient>  | JSON array of Message objects    |
# +-------------------------------------+----------------------------------+
#
# Mailboxes are directional: A -> B and B -> A are two separate logs.

ONLINE_USERS_KEY = "online_users"

MAILBOX_KEY_PREFIX = "user:messages:"

Identity = str


def mailbox_key(sender: Identity, recipient: Identity) -> str:
    """Storage key for the (sender, recipient) mailbox, in that order."""
    return f"{MAILBOX_KEY_PREFIX}{sender}:{recipient}"


class DecodeError(ValueError):
    """Malformed stored or inbound data."""


class ConnectionState(StrEnum):
    """
    Lifecycle of one persistent connection:
    - CONNECTING: handshake, sender/recipient being checked.
    - ONLINE: marked online, registered, history flushed, reading.
    - DRAINING: unregistering and marking offline.
    - CLOSED: terminal.
    """

    CONNECTING = "connecting"
    ONLINE = "online"
    DRAINING = "draining"
    CLOSED = "closed"


def _parse_timestamp(value) -> datetime:
    if not isinstance(value, str):
        raise DecodeError(f"timestamp must be a string, got {type(value).__name__}")
    try:
        ts = datetime.fromisoformat(value)
    except ValueError as e:
        raise DecodeError(f"invalid timestamp {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Message:
    """
    A chat message. Immutable once created.

    Wire and stored format:
      {"sender": str, "recipient": str, "content": str, "timestamp": ISO-8601}
    """

    sender: Identity
    recipient: Identity
    content: str
    timestamp: datetime

    @classmethod
    def create(cls, sender: Identity, recipient: Identity, content: str) -> "Message":
        """Build a message stamped with the current UTC time."""
        return cls(
            sender=sender,
            recipient=recipient,
            content=content,
            timestamp=datetime.now(timezone.utc),
        )

    def model_dump(self) -> dict:
        """Dump the message for sending over the wire or storing."""
        return {
            "sender": self.sender,
            "recipient": self.recipient,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    def serialize(self) -> str:
        """Serialize the message to a JSON string."""
        return json.dumps(self.model_dump(), ensure_ascii=False)

    @classmethod
    def model_validate(
        cls, data: dict, default_timestamp: Optional[datetime] = None
    ) -> "Message":
        """
        Validate a message from a decoded JSON object.

        sender, recipient and content are required strings. A missing
        timestamp is replaced by default_timestamp when one is given.
        """
        if not isinstance(data, dict):
            raise DecodeError(f"message must be an object, got {type(data).__name__}")
        for field in ("sender", "recipient", "content"):
            if not isinstance(data.get(field), str):
                raise DecodeError(f"message field {field!r} missing or not a string")
        raw_ts = data.get("timestamp")
        if raw_ts is None:
            if default_timestamp is None:
                raise DecodeError("message field 'timestamp' missing")
            timestamp = default_timestamp
        else:
            timestamp = _parse_timestamp(raw_ts)
        return cls(
            sender=data["sender"],
            recipient=data["recipient"],
            content=data["content"],
            timestamp=timestamp,
        )

    @classmethod
    def deserialize(
        cls, raw: str | bytes, default_timestamp: Optional[datetime] = None
    ) -> "Message":
        """Deserialize a message from a JSON string (or UTF-8 bytes)."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"invalid message JSON: {e}") from e
        return cls.model_validate(data, default_timestamp=default_timestamp)


def dump_messages(messages: list[Message]) -> bytes:
    """Encode a mailbox log for storage."""
    return json.dumps([m.model_dump() for m in messages], ensure_ascii=False).encode(
        "utf-8"
    )


def load_messages(raw: bytes) -> list[Message]:
    """Decode a stored mailbox log. Raises DecodeError on malformed data."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"invalid mailbox JSON: {e}") from e
    if not isinstance(data, list):
        raise DecodeError("mailbox must be a JSON array")
    return [Message.model_validate(item) for item in data]
