"""Message model shared by the stores, the send flow and the HTTP layer."""
from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "user"
    MIRROR = "mirror"


class StoreError(Exception):
    """Base class for conversation store failures."""


class InvalidMessage(StoreError, ValueError):
    """Raised when a message (or its conversation id) cannot be stored."""


# Lowercase letters, digits, "_", "-" and "@" only: valid as a realtime-database
# key and as a file name on any filesystem, so distinct ids never share storage.
CONVERSATION_ID_PATTERN = r"^[a-z0-9_@-]{1,128}$"
_CONVERSATION_ID_RE = re.compile(CONVERSATION_ID_PATTERN)


def now_ms() -> int:
    """Milliseconds since the epoch, like ``Date.now()``."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """One utterance in a conversation. Immutable once created."""

    role: Role
    content: str
    timestamp: int
    id: Optional[str] = None

    def to_entry(self) -> Dict[str, Any]:
        """Wire/storage shape (the id is the entry key, not a field)."""
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}

    def with_id(self, message_id: str) -> "Message":
        return replace(self, id=message_id)

    @classmethod
    def from_entry(cls, key: Optional[str], entry: Mapping[str, Any]) -> "Message":
        if not isinstance(entry, Mapping):
            raise InvalidMessage(f"entry {key!r} is not a mapping")
        try:
            role = Role(entry.get("role"))
        except ValueError:
            raise InvalidMessage(f"entry {key!r} has unknown role {entry.get('role')!r}") from None
        msg = cls(role=role, content=entry.get("content"), timestamp=entry.get("timestamp"), id=key)
        validate_message(msg)
        return msg


def is_conversation_id(value: Any) -> bool:
    return isinstance(value, str) and _CONVERSATION_ID_RE.fullmatch(value) is not None


def validate_conversation_id(conversation_id: str) -> str:
    if not is_conversation_id(conversation_id):
        raise InvalidMessage(f"invalid conversation id: {conversation_id!r}")
    return conversation_id


def validate_message(message: Message) -> Message:
    """Check required fields; raise :class:`InvalidMessage` on the first problem."""
    if not isinstance(message.role, Role):
        raise InvalidMessage(f"unknown role: {message.role!r}")
    if not isinstance(message.content, str) or not message.content.strip():
        raise InvalidMessage("message content must be a non-empty string")
    # bool is an int subclass; reject it explicitly
    if isinstance(message.timestamp, bool) or not isinstance(message.timestamp, int):
        raise InvalidMessage(f"timestamp must be integer milliseconds, got {message.timestamp!r}")
    return message


def messages_from_entries(entries: Optional[Mapping[str, Any]]) -> List[Message]:
    """Decode a ``{key: entry}`` mapping, skipping entries that do not validate."""
    out: List[Message] = []
    for key, entry in (entries or {}).items():
        try:
            out.append(Message.from_entry(key, entry))
        except InvalidMessage as e:
            logger.warning("Skipping malformed entry: %s", e)
    return out


def sort_snapshot(messages: Iterable[Message]) -> List[Message]:
    """Display order: stable sort by timestamp."""
    return sorted(messages, key=lambda m: m.timestamp)


def recent_keys(keys: Iterable[str], limit: int) -> List[str]:
    """The ``limit`` greatest keys in key order (``limitToLast`` semantics)."""
    if limit <= 0:
        return []
    return sorted(keys)[-limit:]


# -----------------------------
# Push ids
# -----------------------------
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushIdGenerator:
    """Chronologically sortable 20-character ids in the realtime-database style.

    8 characters encode the millisecond timestamp, 12 are random. Within one
    generator ids strictly increase: a repeated (or earlier) timestamp reuses
    the last one and increments the random part instead.
    """

    def __init__(self, *, clock: Callable[[], int] = now_ms, rng: Optional[random.Random] = None) -> None:
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self._last_ts = -1
        self._last_rand: List[int] = [0] * 12

    def __call__(self) -> str:
        ts = self._clock()
        if ts <= self._last_ts:
            ts = self._last_ts
            self._increment()
        else:
            self._last_ts = ts
            self._last_rand = [self._rng.randrange(64) for _ in range(12)]

        time_chars = []
        for _ in range(8):
            time_chars.append(PUSH_CHARS[ts % 64])
            ts //= 64
        return "".join(reversed(time_chars)) + "".join(PUSH_CHARS[i] for i in self._last_rand)

    def _increment(self) -> None:
        i = len(self._last_rand) - 1
        while i >= 0 and self._last_rand[i] == 63:
            self._last_rand[i] = 0
            i -= 1
        if i >= 0:
            self._last_rand[i] += 1
