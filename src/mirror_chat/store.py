"""Conversation stores: the append + live "last N" boundary the chat needs.

Every store exposes the same surface:
    append(conversation_id, message) -> Message        (async)
    fetch_recent(conversation_id, limit) -> [Message]  (async, unsorted)
    subscribe_recent(conversation_id, limit) -> Subscription
    list_conversations() -> [str]                      (async)
    aclose()                                           (async)

Snapshots are delivered in no particular order; callers sort them for display
(see :func:`mirror_chat.messages.sort_snapshot`).
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .messages import (
    InvalidMessage,
    Message,
    PushIdGenerator,
    StoreError,
    is_conversation_id,
    messages_from_entries,
    recent_keys,
    validate_conversation_id,
    validate_message,
)

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 50
DEFAULT_NAMESPACE = "chats"

__all__ = [
    "DEFAULT_RECENT_LIMIT",
    "ConversationStore",
    "DiskConversationStore",
    "InMemoryConversationStore",
    "InvalidMessage",
    "StoreError",
    "StoreUnavailable",
    "Subscription",
]


class StoreUnavailable(StoreError):
    """The backing service could not be reached (or dropped the stream)."""


# -----------------------------
# Subscription
# -----------------------------
_CLOSED = object()


class Subscription:
    """Cancellable async stream of snapshots for one conversation.

    Each snapshot is the full current list of the most recent ``limit``
    messages, so only the newest undelivered one is kept. ``close()`` is
    terminal: pending snapshots are dropped and iteration stops.
    """

    def __init__(
        self,
        conversation_id: str,
        limit: int,
        *,
        on_close: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.limit = limit
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._on_close = on_close
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._closed

    # --------- producer side ----------
    def push(self, snapshot: List[Message]) -> None:
        if self._closed:
            return
        self._drain_pending()
        self._queue.put_nowait(list(snapshot))

    def fail(self, exc: BaseException) -> None:
        """Deliver ``exc`` after any pending snapshot, then stop."""
        if self._closed:
            return
        self._queue.put_nowait(exc)
        self._release()

    # --------- consumer side ----------
    def close(self) -> None:
        if self._closed:
            return
        self._drain_pending()
        self._queue.put_nowait(_CLOSED)
        self._release()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> List[Message]:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._exhausted = True
            raise item
        return item

    async def get(self, timeout: Optional[float] = None) -> List[Message]:
        """Next snapshot; raises ``StopAsyncIteration`` once closed."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()

    # --------- internals ----------
    def _drain_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def _release(self) -> None:
        self._closed = True
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback(self)


# -----------------------------
# Boundary
# -----------------------------
class ConversationStore(abc.ABC):
    """Append-only ordered log per conversation with live subscriptions."""

    namespace: str = DEFAULT_NAMESPACE

    @abc.abstractmethod
    async def append(self, conversation_id: str, message: Message) -> Message:
        """Record ``message``; return it carrying the store-assigned id."""

    @abc.abstractmethod
    async def fetch_recent(self, conversation_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[Message]:
        """One-shot read of the most recent ``limit`` messages."""

    @abc.abstractmethod
    def subscribe_recent(self, conversation_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> Subscription:
        """Live snapshots of the most recent ``limit`` messages."""

    @abc.abstractmethod
    async def list_conversations(self) -> List[str]:
        """Ids of conversations holding at least one message."""

    async def aclose(self) -> None:
        return None


class _LocalStore(ConversationStore):
    """Shared subscription bookkeeping for stores living in this process."""

    def __init__(self, *, namespace: str = DEFAULT_NAMESPACE, id_factory: Optional[Callable[[], str]] = None) -> None:
        self.namespace = namespace
        self._new_id = id_factory or PushIdGenerator()
        self._subscribers: Dict[str, Set[Subscription]] = {}

    # storage hooks
    @abc.abstractmethod
    def _entries(self, conversation_id: str) -> Dict[str, Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def _put(self, conversation_id: str, key: str, entry: Dict[str, Any]) -> None:
        ...

    async def append(self, conversation_id: str, message: Message) -> Message:
        validate_conversation_id(conversation_id)
        validate_message(message)
        key = self._new_id()
        await self._put(conversation_id, key, message.to_entry())
        logger.debug("Appended %s message %s to %s/%s", message.role.value, key, self.namespace, conversation_id)
        self._notify(conversation_id)
        return message.with_id(key)

    async def fetch_recent(self, conversation_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[Message]:
        validate_conversation_id(conversation_id)
        return self._snapshot(conversation_id, limit)

    def subscribe_recent(self, conversation_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> Subscription:
        validate_conversation_id(conversation_id)
        sub = Subscription(conversation_id, limit, on_close=self._unsubscribe)
        self._subscribers.setdefault(conversation_id, set()).add(sub)
        sub.push(self._snapshot(conversation_id, limit))
        return sub

    async def aclose(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()

    def _snapshot(self, conversation_id: str, limit: int) -> List[Message]:
        entries = self._entries(conversation_id)
        keys = recent_keys(entries, limit)
        return messages_from_entries({k: entries[k] for k in keys})

    def _notify(self, conversation_id: str) -> None:
        for sub in list(self._subscribers.get(conversation_id, ())):
            sub.push(self._snapshot(conversation_id, sub.limit))

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.conversation_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.conversation_id]


# -----------------------------
# In-memory
# -----------------------------
class InMemoryConversationStore(_LocalStore):
    """Process-local store for demos and tests. Nothing survives a restart."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _entries(self, conversation_id: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._data.get(conversation_id, {}))

    async def _put(self, conversation_id: str, key: str, entry: Dict[str, Any]) -> None:
        self._data.setdefault(conversation_id, {})[key] = dict(entry)

    async def list_conversations(self) -> List[str]:
        return sorted(k for k, v in self._data.items() if v)


# -----------------------------
# Disk
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class DiskConversationStore(_LocalStore):
    """JSON-file-per-conversation store (thread-safe, atomic writes).

    Layout:
        data_dir/
          <namespace>/
            <conversation>.json    # {push_id: {"role", "content", "timestamp"}}
    """

    def __init__(self, data_dir: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.root = Path(data_dir) / self.namespace
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, conversation_id: str) -> Path:
        # Valid ids are already file-name safe and map to exactly one file.
        return self.root / f"{validate_conversation_id(conversation_id)}.json"

    def _entries(self, conversation_id: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(conversation_id)
        with self._lock:
            if not path.exists():
                return {}
            try:
                with path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"expected a JSON object, got {type(data).__name__}")
                return data
            except (OSError, ValueError) as e:
                # Corruption fallback: keep a backup and start fresh.
                bad = path.with_suffix(".corrupt.json")
                logger.error("Unreadable conversation file %s (%s); moving it to %s", path, e, bad)
                try:
                    path.replace(bad)
                except OSError as move_err:
                    logger.error("Could not move %s aside: %s", path, move_err)
                return {}

    def _write_entry(self, conversation_id: str, key: str, entry: Dict[str, Any]) -> None:
        path = self._path(conversation_id)
        with self._lock:
            entries = self._entries(conversation_id)
            entries[key] = dict(entry)
            _atomic_write_text(path, json.dumps(entries, ensure_ascii=False, indent=2))

    async def _put(self, conversation_id: str, key: str, entry: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write_entry, conversation_id, key, entry)
        except OSError as e:
            logger.error("Failed to write %s/%s: %s", self.namespace, conversation_id, e)
            raise StoreUnavailable(f"cannot write conversation {conversation_id!r}: {e}") from e

    async def list_conversations(self) -> List[str]:
        return sorted(p.stem for p in self.root.glob("*.json") if is_conversation_id(p.stem))
