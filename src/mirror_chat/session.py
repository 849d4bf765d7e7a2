"""Per-conversation send flow: user message now, mirror reply after a delay."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import AsyncIterator, Callable, List, Optional, Set

from .messages import Message, Role, now_ms, sort_snapshot
from .replies import select_reply
from .store import DEFAULT_RECENT_LIMIT, ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_REPLY_DELAY = 1.2  # seconds of "thinking time"


def new_session_id(rng: Optional[random.Random] = None) -> str:
    """Random ``user_<n>`` id with ``0 <= n < 1_000_000``."""
    return f"user_{(rng or random).randrange(1_000_000)}"


class MirrorChat:
    """One conversation as seen by a client.

    ``send`` appends the user's message and schedules the mirror reply;
    ``watch`` yields display-ordered snapshots. The store, delay and
    responder are all injected, nothing is module-level state.

    ``on_idle`` is called whenever the chat has no send in flight and no
    reply left to store, so an owner can drop it from its registry.
    """

    def __init__(
        self,
        store: ConversationStore,
        conversation_id: str,
        *,
        reply_delay: float = DEFAULT_REPLY_DELAY,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        responder: Callable[[str], str] = select_reply,
        clock: Callable[[], int] = now_ms,
        on_idle: Optional[Callable[[], None]] = None,
    ) -> None:
        self.store = store
        self.conversation_id = conversation_id
        self.reply_delay = reply_delay
        self.recent_limit = recent_limit
        self.responder = responder
        self.clock = clock
        self.on_idle = on_idle
        self._sending = 0
        self._pending: Set["asyncio.Task[Message]"] = set()
        self._failures: List[BaseException] = []

    @property
    def pending_replies(self) -> int:
        return len(self._pending)

    @property
    def idle(self) -> bool:
        return not self._pending and not self._sending

    def _check_idle(self) -> None:
        if self.idle and self.on_idle is not None:
            self.on_idle()

    async def send(self, content: Optional[str], role: Role = Role.USER) -> Optional[Message]:
        """Append ``content``; empty content is a no-op returning ``None``.

        Store failures on the user's own message propagate; nothing is retried.
        """
        text = (content or "").strip()
        if not text:
            logger.debug("Ignoring empty %s message for %s", role.value, self.conversation_id)
            self._check_idle()
            return None

        self._sending += 1
        try:
            stored = await self.store.append(
                self.conversation_id, Message(role=role, content=text, timestamp=self.clock())
            )
            if role is Role.USER:
                self._schedule_reply(self.responder(text))
            return stored
        finally:
            self._sending -= 1
            self._check_idle()

    def _schedule_reply(self, reply: str) -> None:
        task = asyncio.get_running_loop().create_task(self._reply_later(reply))
        self._pending.add(task)
        task.add_done_callback(self._reply_done)

    async def _reply_later(self, reply: str) -> Message:
        await asyncio.sleep(self.reply_delay)
        return await self.store.append(
            self.conversation_id, Message(role=Role.MIRROR, content=reply, timestamp=self.clock())
        )

    def _reply_done(self, task: "asyncio.Task[Message]") -> None:
        self._pending.discard(task)
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.warning("Mirror reply for %s was not stored: %s", self.conversation_id, exc)
                self._failures.append(exc)
        self._check_idle()

    async def drain(self) -> List[Message]:
        """Wait for every scheduled reply and return the stored ones.

        The first failure since the last ``drain`` is re-raised.
        """
        results = await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._failures:
            exc, self._failures = self._failures[0], []
            raise exc
        return [r for r in results if isinstance(r, Message)]

    async def watch(self, limit: Optional[int] = None) -> AsyncIterator[List[Message]]:
        """Snapshots of the last ``limit`` messages, sorted by timestamp.

        Closing the generator (``aclosing``, ``aclose()``) unsubscribes.
        """
        sub = self.store.subscribe_recent(
            self.conversation_id, self.recent_limit if limit is None else limit
        )
        try:
            async for snapshot in sub:
                yield sort_snapshot(snapshot)
        finally:
            sub.close()

    async def aclose(self) -> None:
        """Cancel replies that have not been stored yet."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
