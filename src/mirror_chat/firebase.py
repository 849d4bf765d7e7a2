"""Conversation store backed by the Firebase Realtime Database REST API.

Writes go through ``POST {database_url}/{namespace}/{id}.json`` (the server
answers with the generated push id), live views use the REST streaming
protocol (``Accept: text/event-stream``) with ``orderBy="$key"`` and
``limitToLast`` so the server keeps the window at the last N children.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .config import FirebaseSettings
from .messages import (
    InvalidMessage,
    Message,
    messages_from_entries,
    recent_keys,
    validate_conversation_id,
    validate_message,
)
from .store import DEFAULT_NAMESPACE, DEFAULT_RECENT_LIMIT, ConversationStore, StoreUnavailable, Subscription

logger = logging.getLogger(__name__)

TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=10.0, pool=5.0)
# Streams stay open indefinitely; the server sends keep-alive events.
STREAM_TIMEOUT = httpx.Timeout(connect=5.0, read=None, write=10.0, pool=5.0)


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, Any]]:
    """Yield ``(event, data)`` pairs from server-sent-event lines; ``data`` is decoded JSON."""
    event = "message"
    data: List[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                raw = "\n".join(data)
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring undecodable %s event: %r", event, raw[:200])
                else:
                    yield event, payload
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)


def _apply_event(entries: Dict[str, Any], event: str, payload: Any) -> Dict[str, Any]:
    """Fold one ``put``/``patch`` event into the local copy of the conversation."""
    if not isinstance(payload, dict):
        return entries
    path = [p for p in str(payload.get("path", "/")).split("/") if p]
    data = payload.get("data")

    if event == "put":
        if not path:
            return dict(data) if isinstance(data, dict) else {}
        key = path[0]
        if len(path) == 1:
            if data is None:
                entries.pop(key, None)
            else:
                entries[key] = data
        else:
            child = dict(entries.get(key) or {})
            if data is None:
                child.pop(path[1], None)
            else:
                child[path[1]] = data
            entries[key] = child
        return entries

    # patch: merge children at ``path``
    if not isinstance(data, dict):
        return entries
    if not path:
        for key, value in data.items():
            if value is None:
                entries.pop(key, None)
            else:
                entries[key] = value
    else:
        child = dict(entries.get(path[0]) or {})
        child.update(data)
        entries[path[0]] = child
    return entries


class FirebaseConversationStore(ConversationStore):
    """:class:`ConversationStore` talking to a Realtime Database over HTTPS."""

    def __init__(
        self,
        settings: FirebaseSettings,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.namespace = namespace
        self._base = settings.database_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=TIMEOUT)
        self._streams: Dict[Subscription, "asyncio.Task[None]"] = {}

    # --------- helpers ----------
    def _url(self, conversation_id: Optional[str] = None) -> str:
        if conversation_id is None:
            return f"{self._base}/{self.namespace}.json"
        return f"{self._base}/{self.namespace}/{conversation_id}.json"

    def _params(self, **extra: Any) -> Dict[str, Any]:
        params = dict(extra)
        if self.settings.auth_token:
            params["auth"] = self.settings.auth_token
        return params

    def _recent_params(self, limit: int) -> Dict[str, Any]:
        return self._params(orderBy='"$key"', limitToLast=int(limit))

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        if response.status_code < 400:
            return
        detail = response.text[:200]
        if response.status_code == 400:
            raise InvalidMessage(f"{what} rejected: {detail}")
        raise StoreUnavailable(f"{what} failed with HTTP {response.status_code}: {detail}")

    @staticmethod
    def _json_object(response: httpx.Response, what: str) -> Dict[str, Any]:
        """Decoded body as a mapping; JSON `null` is an empty one."""
        try:
            data = response.json()
        except ValueError as e:
            raise StoreUnavailable(f"{what} returned a non-JSON body: {response.text[:200]!r}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StoreUnavailable(f"{what} returned {type(data).__name__}, expected an object")
        return data

    # --------- API ----------
    async def append(self, conversation_id: str, message: Message) -> Message:
        validate_conversation_id(conversation_id)
        validate_message(message)
        try:
            r = await self._client.post(self._url(conversation_id), params=self._params(), json=message.to_entry())
        except httpx.HTTPError as e:
            logger.warning("append to %s/%s failed: %s", self.namespace, conversation_id, e)
            raise StoreUnavailable(f"cannot reach {self._base}: {e}") from e
        self._raise_for_status(r, "append")
        key = self._json_object(r, "append").get("name")
        if not key:
            raise StoreUnavailable(f"append returned no key: {r.text[:200]}")
        logger.debug("Appended %s message %s to %s/%s", message.role.value, key, self.namespace, conversation_id)
        return message.with_id(key)

    async def fetch_recent(self, conversation_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[Message]:
        validate_conversation_id(conversation_id)
        try:
            r = await self._client.get(self._url(conversation_id), params=self._recent_params(limit))
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"cannot reach {self._base}: {e}") from e
        self._raise_for_status(r, "fetch")
        return messages_from_entries(self._json_object(r, "fetch"))

    async def list_conversations(self) -> List[str]:
        try:
            r = await self._client.get(self._url(), params=self._params(shallow="true"))
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"cannot reach {self._base}: {e}") from e
        self._raise_for_status(r, "list")
        return sorted(self._json_object(r, "list"))

    def subscribe_recent(self, conversation_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> Subscription:
        """Open a streaming listener. Must be called from a running event loop."""
        validate_conversation_id(conversation_id)
        sub = Subscription(conversation_id, limit, on_close=self._stop_stream)
        self._streams[sub] = asyncio.get_running_loop().create_task(self._pump(sub))
        return sub

    async def aclose(self) -> None:
        tasks = list(self._streams.values())
        for sub in list(self._streams):
            sub.close()
        # Let the cancelled streams unwind before their client goes away.
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    # --------- streaming ----------
    def _stop_stream(self, sub: Subscription) -> None:
        task = self._streams.pop(sub, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _pump(self, sub: Subscription) -> None:
        entries: Dict[str, Any] = {}
        url = self._url(sub.conversation_id)
        try:
            async with self._client.stream(
                "GET",
                url,
                params=self._recent_params(sub.limit),
                headers={"Accept": "text/event-stream"},
                timeout=STREAM_TIMEOUT,
            ) as r:
                if r.status_code >= 400:
                    await r.aread()
                    self._raise_for_status(r, "subscribe")
                async for event, payload in iter_sse(r.aiter_lines()):
                    if event in ("put", "patch"):
                        entries = _apply_event(entries, event, payload)
                        keys = recent_keys(entries, sub.limit)
                        sub.push(messages_from_entries({k: entries[k] for k in keys}))
                    elif event in ("cancel", "auth_revoked"):
                        raise StoreUnavailable(f"stream {event}: {payload!r}")
            raise StoreUnavailable("stream closed by server")
        except asyncio.CancelledError:
            raise
        except StoreUnavailable as e:
            logger.warning("Subscription to %s/%s ended: %s", self.namespace, sub.conversation_id, e)
            sub.fail(e)
        except (httpx.HTTPError, InvalidMessage) as e:
            logger.warning("Subscription to %s/%s failed: %s", self.namespace, sub.conversation_id, e)
            sub.fail(StoreUnavailable(f"stream failed: {e}"))
