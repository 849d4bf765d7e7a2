"""FastAPI application exposing MirrorChat conversations over HTTP and SSE."""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import ChatSettings, ConfigError, StoreSettings, configure_logging, load_config
from .messages import CONVERSATION_ID_PATTERN, InvalidMessage, Message, Role, sort_snapshot
from .replies import ReplySelector
from .session import MirrorChat, new_session_id
from .store import ConversationStore, DiskConversationStore, InMemoryConversationStore, StoreUnavailable

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class MessageIn(BaseModel):
    content: str = Field(default="", description="Message text; blank text is ignored.")
    role: Role = Field(default=Role.USER)


class MessageOut(BaseModel):
    id: Optional[str] = None
    role: Role
    content: str
    timestamp: int

    @classmethod
    def from_message(cls, message: Message) -> "MessageOut":
        return cls(id=message.id, role=message.role, content=message.content, timestamp=message.timestamp)


class SendResponse(BaseModel):
    message: Optional[MessageOut] = None


class SnapshotResponse(BaseModel):
    conversation_id: str
    messages: List[MessageOut]


class SessionResponse(BaseModel):
    conversation_id: str


# -----------------------------
# Utilities
# -----------------------------
def _make_store(settings: StoreSettings) -> ConversationStore:
    if settings.backend == "disk":
        return DiskConversationStore(settings.data_dir, namespace=settings.namespace)
    if settings.backend == "firebase":
        from .firebase import FirebaseConversationStore

        return FirebaseConversationStore(settings.firebase, namespace=settings.namespace)
    return InMemoryConversationStore(namespace=settings.namespace)


def _make_responder(cfg: Dict[str, Any]) -> ReplySelector:
    try:
        return ReplySelector.from_persona(cfg.get("persona"))
    except ValueError as e:
        raise ConfigError(f"persona: {e}") from e


def _snapshot_event(conversation_id: str, snapshot: List[Message]) -> str:
    body = SnapshotResponse(
        conversation_id=conversation_id,
        messages=[MessageOut.from_message(m) for m in sort_snapshot(snapshot)],
    )
    return f"event: snapshot\ndata: {body.model_dump_json()}\n\n"


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[ConversationStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    chat_settings = ChatSettings.from_config(cfg)
    store_settings = StoreSettings.from_config(cfg) if store is None else None
    store = store or _make_store(store_settings)
    responder = _make_responder(cfg)
    cors_origins = (cfg.get("server") or {}).get("cors_origins", ["*"])

    # Only chats with a send in flight or a reply still pending live here.
    chats: Dict[str, MirrorChat] = {}

    def chat_for(conversation_id: str) -> MirrorChat:
        chat = chats.get(conversation_id)
        if chat is None:
            chat = chats[conversation_id] = MirrorChat(
                store,
                conversation_id,
                reply_delay=chat_settings.reply_delay_seconds,
                recent_limit=chat_settings.recent_limit,
                responder=responder,
            )

            def release() -> None:
                if chats.get(conversation_id) is chat:
                    del chats[conversation_id]

            chat.on_idle = release
        return chat

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        for chat in list(chats.values()):
            await chat.aclose()
        await store.aclose()

    app = FastAPI(title="MirrorChat Server", version=__version__, lifespan=lifespan)
    app.state.store = store
    app.state.chats = chats
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(InvalidMessage)
    async def invalid_message(request: Request, exc: InvalidMessage) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "backend": type(store).__name__,
            "active_conversations": len(chats),
        }

    @app.post("/sessions", response_model=SessionResponse)
    def create_session() -> SessionResponse:
        return SessionResponse(conversation_id=new_session_id())

    @app.get("/chats")
    async def list_chats() -> Dict[str, List[str]]:
        return {"conversations": await store.list_conversations()}

    @app.post("/chats/{conversation_id}/messages", response_model=SendResponse)
    async def send_message(
        body: MessageIn,
        conversation_id: str = Path(..., pattern=CONVERSATION_ID_PATTERN),
    ) -> SendResponse:
        stored = await chat_for(conversation_id).send(body.content, role=body.role)
        return SendResponse(message=MessageOut.from_message(stored) if stored else None)

    @app.get("/chats/{conversation_id}/messages", response_model=SnapshotResponse)
    async def recent_messages(
        conversation_id: str = Path(..., pattern=CONVERSATION_ID_PATTERN),
        limit: Optional[int] = Query(default=None, ge=1, le=1000),
    ) -> SnapshotResponse:
        messages = await store.fetch_recent(conversation_id, limit or chat_settings.recent_limit)
        return SnapshotResponse(
            conversation_id=conversation_id,
            messages=[MessageOut.from_message(m) for m in sort_snapshot(messages)],
        )

    @app.get("/chats/{conversation_id}/stream")
    async def stream_messages(
        request: Request,
        conversation_id: str = Path(..., pattern=CONVERSATION_ID_PATTERN),
        limit: Optional[int] = Query(default=None, ge=1, le=1000),
    ) -> StreamingResponse:
        sub = store.subscribe_recent(conversation_id, limit or chat_settings.recent_limit)

        async def events() -> AsyncIterator[str]:
            try:
                async for snapshot in sub:
                    if await request.is_disconnected():
                        break
                    yield _snapshot_event(conversation_id, snapshot)
            except StoreUnavailable as e:
                yield f"event: error\ndata: {json.dumps({'detail': str(e)})}\n\n"
            finally:
                sub.close()

        return StreamingResponse(events(), media_type="text/event-stream")

    return app
