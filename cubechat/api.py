"""
HTTP surface of the chat service.

Routes:
    GET  /                                   health
    GET  /api/token?externalId=              embed session token
    GET  /api/conversations?userId=          conversation list
    GET  /api/conversations/{id}/messages    persisted messages (404 if not owned)
    POST /api/chat                           NDJSON stream of one turn
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from . import __version__
from ._exceptions import ConfigurationError, CubeChatError, NotFoundError
from .auth import SessionTokenProvider, TokenProvider
from .config import CubeConfig
from .protocol import CONTENT_TYPE
from .reemitter import ChatService
from .store import ConversationStore, get_store
from .upstream import CubeClient

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class ChatRequest(BaseModel):
    """Body of POST /api/chat."""

    content: str | None = None
    userId: str | None = None
    conversationId: str | None = None


def _status_for(exc: CubeChatError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConfigurationError):
        return 500
    # Everything else originates upstream
    return 502


def create_app(
    service: ChatService | None = None,
    store: ConversationStore | None = None,
    tokens: TokenProvider | None = None,
    config: CubeConfig | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Collaborators are created lazily from the environment on first use, so
    the app starts (and serves history) even when the Cube API is not
    configured.
    """
    app = FastAPI(title="cubechat", version=__version__)
    state: dict[str, object] = {}

    def _config() -> CubeConfig:
        if "config" not in state:
            state["config"] = config or CubeConfig.from_env()
        return state["config"]  # type: ignore[return-value]

    def _store() -> ConversationStore:
        if service is not None:
            return service.store
        return store or get_store(_config().database_url)

    def _service() -> ChatService:
        if service is not None:
            return service
        if "service" not in state:
            state["service"] = ChatService(CubeClient(_config()), _store())
        return state["service"]  # type: ignore[return-value]

    def _tokens() -> TokenProvider:
        if tokens is not None:
            return tokens
        if "tokens" not in state:
            state["tokens"] = SessionTokenProvider.from_config(_config())
        return state["tokens"]  # type: ignore[return-value]

    @app.exception_handler(CubeChatError)
    async def cubechat_error_handler(request: Request, exc: CubeChatError) -> JSONResponse:
        status = _status_for(exc)
        logger.error("%s %s failed (%d): %s", request.method, request.url.path, status, exc)
        return JSONResponse(status_code=status, content={"error": exc.message})

    @app.get("/")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/token")
    def token(externalId: str = Query(ANONYMOUS)) -> dict:
        return {"token": _tokens().get_token(externalId or ANONYMOUS)}

    @app.get("/api/conversations")
    def conversations(userId: str = Query(ANONYMOUS)) -> list[dict]:
        return [c.to_dict() for c in _store().list_conversations(userId or ANONYMOUS)]

    @app.get("/api/conversations/{conversation_id}/messages")
    def messages(conversation_id: str, userId: str = Query(ANONYMOUS)):
        rows = _store().list_messages(conversation_id, userId or ANONYMOUS)
        if rows is None:
            return JSONResponse(status_code=404, content={"error": "Not found"})
        return [m.to_dict() for m in rows]

    @app.post("/api/chat")
    def chat(payload: ChatRequest):
        if not payload.content:
            return JSONResponse(status_code=400, content={"error": "content required"})

        # Opened before the response starts so upstream failures become a JSON error
        turn = _service().start_turn(
            user_id=payload.userId or ANONYMOUS,
            content=payload.content,
            conversation_id=payload.conversationId,
        )
        return StreamingResponse(
            iter(turn),
            media_type=CONTENT_TYPE,
            headers=_STREAM_HEADERS,
            background=BackgroundTask(turn.close),
        )

    return app
