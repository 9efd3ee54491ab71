# companion_relay/api/server.py
"""
FastAPI server for the companion relay:

- /ws                                : live connection; bind to a conversation, send + receive messages
- /api/conversations                 : create a conversation
- /api/conversations/{id}            : read a conversation
- /api/conversations/{id}/messages   : ordered history (polling fallback for clients)
- /api/messages                      : submit a message over HTTP (same relay path as /ws)
- /api/analyze                       : feedback coach score for a draft message
- /health                            : basic health check

Every response body uses the envelope {"success": bool, "data"?, "error"?}.
Client-visible errors are short and generic; details stay in the log,
tagged with a per-request id.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, constr

from companion_relay.clients.openai_client import ResponseGenerator
from companion_relay.config.settings import Settings, load_settings
from companion_relay.core.errors import (
    ConversationNotFoundError,
    InvalidMessageError,
    RelayError,
    StoreError,
)
from companion_relay.core.registry import ConnectionRegistry
from companion_relay.core.relay import CounterpartGenerator, RelayEngine
from companion_relay.core.session import ClientSession
from companion_relay.memory.repository import ConversationStore
from companion_relay.utils.logging import get_logger

logger = get_logger(__name__)

# Trailing messages handed to the coach as context for /api/analyze
ANALYZE_HISTORY_LIMIT = 20


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConversationCreateRequest(_CamelModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=200) = Field(
        ..., description="Display name for the conversation."
    )
    is_ai_companion: bool = Field(
        default=True,
        alias="isAiCompanion",
        description="Counterpart replies are stored with role 'companion' when true, 'assistant' otherwise.",
    )


class MessageCreateRequest(_CamelModel):
    conversation_id: int = Field(..., alias="conversationId", gt=0)
    content: str = Field(..., description="User message in plain text.")


class AnalyzeRequest(_CamelModel):
    message: constr(min_length=1) = Field(..., description="Draft message to score.")
    conversation_id: Optional[int] = Field(default=None, alias="conversationId", gt=0)
    subject_attributes: Optional[Dict[str, Any]] = Field(
        default=None,
        alias="subjectAttributes",
        description="Optional facts about the sender (e.g. age group) passed to the coach.",
    )


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def _fail(error: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ConversationStore] = None,
    generator: Optional[CounterpartGenerator] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> FastAPI:
    """
    Build the relay application. Collaborators default to the production
    ones derived from `settings`; tests pass their own.
    """
    settings = settings or load_settings()
    store = store or ConversationStore(settings.db_path)
    store.initialize()
    generator = generator or ResponseGenerator(settings)
    registry = registry or ConnectionRegistry(send_timeout_seconds=settings.send_timeout_seconds)
    relay = RelayEngine(
        store=store,
        generator=generator,
        registry=registry,
        history_window=settings.history_window,
        generator_timeout_seconds=settings.generator_timeout_seconds,
    )

    app = FastAPI(
        title="Companion Relay API",
        description="Real-time chat relay between users and an AI companion.",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.store = store
    app.state.generator = generator
    app.state.registry = registry
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origin.split(",") if o.strip()],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("[http] %s %s validation error: %s", request.method, request.url.path, exc.errors())
        return _fail("Invalid request", 400)

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    @app.post("/api/conversations")
    def create_conversation(req: ConversationCreateRequest) -> JSONResponse:
        request_id = str(uuid.uuid4())
        try:
            conversation = store.create_conversation(req.name, is_ai_companion=req.is_ai_companion)
        except StoreError as e:
            logger.error("[create_conversation] request_id=%s store error: %s", request_id, e)
            return _fail(e.public_message, 500)
        logger.info("[create_conversation] request_id=%s conversation_id=%s", request_id, conversation.id)
        return _ok(conversation.to_wire())

    @app.get("/api/conversations/{conversation_id}")
    def get_conversation(conversation_id: int) -> JSONResponse:
        try:
            conversation = store.get_conversation(conversation_id)
        except StoreError as e:
            logger.error("[get_conversation] conversation_id=%s store error: %s", conversation_id, e)
            return _fail(e.public_message, 500)
        if conversation is None:
            return _fail(ConversationNotFoundError.public_message, 404)
        return _ok(conversation.to_wire())

    @app.get("/api/conversations/{conversation_id}/messages")
    def list_messages(conversation_id: int) -> JSONResponse:
        try:
            messages = store.get_messages(conversation_id)
        except StoreError as e:
            logger.error("[list_messages] conversation_id=%s store error: %s", conversation_id, e)
            return _fail(e.public_message, 500)
        return _ok([m.to_wire() for m in messages])

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    @app.post("/api/messages")
    async def submit_message(req: MessageCreateRequest) -> JSONResponse:
        """
        Run one relay turn over HTTP. Live connections bound to the
        conversation receive the pair exactly as with a /ws submission.
        """
        request_id = str(uuid.uuid4())
        start_time = time.monotonic()
        logger.info("[submit_message] request_id=%s conversation_id=%s content_len=%d",
                    request_id, req.conversation_id, len(req.content))
        try:
            user_message, counterpart_message = await relay.submit_message(req.conversation_id, req.content)
        except InvalidMessageError as e:
            return _fail(e.public_message, 400)
        except ConversationNotFoundError as e:
            return _fail(e.public_message, 404)
        except RelayError as e:
            logger.error("[submit_message] request_id=%s relay error: %s", request_id, e)
            return _fail(e.public_message, 500)

        latency_ms = int((time.monotonic() - start_time) * 1000)
        logger.info("[submit_message] request_id=%s OK latency_ms=%d", request_id, latency_ms)
        return _ok([user_message.to_wire(), counterpart_message.to_wire()])

    @app.post("/api/analyze")
    async def analyze_message(req: AnalyzeRequest) -> JSONResponse:
        request_id = str(uuid.uuid4())
        history = []
        if req.conversation_id:
            try:
                history = await asyncio.to_thread(
                    store.get_messages, req.conversation_id, ANALYZE_HISTORY_LIMIT
                )
            except StoreError as e:
                # Scoring without context beats failing the request
                logger.warning("[analyze] request_id=%s history unavailable: %s", request_id, e)

        score_message = getattr(generator, "score_message", None)
        if score_message is None:
            logger.error("[analyze] request_id=%s generator %r cannot score messages", request_id, generator)
            return _fail("Message analysis is unavailable", 501)

        result = await score_message(req.message, history=history, subject_attributes=req.subject_attributes)
        logger.info("[analyze] request_id=%s score=%s history=%d", request_id, result.score, len(history))
        return _ok(result.to_wire())

    # -----------------------------------------------------------------------
    # Live connections
    # -----------------------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        session = ClientSession(websocket, registry, relay)
        await session.run()

    @app.get("/health")
    async def health_check() -> dict:
        return {
            "status": "ok",
            "connections": registry.connection_count(),
            "conversations": len(registry.conversation_ids()),
        }

    return app


app = create_app()
