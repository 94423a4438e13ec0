"""
FastAPI Application Module

HTTP surface of the chat relay. The ``/api/ai`` endpoint accepts one user
message per request and answers with a streamed body while the relay saves
the finished exchange in the background.

Key Features:
- Streamed responses with first bytes sent as soon as the model produces them
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Errors detected before streaming starts are returned as JSON
``{"error": ...}`` with a 400/401/404/500 status.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel, ValidationError
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.errors import ChatError, InvalidRequest, NotFound, Unauthenticated
from ..domain.models import ChatSession, Message, Principal, message_adapter
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from ..repositories.base import MessageStore
from ..repositories.cache import CachedMessageStore, TTLCache
from ..repositories.memory import InMemoryMessageStore
from ..services.history import strip_placeholder
from ..services.ids import IdGenerator
from ..services.llm import GeminiStreamAdapter, ModelStreamAdapter
from ..services.relay import StreamRelay
from .auth import InMemorySessionResolver, SessionResolver, resolve_principal
from .framing import TurnStreamingResponse

logger = get_logger()


class ChatCreate(BaseModel):
    """Defines the structure for chat creation requests."""
    id: Optional[str] = None


def get_relay(request: Request) -> StreamRelay:
    """Returns the stream relay"""
    return request.app.state.relay


def get_store(request: Request) -> MessageStore:
    """Returns the message store"""
    return request.app.state.store


async def get_principal(request: Request) -> Optional[Principal]:
    """Returns the authenticated caller, if any"""
    return await resolve_principal(
        request,
        request.app.state.sessions,
        request.app.state.settings.session_cookie_name,
    )


def require_principal(principal: Optional[Principal] = Depends(get_principal)) -> Principal:
    """Returns the authenticated caller or rejects the request with 401"""
    if principal is None:
        raise Unauthenticated()
    return principal


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MessageStore] = None,
    adapter: Optional[ModelStreamAdapter] = None,
    sessions: Optional[SessionResolver] = None,
) -> FastAPI:
    """Build the application; collaborators default to in-memory/Gemini implementations."""
    settings = settings or get_settings()
    http_client = None
    if adapter is None:
        http_client = httpx.AsyncClient(timeout=30.0)
        adapter = GeminiStreamAdapter(settings, http_client=http_client)
    cached_store = CachedMessageStore(
        store or InMemoryMessageStore(),
        TTLCache(ttl=settings.cache_ttl_seconds),
    )
    relay = StreamRelay(
        cached_store,
        adapter,
        generate_id=IdGenerator(prefix=settings.id_prefix, separator=settings.id_separator),
        smooth_delay_ms=settings.smooth_delay_ms,
        turn_timeout=settings.turn_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        logger.info("application_startup_complete")
        yield
        await relay.drain()
        if http_client is not None:
            await http_client.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Gemish Chat API",
        description="Streaming chat relay with persisted history",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = cached_store
    app.state.relay = relay
    app.state.sessions = sessions or InMemorySessionResolver()

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests"""
        REQUESTS.inc()
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        ERRORS.inc()
        log = logger.error if exc.http_status >= 500 else logger.warning
        log("request_rejected", path=request.url.path, status=exc.http_status, error=exc.detail)
        return JSONResponse({"error": exc.public_message}, status_code=exc.http_status)

    @app.post("/api/ai")
    async def chat_turn(
        request: Request,
        relay: StreamRelay = Depends(get_relay),
        principal: Optional[Principal] = Depends(get_principal),
    ) -> TurnStreamingResponse:
        """
        Streams the assistant's reply to one user message.
        The exchange is saved once generation completes, even if the client left.
        """
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Request body must be JSON")
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")

        message = None
        if body.get("message"):
            try:
                message = message_adapter.validate_python(body["message"])
            except ValidationError as e:
                logger.warning("invalid_message", errors=e.error_count())
                raise InvalidRequest("Invalid message")

        try:
            turn = await relay.handle_turn(
                chat_id=body.get("id"),
                message=message,
                model=body.get("model"),
                principal=principal,
            )
        except ChatError:
            raise
        except Exception as e:
            logger.error("chat_turn_error", chat_id=body.get("id"), error=str(e))
            raise ChatError() from e

        return TurnStreamingResponse(turn)

    @app.post("/api/chats", response_model=ChatSession)
    async def create_chat(
        body: Optional[ChatCreate] = None,
        store: MessageStore = Depends(get_store),
        principal: Principal = Depends(require_principal),
    ) -> ChatSession:
        """Starts a new chat owned by the caller"""
        try:
            return await store.create_chat(principal.user_id, body.id if body else None)
        except ValueError:
            raise InvalidRequest("Chat already exists")

    @app.get("/api/chats", response_model=List[ChatSession])
    async def list_chats(
        store: MessageStore = Depends(get_store),
        principal: Principal = Depends(require_principal),
    ) -> List[ChatSession]:
        """Lists the caller's chats, newest first"""
        return await store.list_chats(principal.user_id)

    @app.get("/api/chats/{chat_id}/messages")
    async def get_messages(
        chat_id: str,
        store: MessageStore = Depends(get_store),
        principal: Principal = Depends(require_principal),
    ) -> JSONResponse:
        """Gets the ordered message history of a chat"""
        if not await store.check_ownership(chat_id, principal.user_id):
            raise NotFound()
        messages: List[Message] = strip_placeholder(await store.load_history(chat_id), chat_id)
        return JSONResponse([
            message_adapter.dump_python(m, mode="json", by_alias=True) for m in messages
        ])

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
