"""
Reference Backend Module

A development backend for the chat widget. It serves the REST surface the
HTTP directories talk to, backed by the in-memory chat store.

Key Features:
- Visitor, conversation and message endpoints
- `{status, message, data}` response envelope
- Cursor-paginated message history
- Structured logging, Prometheus metrics and OpenTelemetry tracing

The AI reply is produced by a pluggable reply generator; the default one
echoes the visitor's message.
"""

from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..domain.models import MessageCreate
from ..repositories.memory import InMemoryChatStore, ReplyGenerator, echo_reply

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
AI_FAILURES = Counter("ai_failures_total", "Replies reported as failed", registry=CUSTOM_REGISTRY)

logger = get_logger()


class ConversationCreateRequest(BaseModel):
    """Defines the structure for conversation creation requests"""
    visitor_uuid: str


def envelope(data: Any, message: str = "OK", status: str = "success") -> dict:
    """Wraps a payload in the response envelope"""
    return {"status": status, "message": message, "data": data}


def get_store(request: Request) -> InMemoryChatStore:
    """Returns the backing chat store"""
    return request.app.state.store


def get_reply_generator(request: Request) -> ReplyGenerator:
    """Returns the AI reply generator"""
    return request.app.state.reply_generator


def create_app(
    store: Optional[InMemoryChatStore] = None,
    reply_generator: ReplyGenerator = echo_reply,
) -> FastAPI:
    """Builds the reference backend around a chat store"""
    app = FastAPI(
        title="Widget Chat Reference Backend",
        description="Development backend for the chat widget core",
        version="0.1.0",
    )
    app.state.store = store or InMemoryChatStore()
    app.state.reply_generator = reply_generator

    # Enable cross-origin requests from embedding pages
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and failures"""
        REQUESTS.inc()
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        if response.status_code >= 400:
            ERRORS.inc()
        return response

    @app.post("/visitors", status_code=201)
    async def create_visitor(request: Request, store: InMemoryChatStore = Depends(get_store)):
        """Registers a new anonymous visitor"""
        visitor = await store.create_visitor(
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        return envelope(visitor.model_dump(mode="json"), "Visitor created")

    @app.get("/visitors/{uuid}")
    async def get_visitor(uuid: str, store: InMemoryChatStore = Depends(get_store)):
        """Retrieves a visitor by UUID"""
        visitor = await store.get_visitor(uuid)
        if visitor is None:
            raise HTTPException(status_code=404, detail="Visitor not found")
        return envelope(visitor.model_dump(mode="json"))

    @app.delete("/visitors/{uuid}")
    async def delete_visitor(uuid: str, store: InMemoryChatStore = Depends(get_store)):
        """Deletes a visitor"""
        if not await store.delete_visitor(uuid):
            raise HTTPException(status_code=404, detail="Visitor not found")
        return envelope(None, "Visitor deleted")

    @app.post("/conversations")
    async def create_conversation(
        body: ConversationCreateRequest,
        store: InMemoryChatStore = Depends(get_store),
    ):
        """Starts a new conversation for a visitor"""
        try:
            conversation = await store.create_conversation(body.visitor_uuid)
        except ValueError:
            raise HTTPException(status_code=404, detail="Visitor not found")
        return envelope(conversation.model_dump(mode="json"), "Conversation created")

    @app.get("/conversations/visitor/{visitor_uuid}")
    async def list_visitor_conversations(
        visitor_uuid: str,
        limit: int = 10,
        offset: int = 0,
        store: InMemoryChatStore = Depends(get_store),
    ):
        """Gets a visitor's conversations, most recent first"""
        items, total = await store.list_conversations(visitor_uuid, limit=limit, offset=offset)
        return envelope(
            {
                "items": [c.model_dump(mode="json") for c in items],
                "total_count": total,
                "limit": limit,
                "offset": offset,
            }
        )

    @app.get("/conversations/visitor/{visitor_uuid}/active")
    async def get_active_conversation(
        visitor_uuid: str, store: InMemoryChatStore = Depends(get_store)
    ):
        """Gets the visitor's active conversation"""
        conversation = await store.active_conversation(visitor_uuid)
        if conversation is None:
            raise HTTPException(status_code=404, detail="No active conversation")
        return envelope(conversation.model_dump(mode="json"))

    @app.get("/conversations/{uuid}")
    async def get_conversation(uuid: str, store: InMemoryChatStore = Depends(get_store)):
        """Retrieves a specific conversation by its UUID"""
        conversation = await store.get_conversation(uuid)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return envelope(conversation.model_dump(mode="json"))

    @app.post("/messages")
    async def create_message(
        message: MessageCreate,
        store: InMemoryChatStore = Depends(get_store),
        reply_generator: ReplyGenerator = Depends(get_reply_generator),
    ):
        """
        Persists the visitor message and the AI reply in one round trip.
        A failed reply is reported with status "warning".
        """
        try:
            result = await store.create_and_reply(message, reply_generator)
        except ValueError:
            raise HTTPException(status_code=404, detail="Conversation not found")
        if result.status != "success":
            AI_FAILURES.inc()
        return result.model_dump(mode="json")

    @app.get("/messages/history")
    async def message_history(
        conversation_uuid: str,
        limit: int = 50,
        before_id: Optional[int] = None,
        store: InMemoryChatStore = Depends(get_store),
    ):
        """Gets a page of messages older than before_id, oldest first"""
        try:
            page = await store.history(conversation_uuid, limit=limit, before_id=before_id)
        except ValueError:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return envelope(page.model_dump(mode="json"))

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
