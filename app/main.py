from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional
import secrets

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.analytics.events import log_event
from app.config import Settings
from app.db.database import session_scope
from app.errors import ChatServiceError, ValidationFailed
from app.logging_config import setup_logging, get_logger
from app.models import ChatMessage, PillMetadata, TurnRequest
from app.services import Services, build_services

logger = get_logger(__name__)


# ============================================================================
# Request models (camelCase on the wire)
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageIn(CamelModel):
    role: Literal['user', 'assistant']
    content: str


class PillMetadataIn(CamelModel):
    feedback_pill_id: Optional[str] = None
    expansion_pill_id: Optional[str] = None
    suggested_pill_id: Optional[str] = None
    prefill_text: Optional[str] = None
    sent_text: Optional[str] = None
    was_modified: bool = False


class ChatRequest(CamelModel):
    # Optional here so missing fields get the chat-specific 400 messages
    messages: Optional[List[MessageIn]] = None
    chatbot_id: Optional[str] = None
    conversation_id: Optional[str] = None
    pill_metadata: Optional[PillMetadataIn] = None

    def to_turn_request(self, external_user_id: Optional[str]) -> TurnRequest:
        return TurnRequest(
            messages=[ChatMessage(role=m.role, content=m.content) for m in self.messages or []],
            chatbot_id=self.chatbot_id or "",
            conversation_id=self.conversation_id or None,
            pill_metadata=PillMetadata(**self.pill_metadata.model_dump()) if self.pill_metadata else None,
            external_user_id=external_user_id,
        )


class EventRequest(CamelModel):
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    chunk_ids: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


class PillUsageRequest(CamelModel):
    pill_id: Optional[str] = None
    session_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    source_chunk_ids: List[str] = Field(default_factory=list)
    prefill_text: Optional[str] = None
    sent_text: Optional[str] = None
    was_modified: bool = False
    paired_with_pill_id: Optional[str] = None


# ============================================================================
# App factory
# ============================================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. Pass services to run against fakes (tests); otherwise they
    are built from the environment at startup.
    """
    settings = services.settings if services else (settings or Settings.from_env())

    # Configure logging on startup
    setup_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        metrics_file="logs/turn_metrics.log" if settings.log_file else None,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting chatbot API")
        logger.info(f"LLM provider: {settings.llm_provider}, environment: {settings.environment}")
        if app.state.services is None:
            app.state.services = build_services(settings)
        yield
        logger.info("Shutting down chatbot API")
        await app.state.services.pipeline.drain()
        app.state.services.close()

    app = FastAPI(title="Chatbot RAG API", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    # Configure CORS to allow requests from the web frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-Conversation-Id"],
    )

    register_exception_handlers(app, settings)
    register_routes(app)
    return app


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:

    @app.exception_handler(ChatServiceError)
    async def chat_service_error_handler(request: Request, exc: ChatServiceError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"Invalid request: {location} {first.get('msg', '')}".strip()
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        message = "An unexpected error occurred. Please try again."
        if not settings.is_production:
            message = f"{message} ({exc})"
        return JSONResponse(status_code=500, content={"error": message})


def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "message": "Chatbot API is running"}

    @app.get("/")
    async def root():
        return {"message": "Welcome to the Chatbot RAG API", "docs": "/docs"}

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request, services: Services = Depends(get_services)):
        """Run one chat turn. Streams the reply as plain text fragments."""
        turn_request = body.to_turn_request(services.identity.identify(request))
        logger.info(f"Received chat turn for chatbot {turn_request.chatbot_id or '-'} "
                    f"({len(turn_request.messages)} messages)")

        turn = await services.pipeline.start_turn(turn_request)

        return StreamingResponse(
            services.pipeline.stream_reply(turn),
            media_type="text/event-stream",
            headers=turn.response_headers(),
        )

    @app.post("/jobs/update-chunk-performance")
    async def update_chunk_performance(
        services: Services = Depends(get_services),
        authorization: Optional[str] = Header(default=None),
    ):
        """Aggregate recent events and pill usages into chunk_performance. Called by a scheduler."""
        cron_secret = services.settings.cron_secret
        if cron_secret and not secrets.compare_digest(authorization or "", f"Bearer {cron_secret}"):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        try:
            summary = await run_in_threadpool(services.aggregator.run)
        except Exception as e:
            content = {"error": "Failed to update chunk performance"}
            if not services.settings.is_production:
                content["details"] = str(e)
            return JSONResponse(status_code=500, content=content)
        return summary.to_response()

    @app.post("/events")
    async def create_event(body: EventRequest, request: Request, services: Services = Depends(get_services)):
        """Log an interaction event (copy, bookmark, ...). Anonymous users allowed."""
        user_id = await run_in_threadpool(services.store.resolve_user_id, services.identity.identify(request))

        def write():
            with session_scope(services.session_factory) as session:
                event = log_event(
                    session,
                    event_type=body.event_type,
                    session_id=body.session_id,
                    user_id=user_id,
                    chunk_ids=body.chunk_ids,
                    metadata=body.metadata,
                )
                return event.id

        try:
            event_id = await run_in_threadpool(write)
        except ChatServiceError:
            raise
        except Exception as e:
            logger.error(f"Error logging event: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Failed to log event"})
        return {"success": True, "eventId": event_id}

    @app.post("/pills/usage")
    async def create_pill_usage(body: PillUsageRequest, request: Request, services: Services = Depends(get_services)):
        """Log a pill usage sent from the client."""
        if not (body.pill_id and body.session_id and body.chatbot_id and body.prefill_text and body.sent_text):
            raise ValidationFailed("pillId, sessionId, chatbotId, prefillText, and sentText are required")

        user_id = await run_in_threadpool(services.store.resolve_user_id, services.identity.identify(request))
        try:
            usage_id = await run_in_threadpool(
                services.store.log_pill_usage,
                pill_id=body.pill_id,
                session_id=body.session_id,
                chatbot_id=body.chatbot_id,
                prefill_text=body.prefill_text,
                sent_text=body.sent_text,
                user_id=user_id,
                source_chunk_ids=body.source_chunk_ids,
                was_modified=body.was_modified,
                paired_with_pill_id=body.paired_with_pill_id,
            )
        except ChatServiceError:
            raise
        except Exception as e:
            logger.error(f"Error logging pill usage: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Failed to log pill usage"})
        return {"success": True, "pillUsageId": usage_id}


app = create_app()
