"""
Module: main.py
Description: FastAPI application entry point for the SpendWise AI advisor.

This module provides REST API endpoints for:
    - Advisor chat sessions and quota-gated user messages
    - Server-sent-event streaming of advisor replies
    - Cached AI insight cards and their regeneration
    - Savings goal creation from free text
    - Health and metrics reporting

Dependencies:
    - FastAPI for the REST API and SSE streaming
    - SQLAlchemy for database operations
    - redis.asyncio for the daily usage counter
    - OpenAI for the advisor model

Usage:
    uvicorn main:app --reload --host 0.0.0.0 --port 8000
"""

from auth import get_current_user
from config import Settings
from database import create_session_factory, get_db, init_db
from services.observability import logger, metrics
from services import (
    AIService, UsageLimiter, FinancialSummaryBuilder,
    InsightCacheManager, GoalExtractor, ChatService,
    ChatStreamOrchestrator, AdvisorError, BadRequestError,
    encode_sse,
)
from schemas import (
    CreateChatSessionRequest, SendMessageRequest, ChatStreamRequest,
    SendMessageResult, ChatSessionOut, RateLimitStatus, InsightCardOut,
    GoalParseRequest, GoalParseResult, SavingsGoalOut, HealthResponse,
)
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from openai import AsyncOpenAI
from sqlalchemy import text
from sqlalchemy.orm import Session as DBSession, sessionmaker


# =============================================================================
# Component Wiring
# =============================================================================

def configure_services(
    app: FastAPI,
    settings: Settings,
    session_factory: sessionmaker,
    redis_client,
    openai_client: Optional[AsyncOpenAI],
) -> None:
    """
    Build the long-lived service components and store them on ``app.state``.

    Request-scoped services (ChatService, InsightCacheManager, GoalExtractor)
    are built per request from these and the request's DB session.
    """
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.openai = openai_client

    app.state.ai_service = AIService(
        client=openai_client,
        model=settings.openai_model,
        request_timeout=settings.model_request_timeout_seconds,
    )
    app.state.limiter = UsageLimiter(
        redis_client,
        daily_limit=settings.daily_message_limit,
        fail_open=settings.rate_limit_fail_open,
    )
    app.state.summary_builder = FinancialSummaryBuilder(session_factory)
    app.state.chat_orchestrator = ChatStreamOrchestrator(
        session_factory,
        app.state.limiter,
        app.state.ai_service,
        app.state.summary_builder,
        history_limit=settings.chat_history_limit,
        stream_timeout=settings.chat_stream_timeout_seconds,
    )


# =============================================================================
# Application Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.

    On startup:
        - Create the database engine and tables
        - Connect the Redis usage counter store
        - Create the OpenAI client when a key is configured

    On shutdown:
        - Close the Redis and OpenAI clients and dispose of the engine
    """
    settings: Settings = app.state.settings
    logger.info("Starting SpendWise advisor API", environment=settings.environment)

    session_factory = create_session_factory(settings.database_url)
    init_db(session_factory)

    redis_client = redis.from_url(settings.redis_url, decode_responses=True)

    openai_client = None
    if settings.openai_api_key:
        openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.model_request_timeout_seconds,
        )
    else:
        logger.warning("OPENAI_API_KEY not set, advisor model features disabled")

    configure_services(app, settings, session_factory, redis_client, openai_client)
    logger.info("Database initialized, clients ready")

    yield

    logger.info("Shutting down SpendWise advisor API")
    await redis_client.aclose()
    if openai_client is not None:
        await openai_client.close()
    session_factory.kw["bind"].dispose()


# =============================================================================
# FastAPI Application Configuration
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the API application; settings default to the process environment."""
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="SpendWise Advisor API",
        description="""
    AI financial advisor API: streamed chat grounded in the user's own finances,
    cached insight cards, and savings goals parsed from plain language.
    """,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AdvisorError, advisor_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    register_routes(app)
    return app


async def advisor_error_handler(request: Request, exc: AdvisorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
    metrics.increment("api.errors", tags={"code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request body",
            "code": BadRequestError.code,
            "details": jsonable_encoder(exc.errors()),
        },
    )


# =============================================================================
# Dependency Injection
# =============================================================================

def get_ai_service(request: Request) -> AIService:
    """
    Dependency: Provide the shared AIService.

    Returns:
        AIService: Wrapper around the process-wide OpenAI client.
    """
    return request.app.state.ai_service


def get_limiter(request: Request) -> UsageLimiter:
    return request.app.state.limiter


def get_summary_builder(request: Request) -> FinancialSummaryBuilder:
    return request.app.state.summary_builder


def get_chat_orchestrator(request: Request) -> ChatStreamOrchestrator:
    return request.app.state.chat_orchestrator


def get_chat_service(
    db: DBSession = Depends(get_db),
    limiter: UsageLimiter = Depends(get_limiter),
) -> ChatService:
    return ChatService(db, limiter)


def get_insight_cache(
    db: DBSession = Depends(get_db),
    ai_service: AIService = Depends(get_ai_service),
    summary_builder: FinancialSummaryBuilder = Depends(get_summary_builder),
) -> InsightCacheManager:
    return InsightCacheManager(db, ai_service, summary_builder)


def get_goal_extractor(
    db: DBSession = Depends(get_db),
    ai_service: AIService = Depends(get_ai_service),
) -> GoalExtractor:
    return GoalExtractor(db, ai_service)


# =============================================================================
# Routes
# =============================================================================

def register_routes(app: FastAPI) -> None:
    """Attach every endpoint to ``app``."""

    # -------------------------------------------------------------------------
    # System
    # -------------------------------------------------------------------------

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check endpoint",
        description="Check the health of the database, the usage counter store and the model API."
    )
    async def health_check(
        request: Request,
        db: DBSession = Depends(get_db),
        ai_service: AIService = Depends(get_ai_service),
    ) -> HealthResponse:
        """
        Perform health check on all system components.

        Example:
            GET /health
            Response: {"status": "healthy", "database": "connected",
                       "redis": "connected", "openai": "connected"}
        """
        try:
            db.execute(text("SELECT 1"))
            db_status = "connected"
        except Exception as e:
            db_status = f"error: {str(e)}"

        try:
            await request.app.state.redis.ping()
            redis_status = "connected"
        except Exception as e:
            redis_status = f"error: {str(e)}"

        if not ai_service.available:
            openai_status = "not_configured"
        else:
            openai_connected = await ai_service.check_connection()
            openai_status = "connected" if openai_connected else "disconnected"

        healthy = db_status == "connected" and redis_status == "connected"

        return HealthResponse(
            status="healthy" if healthy else "degraded",
            database=db_status,
            redis=redis_status,
            openai=openai_status,
        )

    @app.get(
        "/metrics",
        tags=["System"],
        summary="Get application metrics",
        description="Counters and timing data collected since startup."
    )
    async def get_metrics(ai_service: AIService = Depends(get_ai_service)):
        """
        Example:
            GET /metrics
            Response: {
                "uptime_seconds": 3600,
                "counters": {"chat.messages.user": 42},
                "timings": {"financial_summary.build": {"avg_ms": 85.2, ...}},
                "model_usage": {"total_tokens": 12000, ...}
            }
        """
        return {**metrics.get_summary(), "model_usage": ai_service.get_usage_stats()}

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    @app.post(
        "/chat/sessions",
        response_model=ChatSessionOut,
        status_code=201,
        tags=["Chat"],
        summary="Start a new advisor chat session",
    )
    async def create_chat_session(
        body: CreateChatSessionRequest,
        chat_service: ChatService = Depends(get_chat_service),
        user_id: str = Depends(get_current_user),
    ):
        return chat_service.create_session(user_id, body.title)

    @app.get(
        "/chat/sessions",
        response_model=list[ChatSessionOut],
        tags=["Chat"],
        summary="List the caller's chat sessions",
        description="Most recently active first, each with its messages oldest-first."
    )
    async def list_chat_sessions(
        chat_service: ChatService = Depends(get_chat_service),
        user_id: str = Depends(get_current_user),
    ):
        return chat_service.list_sessions(user_id)

    @app.get(
        "/chat/sessions/{session_id}",
        response_model=ChatSessionOut,
        tags=["Chat"],
        summary="Get one chat session with its messages",
    )
    async def get_chat_session(
        session_id: str,
        chat_service: ChatService = Depends(get_chat_service),
        user_id: str = Depends(get_current_user),
    ):
        return chat_service.get_session(user_id, session_id)

    @app.get(
        "/chat/rate-limit",
        response_model=RateLimitStatus,
        tags=["Chat"],
        summary="Remaining advisor messages for today",
    )
    async def get_rate_limit(
        chat_service: ChatService = Depends(get_chat_service),
        user_id: str = Depends(get_current_user),
    ):
        status = await chat_service.rate_limit_status(user_id)
        return RateLimitStatus(**status.to_dict())

    @app.post(
        "/chat/messages",
        response_model=SendMessageResult,
        tags=["Chat"],
        summary="Record a user message",
        description="Counts against the daily quota. The reply is fetched from /chat/stream."
    )
    async def send_message(
        body: SendMessageRequest,
        chat_service: ChatService = Depends(get_chat_service),
        user_id: str = Depends(get_current_user),
    ):
        message = await chat_service.send_message(user_id, body.session_id, body.content)
        return SendMessageResult(success=True, sessionId=body.session_id, messageId=message.id)

    @app.post(
        "/chat/stream",
        tags=["Chat"],
        summary="Stream the advisor's reply",
        description="Server-sent events: content_block_start, content_block_delta, "
                    "content_block_stop, message_stop or error."
    )
    async def stream_chat(
        request: Request,
        body: ChatStreamRequest,
        orchestrator: ChatStreamOrchestrator = Depends(get_chat_orchestrator),
        user_id: str = Depends(get_current_user),
    ):
        """
        Stream the assistant reply for the session's latest user message.

        Quota, ownership and context checks all run before the response
        starts, so those failures are plain JSON errors. Once streaming,
        failures arrive as a final ``{"type": "error"}`` event.
        """
        if not body.session_id or not body.content:
            raise BadRequestError("Missing sessionId or content")

        turn = await orchestrator.prepare(user_id, body.session_id, body.content)
        metrics.increment("chat.stream.started")

        async def generate():
            """Frame each relayed event as SSE."""
            try:
                async for event in orchestrator.relay(turn, request.is_disconnected):
                    yield encode_sse(event)
            finally:
                logger.clear_context()

        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # -------------------------------------------------------------------------
    # Insights
    # -------------------------------------------------------------------------

    @app.get(
        "/insights",
        response_model=list[InsightCardOut],
        tags=["Insights"],
        summary="Active insight cards",
        description="Most important first. Empty when none have been generated."
    )
    async def get_insights(
        insight_cache: InsightCacheManager = Depends(get_insight_cache),
        user_id: str = Depends(get_current_user),
    ):
        return insight_cache.get_active(user_id)

    @app.post(
        "/insights/regenerate",
        response_model=list[InsightCardOut],
        tags=["Insights"],
        summary="Replace the caller's insight cards with a fresh batch",
    )
    async def regenerate_insights(
        insight_cache: InsightCacheManager = Depends(get_insight_cache),
        user_id: str = Depends(get_current_user),
    ):
        return await insight_cache.regenerate(user_id)

    # -------------------------------------------------------------------------
    # Goals
    # -------------------------------------------------------------------------

    @app.post(
        "/goals/parse",
        response_model=GoalParseResult,
        tags=["Goals"],
        summary="Create a savings goal from plain language",
        description="e.g. \"Save $5K for Japan by June\". Optionally uses recent chat context."
    )
    async def parse_goal(
        body: GoalParseRequest,
        extractor: GoalExtractor = Depends(get_goal_extractor),
        user_id: str = Depends(get_current_user),
    ):
        goal = await extractor.create_goal_from_text(user_id, body.input, body.session_id)
        if goal is None:
            return GoalParseResult(parsed=False, goal=None, confidence=0)
        return GoalParseResult(
            parsed=True,
            goal=SavingsGoalOut.model_validate(goal),
            confidence=100,
        )


app = create_app()


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
