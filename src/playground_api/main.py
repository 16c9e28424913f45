"""
Playground API - Chat relay and conversation history service.

This service sits between the browser chat client and the hosted completion
API. It relays completions as they stream in and keeps the conversation
history (starring, soft delete, forking) in a relational store.

Endpoints:
    Chat:
        - POST /api/chat - Relay a completion (streaming/non-streaming)

    Conversations:
        - GET /api/chat - List conversations (paginated)
        - POST /api/chat/new - Create conversation
        - GET /api/chat/{chat_id} - Conversation with messages
        - POST /api/chat/{chat_id}/star - Toggle conversation star
        - DELETE /api/chat/{chat_id} - Soft delete conversation
        - POST /api/chat/fork - Fork conversation at a message
        - GET /api/chat/{chat_id}/forks - List forks
        - GET /api/chat/{chat_id}/fork-message/{message_id} - Fork origin message
        - POST /api/message/{message_id}/star - Toggle message star

    Health:
        - GET /health, /health/live, /health/ready

Last Grunted: 10/17/2026 04:45:00 PM UTC
"""
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from playground_api.config import Settings, get_settings
from playground_api.db.engine import close_db, create_engine, init_db
from playground_api.db.store import create_store
from playground_api.routers import chat, conversations
from playground_api.services.errors import RelayError, create_error_response, internal_error
from playground_api.services.http_client import close_client, get_client


# ============================================================================
# Logging Configuration
# ============================================================================

def configure_logging(settings: Settings) -> None:
    """
    Configure structured logging with structlog.

    Sets up structlog with JSON output for production and pretty printing
    for development (when LOG_FORMAT=console).
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "console":
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger("playground-api")


# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
        - Creates the database engine and tables (SQL backend)
        - Builds the conversation store
        - Initializes the shared HTTP client for upstream calls

    Shutdown:
        - Closes HTTP client connections
        - Disposes of the database engine
    """
    settings: Settings = app.state.settings
    logger.info("playground_api.startup", store_backend=settings.store_backend)

    engine = None
    if settings.store_backend == "sql":
        engine = create_engine(settings)
        try:
            await init_db(engine)
        except Exception as e:
            logger.error("playground_api.database.error", error=str(e))
            await close_db(engine)
            raise

    app.state.store = create_store(settings, engine)
    app.state.http_client = await get_client(settings)
    logger.info("playground_api.ready")

    yield

    logger.info("playground_api.shutdown")
    await close_client()
    if engine is not None:
        await close_db(engine)
    logger.info("playground_api.shutdown.complete")


# ============================================================================
# Application Factory
# ============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Service settings; defaults to the cached environment settings

    Returns:
        FastAPI: Configured application with routers, middleware and handlers
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Playground API",
        description="Chat completion relay and conversation history",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Chat-ID", "X-Fork-Chat-ID", "X-Response-Time"],
    )

    _register_exception_handlers(app)
    app.middleware("http")(log_requests)

    app.include_router(chat.router, tags=["chat"])
    app.include_router(conversations.router, tags=["conversations"])
    _register_health_routes(app)

    return app


# ============================================================================
# Exception Handlers
# ============================================================================

def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        """Map the relay error taxonomy onto OpenAI-style error bodies."""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "playground_api.relay_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            status_code=exc.status_code,
            error=exc.message,
        )
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            loc = first_error.get("loc", [])
            param = ".".join(str(part) for part in loc if part != "body")
            message = first_error.get("msg", "Validation error")
        else:
            param = None
            message = "Request validation failed"

        logger.warning(
            "playground_api.validation_error",
            path=request.url.path,
            param=param,
            message=message,
        )
        return create_error_response(
            message=message,
            error_type="invalid_request_error",
            param=param,
            code="validation_error",
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled errors in full, return a response without internals."""
        logger.exception(
            "playground_api.unhandled_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return internal_error()


# ============================================================================
# Request Logging Middleware
# ============================================================================

async def log_requests(request: Request, call_next: Callable):
    """
    Log request start and completion with timing information.

    Binds request_id, path and method to the structlog context so every log
    line emitted while handling the request carries them. For streaming
    responses the duration covers the time until headers were sent.
    """
    request_id = request.headers.get("X-Request-ID", "-")
    start_time = time.perf_counter()

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    logger.info("playground_api.request.start")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        "playground_api.request.complete",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
    return response


# ============================================================================
# Health Check
# ============================================================================

def _register_health_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "service": "playground-api",
            "version": "0.1.0",
        }

    @app.get("/health/live")
    async def liveness_check():
        return {"status": "alive"}

    @app.get("/health/ready")
    async def readiness_check(request: Request):
        """Readiness probe; 503 while the conversation store is unreachable."""
        store_ok = await request.app.state.store.ping()
        if not store_ok:
            logger.warning("readiness_check.store_unhealthy")
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "checks": {"store": "unreachable"}},
            )
        return {"status": "ready", "checks": {"store": "ok"}}


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("playground_api.main:app", host="0.0.0.0", port=8088)
