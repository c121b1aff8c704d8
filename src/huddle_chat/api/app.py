"""
FastAPI Application Module

HTTP and WebSocket surface of the chat core. Built the same way for every
deployment: one ``ChatCore`` per app, a sliding-window rate limiter in front
of every HTTP request, and a per-chat queue that serializes message writes.

Key Features:
- Async request handling with FastAPI
- Rate limiting and request queuing
- Structured logging and metrics
- CORS and OpenTelemetry support
- Realtime change feed over ``/realtime``
"""

from contextlib import asynccontextmanager
from typing import Dict, Optional, Type

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from structlog import get_logger

from ..config import Settings
from ..core import ChatCore
from ..domain.errors import (
    CapacityExceeded,
    ChatError,
    Conflict,
    Forbidden,
    InvalidRequest,
    NotFound,
    RateLimitExceeded,
    TransientIO,
    Unauthenticated,
)
from ..logs import configure_logging
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from .rate_limiter import RateLimiter, rate_limit_key
from .realtime import router as realtime_router
from .request_queue import ChatRequestQueue
from .routes import router

logger = get_logger()

STATUS_BY_ERROR: Dict[Type[ChatError], int] = {
    Forbidden: 403,
    NotFound: 404,
    Conflict: 409,
    CapacityExceeded: 409,
    InvalidRequest: 400,
    Unauthenticated: 401,
    RateLimitExceeded: 429,
    TransientIO: 503,
}

UNLIMITED_PATHS = frozenset({"/health", "/metrics"})


def status_for(error: ChatError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 500


def error_response(error: ChatError) -> JSONResponse:
    """Render a domain error with its HTTP status."""
    status_code = status_for(error)
    headers = {}
    if isinstance(error, (TransientIO, RateLimitExceeded)):
        headers["Retry-After"] = str(error.details.get("retry_after", 1))
    ERRORS.labels(error_code=error.default_error_code).inc()
    return JSONResponse(status_code=status_code, content=error.to_dict(), headers=headers)


def create_app(settings: Optional[Settings] = None, core: Optional[ChatCore] = None) -> FastAPI:
    """Build an app around ``core``, or a fresh core made from ``settings``."""
    settings = settings or (core.settings if core is not None else Settings.from_env())
    configure_logging(settings)
    core = core or ChatCore(settings)
    rate_limiter = RateLimiter(rate_limit=settings.rate_limit, time_window=settings.rate_window)
    request_queue = ChatRequestQueue(timeout=settings.request_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        await core.start()
        await rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await request_queue.cleanup()
        await rate_limiter.stop()
        await core.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Huddle Chat API",
        description="Self-hosted messaging core with realtime change feeds",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.core = core
    app.state.rate_limiter = rate_limiter
    app.state.request_queue = request_queue

    # Enable cross-origin requests
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
        """Tracks requests and enforces rate limits"""
        logger.info("request_started", method=request.method, path=request.url.path)
        REQUESTS.inc()
        try:
            if request.url.path in UNLIMITED_PATHS:
                return await call_next(request)
            key = rate_limit_key(request)
            await rate_limiter.check_rate_limit(key)
            response = await call_next(request)
            response.headers["X-RateLimit-Remaining"] = str(await rate_limiter.get_remaining_requests(key))
            return response
        except RateLimitExceeded as e:
            return error_response(e)
        except Exception as e:
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        level = logger.error if isinstance(exc, TransientIO) else logger.info
        level(
            "request_rejected",
            path=request.url.path,
            error_code=exc.error_code,
            error=exc.message,
        )
        return error_response(exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        ERRORS.labels(error_code="INTERNAL").inc()
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "error_code": "INTERNAL", "error_type": "INTERNAL"},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "subscribers": core.dispatcher.subscriber_count}

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    app.include_router(router)
    app.include_router(realtime_router)
    return app


app = create_app()
