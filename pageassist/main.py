"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from pageassist.api.admin_routes import router as admin_router
from pageassist.api.auth_routes import router as auth_router
from pageassist.api.billing_routes import router as billing_router
from pageassist.api.chat_routes import router as chat_router
from pageassist.api.dependencies import close_llm_gateway
from pageassist.config import settings
from pageassist.db.migration_runner import run_migrations
from pageassist.db.session import close_engines, get_read_engine, get_write_engine
from pageassist.exceptions import AuthenticationError, PageAssistError
from pageassist.models.api import HealthResponse
from pageassist.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from pageassist.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from pageassist.rate_limit import limiter, rate_limit_exceeded_handler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def route_label(request: Request) -> str:
    """Metric label for a request: the matched route template, never the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        rate_limit_enabled=settings.rate_limit_enabled,
        auto_migrate=settings.auto_migrate,
    )

    if settings.auto_migrate:
        await asyncio.to_thread(run_migrations, settings.database_url)

    instrument_sqlalchemy(get_write_engine())
    if settings.database_read_url:
        instrument_sqlalchemy(get_read_engine())

    yield

    logger.info("application_shutting_down")
    await close_llm_gateway()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# ============================================================================
# Error handling - every error becomes {"error", "message", ...extra}
# ============================================================================


@app.exception_handler(PageAssistError)
async def application_error_handler(request: Request, exc: PageAssistError) -> JSONResponse:
    """Render typed application errors with their status and code."""
    if exc.status_code >= 500:
        logger.error(
            "application_error",
            path=request.url.path,
            error_code=exc.error_code,
            error=str(exc),
        )
    else:
        logger.info(
            "request_rejected",
            path=request.url.path,
            status_code=exc.status_code,
            error_code=exc.error_code,
        )
    metrics.record_error(exc.error_code, route_label(request))

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": str(exc), **exc.extra()},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report only the first violation, as a 400."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [
        str(part)
        for part in first.get("loc", ())
        if part not in ("body", "query", "path", "header")
    ]
    field = ".".join(loc) or None
    message = str(first.get("msg", "Invalid request"))

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        field=field,
        message=message,
        error_count=len(errors),
    )
    content: dict[str, str] = {"error": "validation_error", "message": message}
    if field:
        content["field"] = field
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The message is only exposed in debug mode."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": str(exc) if settings.debug else "Internal server error",
        },
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# ============================================================================
# Middleware
# ============================================================================

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# CORS middleware - the browser extension calls from its own origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and a request id."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    path = request.url.path
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=path)
        metrics.http_requests_in_progress.labels(method=method).inc()

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time
            endpoint = route_label(request)
            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=path,
                status_code=response.status_code,
                duration_seconds=duration,
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(route_label(request), method, 500, duration)
            metrics.record_error(type(e).__name__, route_label(request))

            logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(method=method).dec()


# ============================================================================
# Routes
# ============================================================================

app.include_router(auth_router)
app.include_router(billing_router)
app.include_router(chat_router)
app.include_router(admin_router)


@app.get("/health", response_model=HealthResponse)
@limiter.exempt
async def health() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(status="ok", timestamp=datetime.now(UTC).isoformat())


@app.get("/metrics")
@limiter.exempt
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pageassist.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
