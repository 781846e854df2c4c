"""
api/main.py -- FastAPI application entry point for ServiceMap.

Exposes the inventory engine over HTTP: indicator ingestion, batch host
searches with read-once results, host substring matching, and read-only system
group and risk assessment views.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store init, dynamic host sweep task) and shutdown
(cancel the sweep task and wait for an in-flight sweep, then dispose the
engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.indicators import router as indicators_router
from api.routes.v1.rras import router as rras_router
from api.routes.v1.search import router as search_router
from api.routes.v1.sysgroups import router as sysgroups_router
from core.config import get_settings
from inventory.errors import InventoryError
from inventory.lifecycle import run_sweep
from inventory.store import InventoryStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("servicemap.api")

# ---------------------------------------------------------------------------
# Background dynamic host sweep
# ---------------------------------------------------------------------------


async def _sweep_in_thread(store: InventoryStore) -> None:
    """Run one sweep in a worker thread.

    Cancelling the awaiting task does not stop the thread, so on cancellation
    this waits for the sweep to finish before re-raising. Shutdown can then
    dispose the engine without a sweep still holding a connection.
    """
    sweep = asyncio.ensure_future(asyncio.to_thread(run_sweep, store))
    try:
        await asyncio.shield(sweep)
    except asyncio.CancelledError:
        await sweep
        raise


async def _dynamic_host_loop(app: FastAPI) -> None:
    """Expire stale dynamic hosts every DYNAMIC_HOST_SWEEP_SECONDS.

    Runs as a background asyncio task started in lifespan startup. Each sweep
    is blocking database work, so it is pushed to a worker thread to keep the
    event loop free. run_sweep() logs and absorbs its own failures; the loop
    only ends when task.cancel() raises CancelledError during shutdown.
    """
    settings = get_settings()
    store: InventoryStore = app.state.store
    if settings.sweep_on_startup:
        await _sweep_in_thread(store)
    while True:
        await asyncio.sleep(settings.dynamic_host_sweep_seconds)
        await _sweep_in_thread(store)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the sweep task references
    app.state.store.
    """
    settings = get_settings()
    logger.info("ServiceMap API starting up")
    app.state.store = InventoryStore(settings.database_url)
    logger.info("Inventory store initialized (%s)", app.state.store.engine.url.render_as_string(hide_password=True))
    app.state.sweep_task = asyncio.create_task(_dynamic_host_loop(app))

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    app.state.store.close()
    logger.info("ServiceMap API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ServiceMap API",
    description="Asset inventory and host-to-service resolution with risk assessment lookup.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(indicators_router, prefix="/api/v1", tags=["Indicators"])
app.include_router(search_router, prefix="/api/v1", tags=["Search"])
app.include_router(sysgroups_router, prefix="/api/v1", tags=["System groups"])
app.include_router(rras_router, prefix="/api/v1", tags=["Risk assessments"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError) -> JSONResponse:
    """Render engine errors with the status and code carried by the exception class."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s (%s)", exc.error_code, request.method, request.url.path, exc.message, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.error_code,
                message=exc.message,
                detail=exc.detail,
            )
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the request body or query parameters cannot be decoded."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="malformed_request",
                message="Request could not be decoded.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions, routing 404s included.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database probe."""
    store = getattr(request.app.state, "store", None)
    database = "ok" if store is not None and store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
