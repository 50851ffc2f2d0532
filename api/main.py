"""
api/main.py -- FastAPI application entry point for Tripwise.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan constructs every auth-core service explicitly (store, cache,
permission engine, token issuer, authenticator, lifecycle controller) and
attaches them to app.state. Shutdown closes them in reverse order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.authenticator import Authenticator
from auth.dependencies import get_current_principal
from auth.errors import AuthError, ErrorCode
from auth.models import Principal
from auth.permissions import PermissionEngine, PermissionService, build_permission_engine
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenIssuer
from cache.store import RedisCache
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tripwise.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired or revoked refresh-token rows every cleanup interval.

    Several workers may run this loop; the cache lock makes sure only one of
    them purges per interval. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    interval = app.state.settings.token_cleanup_interval_seconds
    while True:
        await asyncio.sleep(interval)
        await purge_refresh_tokens(app.state.store, app.state.cache, lock_ttl=interval)


async def purge_refresh_tokens(store: UserStore, cache: RedisCache, lock_ttl: int = 60) -> int | None:
    """One purge pass. Returns rows deleted, or None if another worker holds the lock."""
    try:
        lock = await cache.acquire_lock("cleanup:refresh_tokens", ttl=lock_ttl)
    except RedisError:
        logger.warning("Cleanup lock unavailable; purging without it", exc_info=True)
    else:
        if lock is None:
            logger.debug("Refresh-token cleanup already running elsewhere")
            return None

    deleted = await asyncio.to_thread(store.purge_refresh_tokens)
    logger.info("Purged %d expired or revoked refresh tokens", deleted)
    # Lock is left to expire so the next pass waits a full interval.
    return deleted


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    store: UserStore,
    cache: RedisCache,
    engine: PermissionEngine,
) -> None:
    """Attach the auth-core object graph to app.state.

    Shared by the production lifespan and the test lifespan so both build
    exactly the same graph from their own collaborators.
    """
    tokens = TokenIssuer(settings)
    permissions = PermissionService(engine, cache)
    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    app.state.permission_engine = engine
    app.state.permissions = permissions
    app.state.tokens = tokens
    app.state.authenticator = Authenticator(tokens, cache, store, permissions)
    app.state.auth_service = AuthService(settings, store, cache, tokens, permissions)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order:
      1. Credential store -- tables are created on construction.
      2. Cache -- an unreachable Redis is logged, not fatal: every cache read
         has a durable fallback except the blacklist, which fails closed per
         request.
      3. Permission engine -- a misconfigured engine IS fatal.
      4. Purge task last -- references the store and the cache.
    """
    settings = get_settings()
    logger.info("Tripwise API starting up (environment=%s)", settings.environment)

    store = UserStore(settings.database_url)
    cache = RedisCache(settings)
    try:
        await cache.connect()
    except RedisError:
        logger.error("Redis unreachable at startup; running degraded", exc_info=True)
    engine = build_permission_engine(settings)
    await engine.connect()
    logger.info("Permission engine: %s", engine.name)

    wire_services(app, settings, store, cache, engine)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    await engine.close()
    await cache.close()
    store.close()
    logger.info("Tripwise API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tripwise API",
    description="Authentication, session and permission core for the Tripwise travel planner.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

# add_middleware() wraps: the LAST call becomes the outermost layer, so CORS
# headers are also present on 429 responses produced by SlowAPIMiddleware.
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    max_age=3600,
)

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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Tripwise API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Tripwise API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, code=code, detail=detail).model_dump(
            by_alias=True, mode="json", exclude_none=True
        ),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the tagged error to its HTTP status. The only place statuses are chosen."""
    resp = _error(exc.status_code, exc.code.value, exc.message)
    if exc.status_code == 401:
        resp.headers["WWW-Authenticate"] = "Bearer"
    return resp


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header.

    slowapi does not put retry_after on the exception, so the wait falls back
    to the length of the exceeded window (exc.limit.limit is a limits item).
    """
    retry_after = int(getattr(exc, "retry_after", exc.limit.limit.get_expiry()))
    resp = _error(429, ErrorCode.TOO_MANY_REQUESTS.value, "Too many requests, please try again later.")
    resp.headers["Retry-After"] = str(retry_after)
    return resp


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body, path or query fails validation."""
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return _error(422, "validation_error", "Request validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log. The client sees a generic message, plus
    the exception text only when DEBUG is on.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    detail = repr(exc) if get_settings().debug else None
    return _error(500, "internal_error", "An unexpected error occurred.", detail)


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return API liveness plus database and cache status."""
    components = {"app": "ok"}
    try:
        db_ok = await asyncio.to_thread(request.app.state.store.ping)
    except SQLAlchemyError:
        logger.warning("Health check: database ping failed", exc_info=True)
        db_ok = False
    components["database"] = "ok" if db_ok else "error"
    try:
        cache_ok = await request.app.state.cache.ping()
    except (RedisError, RuntimeError):
        logger.warning("Health check: cache ping failed", exc_info=True)
        cache_ok = False
    components["cache"] = "ok" if cache_ok else "error"

    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    body = HealthResponse(status=status, version=VERSION, components=components)
    return JSONResponse(content=body.model_dump(by_alias=True))
