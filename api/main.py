"""
api/main.py -- FastAPI application entry point for TokenGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client host
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. authenticate_request  -- runs the gate, sets request.state.identity
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once, in dependency order:
  Settings -> AuthConfig -> TokenCodec
                         -> revocation store (Redis, or memory:// for dev)
                         -> TokenIssuer, AuthenticationGate, LoginThrottle
  and the credential store. Shutdown closes both stores.

A bad SECRET_KEY or token lifetime raises ConfigurationError during startup,
before the server accepts a single request.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth import metrics
from auth.errors import StoreUnavailable
from auth.gate import AuthenticationGate
from auth.issuer import TokenIssuer
from auth.store import UserStore
from auth.throttle import LoginThrottle
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from revocation.memory import MemoryRevocationStore
from revocation.store import RedisRevocationStore, RevocationStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")


# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


def build_revocation_store(settings: Settings) -> RevocationStore:
    """Redis in every real deployment; memory:// only for single-process dev."""
    if settings.redis_url.startswith("memory://"):
        logger.warning("Using in-process revocation store. Revocations are lost on restart.")
        return MemoryRevocationStore()
    return RedisRevocationStore.from_url(
        settings.redis_url,
        timeout=settings.revocation_store_timeout_seconds,
        scan_batch_size=settings.revocation_scan_batch_size,
    )


def wire_services(
    app: FastAPI,
    settings: Settings,
    store: RevocationStore,
    user_store: UserStore,
    clock: Callable[[], float] = time.time,
) -> None:
    """Attach codec, issuer, gate and throttle to app.state.

    Shared by the lifespan and the test fixtures so both build the same graph.
    """
    config = settings.to_auth_config()
    codec = TokenCodec.from_config(config, clock)
    app.state.settings = settings
    app.state.codec = codec
    app.state.revocation_store = store
    app.state.user_store = user_store
    app.state.issuer = TokenIssuer(codec, store, config)
    app.state.gate = AuthenticationGate(codec, store)
    app.state.throttle = LoginThrottle(
        store,
        max_per_user=settings.login_max_failures_per_user,
        max_per_ip=settings.login_max_failures_per_ip,
        window_seconds=settings.login_failure_window_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. An unreachable Redis at startup is logged, not fatal: the gate
    fails closed until the store comes back, and /api/v1/health reports it.
    """
    logger.info("TokenGate API starting up")
    settings = get_settings()
    store = build_revocation_store(settings)
    user_store = UserStore(settings.database_url)
    wire_services(app, settings, store, user_store)
    try:
        store.ping()
        logger.info("Revocation store reachable")
    except StoreUnavailable:
        logger.warning("Revocation store unreachable at startup -- protected routes will reject until it recovers")
    logger.info(
        "Auth initialized (issuer=%s access_ttl=%ss refresh_ttl=%ss)",
        settings.token_issuer,
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
    )

    yield

    store.close()
    user_store.close()
    logger.info("TokenGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TokenGate API",
    description="Access/refresh token issuance, verification and revocation.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both wrap the app from the inside out:
# the last one registered is the outermost. Host and CORS settings are the
# only settings read at import time; everything else is resolved in lifespan.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Authentication gate middleware
#
# Runs for every request that passed the Host check and never short-circuits:
# it only records who the caller is. Protected routes enforce presence with
# Depends(get_current_identity). The blacklist lookup is blocking I/O, so it
# runs in the threadpool.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    gate: AuthenticationGate | None = getattr(request.app.state, "gate", None)
    header = request.headers.get("Authorization")
    if gate is None:
        request.state.identity = None
    elif header is None:
        request.state.identity = gate.authenticate(None)
    else:
        request.state.identity = await run_in_threadpool(gate.authenticate, header)
    return await call_next(request)


# Registered after the gate so a bad Host is rejected before any store lookup.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered last so it is the outermost layer and times the gate as well.
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Plain def: SlowAPIMiddleware calls this handler directly (not awaited)
    when the limited endpoint is a sync function, as login and refresh are.

    Rate limiting never touches token state: tokens the client already holds
    keep working.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather than
    stringifying it. Headers (WWW-Authenticate, Retry-After) are passed through.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Return 503 when an operation that must not be best effort hit a store outage."""
    logger.warning("Revocation store unavailable on %s %s (%s)", request.method, request.url.path, exc.operation)
    response = JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="store_unavailable",
                message="Session store temporarily unavailable. Try again shortly.",
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
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
# Health and metrics
#
# Defined directly in main.py (not in a router) so they are always reachable
# regardless of router registration state. No rate limit applied -- probes
# from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and the reachability of both stores."""
    revocation_store, credential_store = "ok", "ok"
    store: RevocationStore = request.app.state.revocation_store
    try:
        store.ping()
    except StoreUnavailable:
        revocation_store = "unavailable"
    user_store: UserStore = request.app.state.user_store
    try:
        user_store.ping()
    except SQLAlchemyError as exc:
        logger.warning("Credential store ping failed: %s", type(exc).__name__)
        credential_store = "unavailable"
    status = "ok" if revocation_store == credential_store == "ok" else "degraded"
    return HealthResponse(
        status=status,
        version=VERSION,
        revocation_store=revocation_store,
        credential_store=credential_store,
    )


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics() -> Response:
    body, content_type = metrics.render_latest()
    return Response(content=body, media_type=content_type)
