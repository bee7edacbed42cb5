"""
api/main.py -- FastAPI application entry point for the AAA service.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- assigns X-Request-Id, logs one line per request
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  5. authentication_gate   -- turns a bearer token into request.state.security

Lifespan handles startup (stores, hasher, codec, refresh manager, audit
recorder, auth service, gate, housekeeping task) and shutdown (cancel
housekeeping, drain the audit queue, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from audit.recorder import AuditRecorder
from audit.store import AuditLogStore
from auth.dependencies import request_context
from auth.errors import NotFound
from auth.gate import AuthenticationGate
from auth.passwords import PasswordHasher
from auth.refresh import RefreshTokenManager
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import AccessTokenCodec
from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from jobs.housekeeping import cleanup_expired_refresh_tokens

API_VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("aaa.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_services(
    app: FastAPI,
    settings: Settings,
    store: CredentialStore,
    audit_store: AuditLogStore,
    clock: Clock = utc_now,
) -> None:
    """Build the credential and audit components on top of ready stores and attach them to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same graph.
    Raises ValueError on a bad signing key or TTL, which aborts startup.
    """
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    codec = AccessTokenCodec(
        secret_key=settings.secret_key,
        issuer=settings.jwt_issuer,
        ttl=timedelta(seconds=settings.access_token_ttl_seconds),
        leeway=timedelta(seconds=settings.jwt_leeway_seconds),
        clock=clock,
    )
    manager = RefreshTokenManager(
        store,
        hash_key=settings.secret_key,
        ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        clock=clock,
    )
    recorder = AuditRecorder(audit_store, clock=clock)

    app.state.credential_store = store
    app.state.audit_store = audit_store
    app.state.password_hasher = hasher
    app.state.token_codec = codec
    app.state.refresh_manager = manager
    app.state.audit_recorder = recorder
    app.state.auth_service = AuthService(store, hasher, codec, manager, recorder)
    app.state.gate = AuthenticationGate(codec, store, recorder, clock=clock)


# ---------------------------------------------------------------------------
# Background housekeeping task
# ---------------------------------------------------------------------------


async def _housekeeping_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired refresh tokens every interval_seconds.

    The sweep runs in a worker thread (asyncio.to_thread) so the event loop
    keeps serving requests while SQLite works. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly. Any other failure is logged and the loop carries on.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(
                cleanup_expired_refresh_tokens,
                app.state.refresh_manager,
                app.state.audit_recorder,
            )
        except Exception:
            logger.exception("Housekeeping run failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- every other component reads or writes through them.
      2. Services second -- codec construction validates the signing key.
      3. Housekeeping task last -- references app.state.refresh_manager.
    """
    logger.info("AAA service starting up")
    store = CredentialStore(settings.database_url)
    audit_store = AuditLogStore(settings.audit_database_url)
    init_services(app, settings, store, audit_store)
    logger.info("Credential and audit stores initialized")
    app.state.housekeeping_task = asyncio.create_task(
        _housekeeping_loop(app, settings.housekeeping_interval_seconds)
    )

    yield

    app.state.housekeeping_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.housekeeping_task
    app.state.audit_recorder.shutdown()
    store.close()
    audit_store.close()
    logger.info("AAA service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AAA Service",
    description="Authentication, authorization, and audit: password login, bearer tokens, refresh-token rotation.",
    version=API_VERSION,
    lifespan=lifespan,
)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Authentication gate middleware
#
# Registered first so it sits innermost: CORS preflight and rate limiting are
# decided before any token work happens. The gate itself does blocking DB
# reads, so it runs in the threadpool like a sync route handler.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def authentication_gate(request: Request, call_next):
    gate: AuthenticationGate | None = getattr(request.app.state, "gate", None)
    if gate is not None:
        request.state.security = await run_in_threadpool(
            gate.authenticate,
            request.method,
            request.url.path,
            request.headers.get("Authorization"),
            request_context(request),
            getattr(request.state, "security", None),
        )
    return await call_next(request)


# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps middleware so that the LAST one added is the outermost.
# Everything below is therefore added innermost-first:
# SlowAPI -> CORS -> TrustedHost, with log_requests wrapping them all.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-Request-Id"],
    expose_headers=["X-Request-Id"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
#
# The request id is taken from X-Request-Id when the caller sends one, otherwise
# generated, and is echoed back on the response. Audit events carry the same id.
# Never log headers or bodies here: they carry passwords and tokens.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-Id"] = request_id
    logger.info(
        "%s %s %d %.1fms %s rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
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
    """Return 422 with structured error when request body or query params fail validation.

    Only the error locations and messages are echoed; the rejected input is
    dropped so a password never comes back in a response body.
    """
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(
            error=ErrorDetail(code="not_found", message=f"{exc.kind.capitalize()} not found.")
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route dependencies raise HTTPException with a dict detail ({"code", "message"}).
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr, not JSON.
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


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
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
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the credential database answers."""
    store: CredentialStore | None = getattr(request.app.state, "credential_store", None)
    db_ok = store is not None and store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
