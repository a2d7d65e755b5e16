"""
api/main.py -- FastAPI application entry point for StepGate.

Exposes the three-step sign-in (password, email code, passkey) and the opaque
token session over HTTP.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the APP_URL origin
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (user store, seed user, auth wiring, maintenance
task) and shutdown (cancel and await the task, close the DB) symmetrically.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.credentials import CredentialStore
from auth.errors import (
    AuthError,
    AuthLocked,
    EmailDeliveryError,
    InvalidOrExpiredChallenge,
    InvalidOrExpiredCode,
    RateLimited,
    UnknownPasskey,
)
from auth.guard import GuardPolicy, LockoutGuard
from auth.mailer import EmailDispatcher, build_email_dispatcher
from auth.models import User
from auth.service import AuthOrchestrator, Lifetimes
from auth.store import UserStore
from auth.tokens import hash_password
from auth.webauthn import ChallengeVerifier
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("stepgate.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _seed_user(users: UserStore, settings: Settings) -> None:
    """Create the configured seed user if it does not exist yet.

    The seed user has no passkey; attach one with `main.py import-passkey`.
    """
    if not settings.seed_password or users.get_by_username(settings.seed_username) is not None:
        return
    users.create_user(
        User(
            username=settings.seed_username,
            email=settings.seed_email,
            password_hash=hash_password(settings.seed_password),
        )
    )
    logger.info("Seeded user %r", settings.seed_username)


def build_guard(
    settings: Settings,
    credentials: CredentialStore,
    email: EmailDispatcher,
) -> LockoutGuard:
    """Assemble verifier -> orchestrator -> guard from settings."""
    lifetimes = Lifetimes(
        temp_session=timedelta(seconds=settings.temp_session_ttl_seconds),
        verification_code=timedelta(seconds=settings.verification_code_ttl_seconds),
        step2_token=timedelta(seconds=settings.step2_token_ttl_seconds),
        challenge=timedelta(seconds=settings.challenge_ttl_seconds),
        access_token=timedelta(seconds=settings.access_token_ttl_seconds),
        refresh_token=timedelta(seconds=settings.refresh_token_ttl_seconds),
    )
    policy = GuardPolicy(
        step1_rate_limit=settings.step1_rate_limit,
        step2_verify_rate_limit=settings.step2_verify_rate_limit,
        username_max_failures=settings.username_max_failures,
        username_lockout=timedelta(seconds=settings.username_lockout_seconds),
        session_max_failures=settings.session_max_failures,
        session_failure_window=timedelta(seconds=settings.session_failure_window_seconds),
        session_lockout=timedelta(seconds=settings.session_lockout_seconds),
    )
    orchestrator = AuthOrchestrator(
        credentials,
        ChallengeVerifier(),
        email,
        rp_id=settings.rp_id,
        lifetimes=lifetimes,
    )
    return LockoutGuard(orchestrator, policy)


# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Sweep expired auth records every CLEANUP_INTERVAL_SECONDS.

    The sweeps take per-key locks and may block briefly, so they run in a
    worker thread. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine.
    """
    interval = app.state.settings.cleanup_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.credentials.purge_expired)
            removed += await asyncio.to_thread(app.state.guard.purge_expired)
        except Exception:
            logger.exception("Maintenance sweep failed")
            continue
        if removed:
            logger.debug("Maintenance sweep removed %d records", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. UserStore first -- the seed user and CredentialStore need it.
      2. Email dispatcher before the orchestrator; a production config
         without SMTP fails here, before any request is served.
      3. Maintenance task last -- it references the store and the guard.
    """
    settings = get_settings()
    logger.info("StepGate API starting up (rp_id=%s)", settings.rp_id)
    app.state.settings = settings
    app.state.user_store = UserStore(settings.db_url)
    _seed_user(app.state.user_store, settings)
    app.state.credentials = CredentialStore(app.state.user_store, settings.secret_key)
    app.state.guard = build_guard(settings, app.state.credentials, build_email_dispatcher(settings))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.purge_task
    app.state.user_store.close()
    logger.info("StepGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="StepGate API",
    description="Three-step sign-in: password, emailed code, passkey.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps each add_middleware() call around everything registered
# before it, so the last one registered is the outermost. Registered here
# innermost-first so a request meets TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().origin],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
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

_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidOrExpiredCode: 400,
    InvalidOrExpiredChallenge: 400,
    UnknownPasskey: 400,
    AuthLocked: 429,
    RateLimited: 429,
}


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth taxonomy onto HTTP. Anything not listed is a 401.

    Lockout-class errors carry Retry-After so clients know when to come back.
    """
    status_code = _AUTH_ERROR_STATUS.get(type(exc), 401)
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=str(exc))).model_dump(),
    )
    if isinstance(exc, (AuthLocked, RateLimited)):
        response.headers["Retry-After"] = str(exc.retry_after_seconds())
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(EmailDeliveryError)
async def email_error_handler(request: Request, exc: EmailDeliveryError) -> JSONResponse:
    """The code was stored but could not be sent. The client may ask again."""
    logger.error("Verification email delivery failed: %s", exc)
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(
            error=ErrorDetail(
                code="email_delivery_failed",
                message="The verification code could not be sent. Please try again.",
            )
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded.

    Plain def: SlowAPIMiddleware calls this handler synchronously.
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

    The detail lists field locations and messages only; echoing the submitted
    input would put passwords into the response.
    """
    fields = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=fields,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
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

    The raw exception is written to the log only, never to the response body.
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
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the user database answers."""
    try:
        request.app.state.user_store.has_users()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: user database unavailable")
        database = "error"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
