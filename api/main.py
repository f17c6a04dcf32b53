"""
api/main.py -- FastAPI application entry point for gpt-user-auth.

Exposes the JSON account API (sign-up, profile update, test email) and
health check. The OAuth2 web routes (/authorize, /token, /logout) are
mounted by asgi.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter

Lifespan builds every shared resource once (settings, database, stores,
session manager, email sender and renderer) and hangs it on app.state;
shutdown disposes of the engine.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.account import router as account_router
from auth.sessions import SessionManager
from auth.store import UserStore
from core.config import get_settings
from core.db import Database
from core.emails import EmailRenderer, build_email_sender
from core.limiter import limiter
from oauth2.store import OAuth2Store

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gptauth.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the stores are imported above, so their tables are
    registered on core.db.metadata before Database() runs create_all().
    """
    settings = get_settings()
    logger.info("gpt-user-auth starting up")
    app.state.settings = settings
    app.state.db = Database(settings.db_url)
    app.state.user_store = UserStore()
    app.state.oauth2_store = OAuth2Store()
    app.state.sessions = SessionManager(app.state.user_store, settings)
    app.state.email_sender = build_email_sender(settings)
    app.state.email_renderer = EmailRenderer(default_locale=settings.default_locale)
    logger.info("Database ready (%s)", settings.db_url.split("?")[0])

    yield

    app.state.db.close()
    logger.info("gpt-user-auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="gpt-user-auth",
    description="User registration, passphrase login and OAuth2 authorization-code grant for chat plugins.",
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

app.include_router(account_router, prefix="/api/v1", tags=["Account"])
# Web router (OAuth2 endpoints) is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON API errors share the ErrorResponse envelope. POST /token builds its own
# RFC 6749 bodies and only reaches this section when it is rate limited.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Login attempts on /authorize and /token land here."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, get_remote_address(request))
    if request.url.path == "/token":
        response = JSONResponse(
            status_code=429,
            content={"error": "temporarily_unavailable", "error_description": "Too many requests."},
        )
    else:
        response = _error(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Dict details (see auth/dependencies.py) become the error field as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; the client only sees a generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness, version and database reachability. Not rate limited."""
    db_ok = request.app.state.db.ping()
    if not db_ok:
        logger.warning("Health check: database unreachable")
    return HealthResponse(version=VERSION, database="ok" if db_ok else "unavailable")
