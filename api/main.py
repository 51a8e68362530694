"""
api/main.py -- FastAPI application entry point for accountd.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for the configured browser origins
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the whole object graph once (settings -> store -> service ->
gate) and hangs it on app.state; route handlers and the authorization gate
read it from there. Nothing is a module-level singleton except the settings
cache and the limiter.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorItem, ErrorResponse, HealthResponse
from api.routes.v1.users import router as users_router
from auth.dependencies import AuthorizationGate
from auth.errors import AuthError
from auth.identity import build_verifiers
from auth.service import build_auth_service
from auth.store import UserStore
from core.config import get_settings
from notify.email import EmailSender

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accountd.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the application object graph on startup; dispose it on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    settings = get_settings()
    logger.info("accountd API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.auth_service = build_auth_service(
        settings,
        app.state.user_store,
        mailer=EmailSender.from_settings(settings),
        verifiers=build_verifiers(settings),
    )
    app.state.gate = AuthorizationGate(app.state.auth_service.codec, app.state.user_store)
    logger.info("Auth initialized (users=%d)", app.state.user_store.count_users())

    yield

    app.state.user_store.close()
    logger.info("accountd API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="accountd API",
    description="Account authentication, sessions, and user management.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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

app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves through the same ErrorResponse envelope:
#   {success: false, message, code, errors?: [{field, msg}]}
# with the HTTP status carrying the error kind.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, code: str, errors: list[ErrorItem] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, code=code, errors=errors or None).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth.errors taxonomy onto the envelope.

    StoreUnavailable (500) is logged with its cause; the client only sees the
    generic message the exception carries.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s", type(exc).__name__, request.method, request.url.path, exc_info=exc)
    else:
        logger.info("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    errors = [ErrorItem(field=e.get("field", ""), msg=e.get("message", "")) for e in exc.errors]
    return _error(exc.status_code, exc.message, exc.code, errors)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests.", "RATE_LIMITED")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, msg} item per failing field."""
    errors = [
        ErrorItem(field=str(err["loc"][-1]) if err.get("loc") else "", msg=err.get("msg", "Invalid value."))
        for err in exc.errors()
    ]
    return _error(400, "Validation failed.", "VALIDATION_ERROR", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods, and any stray HTTPException."""
    return _error(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "An unexpected error occurred.", "INTERNAL_ERROR")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
