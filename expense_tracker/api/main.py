"""
Expense Tracker Auth API - Main Application.

FastAPI service for invitations, password setup, MFA enrollment and login.

Usage:
    # Development
    uvicorn expense_tracker.api.main:app --reload --port 8000

    # Production
    uvicorn expense_tracker.api.main:app --host 0.0.0.0 --port 8000 --workers 4
"""
import os
import time
import uuid
import logging
from http import HTTPStatus
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from .routes import auth_router, health_router
from .deps import get_db, get_settings
from ..auth.errors import AuthError

API_TITLE = "Expense Tracker Auth API"
API_VERSION = os.getenv("APP_VERSION", "1.0.0")
API_DESCRIPTION = """
**Account onboarding and multi-factor authentication for Expense Tracker**

## Onboarding

1. An admin invites: `POST /api/v1/users/invite`
2. The invitee sets a password: `POST /api/v1/users/setup-password`
3. Picks TOTP or a passkey: `POST /api/v1/users/select-mfa-method`
4. Proves it: `POST /api/v1/users/verify-mfa-setup`

## Login

1. `POST /api/v1/users/login` returns a token (admins without MFA) or a `challengeId`
2. `POST /api/v1/users/verify-login-mfa` with a TOTP code or passkey assertion

Use the token as `Authorization: Bearer <token>`. Tokens are valid for one hour.
"""

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


class RequestIdFilter(logging.Filter):
    """Default request_id to '-' for records logged outside a request."""

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        return True


def configure_logging() -> None:
    """
    Root logging with a request id column.

    LOG_LEVEL and LOG_FORMAT override the defaults. The filter goes on the
    handlers because records propagated from child loggers skip root filters.
    """
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format=os.getenv(
            "LOG_FORMAT",
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
        ),
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema on startup; a missing database only logs a warning."""
    logger.info(f"Starting {API_TITLE} v{API_VERSION}")

    try:
        app.dependency_overrides.get(get_db, get_db)().init_schema()
        logger.info("Database schema initialized")
    except SQLAlchemyError as e:
        logger.warning(f"Database initialization skipped: {e}")

    yield

    logger.info(f"Shutting down {API_TITLE}")


def _error_body(status_code: int, detail, code: str) -> dict:
    return {"error": HTTPStatus(status_code).phrase, "detail": detail, "code": code}


def _install_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(get_settings().cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def track_request(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request failed: {e}", exc_info=True, extra={"request_id": request_id})
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"
        response.headers.update(SECURITY_HEADERS)

        if not request.url.path.startswith("/health"):
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)",
                extra={"request_id": request_id},
            )
        return response


def _install_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, exc.message, exc.code),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{' -> '.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(status.HTTP_422_UNPROCESSABLE_ENTITY, problems, "VALIDATION_ERROR"),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"request_id": request_id})
        body = _error_body(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(exc) if os.getenv("APP_ENV") == "development" else None,
            "INTERNAL_ERROR",
        )
        body["request_id"] = request_id
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )
    _install_middleware(app)
    _install_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(auth_router)

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": API_TITLE, "version": API_VERSION, "docs": "/docs", "health": "/health"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("expense_tracker.api.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
