"""JWT helpers and the error envelope for FastAPI."""

from __future__ import annotations

import hmac

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config.settings import get_settings
from src.core.constants import FORBIDDEN, GENERATION_ERROR, HEADER_ADMIN_SECRET, VALIDATION_ERROR
from src.core.exceptions import AuthorizationError, GenerationError, ServiceError, StoreError
from src.core.logging import get_logger
from src.core.types import User
from src.saas.tokens import JWTManager

log = get_logger(__name__)

_jwt_manager: JWTManager | None = None


def get_jwt_manager() -> JWTManager:
    """Lazy-init singleton JWTManager."""
    global _jwt_manager  # noqa: PLW0603
    if _jwt_manager is None:
        settings = get_settings()
        _jwt_manager = JWTManager(
            secret=settings.jwt_secret.get_secret_value(),
            expiry_hours=settings.jwt_expiry_hours,
        )
    return _jwt_manager


def create_jwt(user: User) -> str:
    """Issue a token bound to the user's current ``jwt_version``."""
    return get_jwt_manager().create_token(user.id, user.email, user.jwt_version)


def verify_jwt(token: str) -> dict[str, object] | None:
    return get_jwt_manager().verify_token(token)


def require_admin_secret(request: Request) -> None:
    """Guard for operator-only routes such as license generation."""
    expected = get_settings().admin_secret.get_secret_value()
    provided = request.headers.get(HEADER_ADMIN_SECRET, "")
    if not expected or not hmac.compare_digest(provided, expected):
        log.warning("admin_secret_rejected", path=request.url.path)
        raise AuthorizationError("Admin secret required", code=FORBIDDEN)


# ── Error envelope ───────────────────────────────────────────────

def error_body(message: str, code: str, **extra: object) -> dict[str, object]:
    return {"success": False, "error": message, "code": code, **extra}


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    extra = {
        key: value
        for key, value in exc.context.items()
        if isinstance(value, (str, int, float, bool)) or value is None
    }
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code, **extra))


async def _generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
    log.error("generation_error", path=request.url.path, error=exc.message)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=error_body("Content generation failed. Please try again.", GENERATION_ERROR),
    )


async def _store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    log.error("store_unavailable", path=request.url.path, error=exc.message)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Internal server error", "SERVER_ERROR"),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(message, VALIDATION_ERROR),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(GenerationError, _generation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StoreError, _store_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
