"""Custom exception hierarchy for the gateway.

Every error a caller can see carries a stable ``code`` and an HTTP
``status_code``; the API layer renders them without inspecting types.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class GatewayBaseError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}


# ── Store / Infrastructure ───────────────────────────────────────

class StoreError(GatewayBaseError):
    """The persistent store failed (connection, constraint, timeout)."""


class GenerationError(GatewayBaseError):
    """The external content generator failed or timed out."""


# ── Caller-visible errors ────────────────────────────────────────

class ServiceError(GatewayBaseError):
    """An error with a stable code, rendered as ``{"error", "code"}``."""

    status_code: int = 500
    default_code: str = "SERVER_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials."""

    status_code = 401
    default_code = "MISSING_AUTH"


class AuthorizationError(ServiceError):
    """Valid identity, insufficient rights or quota."""

    status_code = 403
    default_code = "INSUFFICIENT_PERMISSIONS"


class NotFoundError(ServiceError):
    """Referenced license, site or organization does not exist."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Domain rule violation: site cap, cross-organization binding."""

    status_code = 403
    default_code = "CONFLICT"


class PaymentError(ServiceError):
    """Credit purchase or spend could not be applied."""

    status_code = 402
    default_code = "INSUFFICIENT_CREDITS"


class InfrastructureError(ServiceError):
    """Store or network failure. Safe for the caller to retry."""

    status_code = 500
    default_code = "SERVER_ERROR"


@contextmanager
def map_store_errors(code: str, message: str = "Internal store error") -> Iterator[None]:
    """Translate ``StoreError`` raised inside the block into a coded 500."""
    try:
        yield
    except StoreError as exc:
        raise InfrastructureError(message, code=code, context=exc.context) from exc
