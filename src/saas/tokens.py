"""Signed identity tokens (HS256) carrying the user id, email and token version."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from src.core.logging import get_logger

log = get_logger(__name__)


class JWTManager:
    """Minimal HS256 JWT issuer and verifier.

    The ``ver`` claim mirrors ``User.jwt_version``; bumping the stored
    version revokes every token issued before it.
    """

    def __init__(self, secret: str, expiry_hours: int = 168) -> None:
        self._secret = secret
        self._expiry_hours = expiry_hours

    def create_token(
        self,
        user_id: str,
        email: str,
        jwt_version: int = 0,
        extra_claims: dict[str, Any] | None = None,
    ) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "sub": user_id,
            "email": email,
            "ver": jwt_version,
            "iat": now,
            "exp": now + self._expiry_hours * 3600,
        }
        if extra_claims:
            payload.update(extra_claims)

        header = self._b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
        body = self._b64url_encode(json.dumps(payload).encode())
        return f"{header}.{body}.{self._sign(f'{header}.{body}')}"

    def verify_token(self, token: str) -> dict[str, Any] | None:
        """Return the payload of a well-signed, unexpired token, else None."""
        parts = token.split(".")
        if len(parts) != 3:
            log.debug("jwt_malformed")
            return None

        header_b64, body_b64, sig = parts
        expected = self._sign(f"{header_b64}.{body_b64}")
        if not hmac.compare_digest(sig.encode(), expected.encode()):
            log.warning("jwt_invalid_signature")
            return None

        try:
            payload = json.loads(self._b64url_decode(body_b64))
        except (json.JSONDecodeError, ValueError):
            log.warning("jwt_decode_error")
            return None

        if not isinstance(payload, dict) or not payload.get("sub"):
            log.warning("jwt_missing_subject")
            return None

        if int(time.time()) > int(payload.get("exp", 0)):
            log.debug("jwt_expired", sub=payload.get("sub"))
            return None

        return payload

    def _sign(self, message: str) -> str:
        digest = hmac.new(self._secret.encode(), message.encode(), hashlib.sha256).digest()
        return self._b64url_encode(digest)

    @staticmethod
    def _b64url_encode(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _b64url_decode(s: str) -> bytes:
        padding = 4 - len(s) % 4
        if padding != 4:
            s += "=" * padding
        return base64.urlsafe_b64decode(s)
