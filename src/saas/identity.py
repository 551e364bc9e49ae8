"""Plugin identities: first sign-in, token refresh and revocation."""

from __future__ import annotations

from src.core.constants import AUTH_ERROR, FETCH_ERROR, INVALID_TOKEN
from src.core.exceptions import AuthenticationError, map_store_errors
from src.core.interfaces import BaseStore
from src.core.logging import get_logger
from src.core.types import Membership, User
from src.saas.tokens import JWTManager

log = get_logger(__name__)


class IdentityManager:
    """Issues tokens bound to ``User.jwt_version``.

    Bumping the version revokes every outstanding token for the user;
    refresh only works for a token carrying the current version.
    """

    def __init__(self, store: BaseStore, jwt: JWTManager) -> None:
        self._store = store
        self._jwt = jwt

    async def sign_in(self, email: str) -> tuple[User, str]:
        with map_store_errors(AUTH_ERROR, "Failed to create identity"):
            user = await self._store.get_or_create_user(email)
        log.info("identity_signed_in", user_id=user.id)
        return user, self._issue(user)

    async def refresh(self, token: str) -> tuple[User, str]:
        payload = self._jwt.verify_token(token)
        if payload is None:
            raise AuthenticationError("Invalid or expired token", code=INVALID_TOKEN)
        with map_store_errors(AUTH_ERROR, "Failed to refresh token"):
            user = await self._store.get_user(str(payload["sub"]))
        if user is None or int(payload.get("ver", 0)) != user.jwt_version:
            log.info("token_refresh_rejected", user_id=payload["sub"])
            raise AuthenticationError("Token has been revoked", code=INVALID_TOKEN)
        return user, self._issue(user)

    async def revoke(self, user: User) -> int:
        with map_store_errors(AUTH_ERROR, "Failed to revoke tokens"):
            version = await self._store.bump_jwt_version(user.id)
        log.info("tokens_revoked", user_id=user.id, jwt_version=version)
        return version

    async def memberships(self, user: User) -> list[Membership]:
        with map_store_errors(FETCH_ERROR, "Failed to fetch memberships"):
            return await self._store.list_memberships(user.id)

    def _issue(self, user: User) -> str:
        return self._jwt.create_token(user.id, user.email, user.jwt_version)
