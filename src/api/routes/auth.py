"""Plugin sign-in and token lifecycle routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import get_identity, require_user
from src.api.models.schemas import (
    MembershipOut,
    MeResponse,
    PluginInitRequest,
    RefreshTokenRequest,
    RevokeResponse,
    TokenResponse,
)
from src.core.types import User
from src.saas.identity import IdentityManager

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/plugin-init", response_model=TokenResponse)
async def plugin_init(
    body: PluginInitRequest,
    identity: IdentityManager = Depends(get_identity),
) -> TokenResponse:
    """First contact from the plugin: create the identity if needed and issue a token."""
    user, token = await identity.sign_in(body.email)
    return TokenResponse(token=token, user_id=user.id, email=user.email)


@router.post("/refresh-token", response_model=TokenResponse)
async def refresh_token(
    body: RefreshTokenRequest,
    identity: IdentityManager = Depends(get_identity),
) -> TokenResponse:
    user, token = await identity.refresh(body.token)
    return TokenResponse(token=token, user_id=user.id, email=user.email)


@router.get("/me", response_model=MeResponse)
async def me(
    user: User = Depends(require_user),
    identity: IdentityManager = Depends(get_identity),
) -> MeResponse:
    memberships = await identity.memberships(user)
    return MeResponse(
        user_id=user.id,
        email=user.email,
        credits_balance=user.credits_balance,
        memberships=[
            MembershipOut(organization_id=m.organization_id, role=m.role.value)
            for m in memberships
        ],
    )


@router.post("/logout-all", response_model=RevokeResponse)
async def logout_all(
    user: User = Depends(require_user),
    identity: IdentityManager = Depends(get_identity),
) -> RevokeResponse:
    """Revoke every token issued to the caller, including the one used here."""
    return RevokeResponse(jwt_version=await identity.revoke(user))
