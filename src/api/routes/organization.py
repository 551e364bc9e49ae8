"""Organization membership endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import get_site_manager, require_user
from src.api.models.schemas import InviteRequest, InviteResponse
from src.core.types import Role, User
from src.saas.sites import SiteLifecycleManager

router = APIRouter(prefix="/organization", tags=["organization"])


@router.post("/{organization_id}/invite", response_model=InviteResponse)
async def invite_member(
    organization_id: str,
    body: InviteRequest,
    user: User = Depends(require_user),
    sites: SiteLifecycleManager = Depends(get_site_manager),
) -> InviteResponse:
    membership = await sites.invite_member(
        organization_id, requester=user, email=body.email, role=Role(body.role)
    )
    return InviteResponse(
        organization_id=membership.organization_id,
        user_id=membership.user_id,
        role=membership.role.value,
    )
