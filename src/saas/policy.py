"""Pure quota and licensing rules shared by the managers and both stores.

Nothing here touches I/O, so every rule can be checked in isolation and
the SQL and in-memory stores evaluate activations identically.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import date, datetime, time, timezone

from src.core.constants import (
    DEFAULT_SERVICE,
    MANAGER_ROLES,
    PLAN_MAX_SITES,
    SERVICE_TOKEN_LIMITS,
)
from src.core.types import (
    ActivationOutcome,
    ActivationRequest,
    Membership,
    Plan,
    Site,
)


# ── Reset window ─────────────────────────────────────────────────

def next_reset_date(now: datetime) -> date:
    """First day of the calendar month after ``now``."""
    if now.month == 12:
        return date(now.year + 1, 1, 1)
    return date(now.year, now.month + 1, 1)


def reset_due(reset_date: date, now: datetime) -> bool:
    """A bucket resets once ``now`` is past midnight UTC of its reset date."""
    boundary = datetime.combine(reset_date, time.min, tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now > boundary


def remaining_tokens(token_limit: int, tokens_used: int) -> int:
    return max(0, token_limit - tokens_used)


# ── Plan defaults ────────────────────────────────────────────────

def token_limit_for(plan: Plan, service: str = DEFAULT_SERVICE) -> int:
    limits = SERVICE_TOKEN_LIMITS.get(service, SERVICE_TOKEN_LIMITS[DEFAULT_SERVICE])
    return limits.get(plan.value, limits[Plan.FREE.value])


def max_sites_for(plan: Plan) -> int:
    return PLAN_MAX_SITES.get(plan.value, 1)


def new_license_key() -> str:
    """Random UUID4 license key."""
    return str(uuid.uuid4())


# ── Roles ────────────────────────────────────────────────────────

def primary_membership(memberships: Iterable[Membership]) -> Membership | None:
    """The membership with the highest role: owner, then admin, then member."""
    ranked = sorted(memberships, key=lambda m: m.role.rank)
    return ranked[0] if ranked else None


def can_manage(membership: Membership | None) -> bool:
    return membership is not None and membership.role.value in MANAGER_ROLES


# ── Activation ───────────────────────────────────────────────────

def site_in_scope(site: Site, organization_id: str | None, license_key: str | None) -> bool:
    """Whether a site counts against the cap of an organization or stand-alone license."""
    if organization_id is not None:
        return site.organization_id == organization_id
    return site.organization_id is None and site.license_key == license_key


def evaluate_activation(
    existing: Site | None,
    request: ActivationRequest,
    active_in_scope: int,
) -> ActivationOutcome:
    """Decide what an activation may do, given the current state of the store.

    ``active_in_scope`` is the number of active sites in the request's
    scope, including ``existing`` if it is one of them. A site that is
    already active in the same scope is refreshed without consuming a
    slot; any other activation needs a free slot.
    """
    if existing is not None and existing.organization_id is not None:
        if existing.organization_id != request.organization_id:
            return ActivationOutcome.CONFLICT

    counted = (
        existing is not None
        and existing.is_active
        and site_in_scope(existing, request.organization_id, request.license_key)
    )
    if counted:
        return ActivationOutcome.REFRESHED
    if active_in_scope >= request.max_sites:
        return ActivationOutcome.LIMIT_REACHED
    if existing is None:
        return ActivationOutcome.CREATED
    return ActivationOutcome.REACTIVATED


def apply_activation(
    existing: Site | None,
    request: ActivationRequest,
    site_id: str,
    now: datetime,
) -> Site:
    """Build the site row an accepted activation writes."""
    if existing is None:
        return Site(
            id=site_id,
            site_hash=request.site_hash,
            plan=request.plan,
            token_limit=request.token_limit,
            tokens_used=0,
            tokens_remaining=request.token_limit,
            reset_date=next_reset_date(now),
            site_url=request.site_url,
            install_id=request.install_id,
            organization_id=request.organization_id,
            license_key=request.license_key,
            is_active=True,
            last_seen=now,
            created_at=now,
        )
    return Site(
        id=existing.id,
        site_hash=existing.site_hash,
        plan=request.plan,
        token_limit=request.token_limit,
        tokens_used=existing.tokens_used,
        tokens_remaining=remaining_tokens(request.token_limit, existing.tokens_used),
        reset_date=existing.reset_date,
        site_url=request.site_url or existing.site_url,
        install_id=request.install_id or existing.install_id,
        organization_id=request.organization_id,
        license_key=request.license_key,
        is_active=True,
        last_seen=now,
        created_at=existing.created_at,
    )


def new_free_site(site_id: str, site_hash: str, site_url: str | None, now: datetime) -> Site:
    limit = token_limit_for(Plan.FREE)
    return Site(
        id=site_id,
        site_hash=site_hash,
        plan=Plan.FREE,
        token_limit=limit,
        tokens_used=0,
        tokens_remaining=limit,
        reset_date=next_reset_date(now),
        site_url=site_url,
        last_seen=now,
        created_at=now,
    )
