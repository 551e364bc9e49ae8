"""Pydantic V2 request/response schemas for the gateway API.

Request bodies accept the plugin's camelCase keys; responses use the
same casing so the WordPress client can read them unchanged.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from src.core.types import QuotaUsage, Site


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Health ───────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    store: str


# ── Shared ───────────────────────────────────────────────────────

class UsageOut(_CamelModel):
    used: int
    limit: int
    remaining: int
    plan: str
    reset_date: str = Field(serialization_alias="resetDate")
    reset_timestamp: int = Field(serialization_alias="resetTimestamp")

    @classmethod
    def from_usage(cls, usage: QuotaUsage) -> "UsageOut":
        return cls(
            used=usage.used,
            limit=usage.limit,
            remaining=usage.remaining,
            plan=usage.plan.value,
            reset_date=usage.reset_date.isoformat(),
            reset_timestamp=usage.reset_timestamp,
        )


class SiteOut(_CamelModel):
    id: str
    site_hash: str = Field(serialization_alias="siteHash")
    site_url: str | None = Field(default=None, serialization_alias="siteUrl")
    is_active: bool = Field(serialization_alias="isActive")
    plan: str
    last_seen: datetime | None = Field(default=None, serialization_alias="lastSeen")

    @classmethod
    def from_site(cls, site: Site) -> "SiteOut":
        return cls(
            id=site.id,
            site_hash=site.site_hash,
            site_url=site.site_url,
            is_active=site.is_active,
            plan=site.plan.value,
            last_seen=site.last_seen,
        )


# ── Generate ─────────────────────────────────────────────────────

class GenerateRequest(_CamelModel):
    prompt: str = Field(..., min_length=1, max_length=8000)
    license_key: str | None = Field(default=None, alias="licenseKey")
    site_hash: str | None = Field(default=None, alias="siteHash")
    site_url: str | None = Field(default=None, alias="siteUrl")


class GenerateResponse(_CamelModel):
    success: bool = True
    text: str
    charge: str | None = None
    usage: UsageOut | None = None
    credits_balance: int | None = Field(default=None, serialization_alias="creditsBalance")


class UsageResponse(_CamelModel):
    success: bool = True
    auth_method: str = Field(serialization_alias="authMethod")
    usage: UsageOut | None = None
    credits_balance: int = Field(default=0, serialization_alias="creditsBalance")
    organization_id: str | None = Field(default=None, serialization_alias="organizationId")


# ── License ──────────────────────────────────────────────────────

class ActivateRequest(_CamelModel):
    license_key: str = Field(..., min_length=1, alias="licenseKey")
    site_hash: str = Field(..., min_length=1, alias="siteHash")
    site_url: str | None = Field(default=None, alias="siteUrl")
    install_id: str | None = Field(default=None, alias="installId")


class ActivateResponse(_CamelModel):
    success: bool = True
    outcome: str
    site: SiteOut
    organization_id: str | None = Field(default=None, serialization_alias="organizationId")
    plan: str
    max_sites: int = Field(serialization_alias="maxSites")
    active_sites: int = Field(serialization_alias="activeSites")


class DeactivateRequest(_CamelModel):
    site_id: str | None = Field(default=None, alias="siteId")
    site_hash: str | None = Field(default=None, alias="siteHash")


class DisconnectRequest(_CamelModel):
    license_key: str | None = Field(default=None, alias="licenseKey")
    site_hash: str | None = Field(default=None, alias="siteHash")


class SiteResponse(_CamelModel):
    success: bool = True
    site: SiteOut


class GenerateLicenseRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    plan: Literal["free", "pro", "agency"] = "free"
    max_sites: int | None = Field(default=None, ge=1, le=1000, alias="maxSites")
    token_limit: int | None = Field(default=None, ge=0, alias="tokenLimit")
    email: str | None = None
    service: str | None = None


class LicenseOut(_CamelModel):
    license_key: str = Field(serialization_alias="licenseKey")
    plan: str
    max_sites: int = Field(serialization_alias="maxSites")
    token_limit: int = Field(serialization_alias="tokenLimit")
    organization_id: str | None = Field(default=None, serialization_alias="organizationId")
    name: str | None = None


class GenerateLicenseResponse(_CamelModel):
    success: bool = True
    license: LicenseOut


class AutoAttachRequest(_CamelModel):
    license_key: str | None = Field(default=None, alias="licenseKey")
    site_hash: str | None = Field(default=None, alias="siteHash")
    site_url: str | None = Field(default=None, alias="siteUrl")
    install_id: str | None = Field(default=None, alias="installId")


class AutoAttachResponse(_CamelModel):
    success: bool = True
    created: bool
    license_key: str | None = Field(default=None, serialization_alias="licenseKey")
    plan: str
    organization_id: str | None = Field(default=None, serialization_alias="organizationId")
    site: SiteOut


class MemberOut(BaseModel):
    user_id: str = Field(serialization_alias="userId")
    email: str
    role: str


class LicenseInfoResponse(_CamelModel):
    success: bool = True
    license: LicenseOut
    usage: UsageOut | None = None
    sites: list[SiteOut] = Field(default_factory=list)
    members: list[MemberOut] = Field(default_factory=list)


# ── Credits ──────────────────────────────────────────────────────

class CreditsConfirmRequest(_CamelModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")


class CreditTransactionOut(_CamelModel):
    id: str
    delta: int
    kind: str
    balance_after: int = Field(serialization_alias="balanceAfter")
    reference: str | None = None
    created_at: datetime = Field(serialization_alias="createdAt")


class CreditsConfirmResponse(_CamelModel):
    success: bool = True
    balance: int
    already_applied: bool = Field(serialization_alias="alreadyApplied")
    transaction: CreditTransactionOut


class CreditsBalanceResponse(_CamelModel):
    success: bool = True
    balance: int


class CreditTransactionsResponse(_CamelModel):
    success: bool = True
    transactions: list[CreditTransactionOut]
    page: int
    limit: int
    total: int


# ── Organization ─────────────────────────────────────────────────

class InviteRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    role: Literal["admin", "member"] = "member"


class InviteResponse(_CamelModel):
    success: bool = True
    organization_id: str = Field(serialization_alias="organizationId")
    user_id: str = Field(serialization_alias="userId")
    role: str


# ── Auth ─────────────────────────────────────────────────────────

class PluginInitRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class RefreshTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class TokenResponse(_CamelModel):
    success: bool = True
    token: str
    user_id: str = Field(serialization_alias="userId")
    email: str


class MembershipOut(_CamelModel):
    organization_id: str = Field(serialization_alias="organizationId")
    role: str


class MeResponse(_CamelModel):
    user_id: str = Field(serialization_alias="userId")
    email: str
    credits_balance: int = Field(serialization_alias="creditsBalance")
    memberships: list[MembershipOut]


class RevokeResponse(_CamelModel):
    success: bool = True
    jwt_version: int = Field(serialization_alias="jwtVersion")
