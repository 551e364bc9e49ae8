"""System-wide shared types — the single source of truth for all data structures."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Union

from src.core.constants import (
    ATTACH_MANUAL,
    DEFAULT_SERVICE,
    HEADER_LICENSE_KEY,
    HEADER_SITE_HASH,
    HEADER_SITE_URL,
    HEADER_WP_USER_ID,
    HEADER_WP_USER_NAME,
    ROLE_RANK,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────

class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    AGENCY = "agency"

    @classmethod
    def parse(cls, value: str | None) -> "Plan":
        """Unknown or empty plan strings degrade to FREE."""
        try:
            return cls(value or cls.FREE.value)
        except ValueError:
            return cls.FREE


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self.value]


class AuthMethod(str, Enum):
    JWT = "jwt"
    LICENSE = "license"
    SITE_HASH = "site-hash"
    NONE = "none"


class BucketKind(str, Enum):
    SITE = "site"
    ORGANIZATION = "organization"
    LICENSE = "license"


class ActivationOutcome(str, Enum):
    CREATED = "created"
    REACTIVATED = "reactivated"
    REFRESHED = "refreshed"
    LIMIT_REACHED = "limit_reached"
    CONFLICT = "conflict"

    @property
    def succeeded(self) -> bool:
        return self in (
            ActivationOutcome.CREATED,
            ActivationOutcome.REACTIVATED,
            ActivationOutcome.REFRESHED,
        )


class CreditHolderKind(str, Enum):
    USER = "user"
    ORGANIZATION = "organization"


class ChargeKind(str, Enum):
    """What a granted request will consume once generation succeeds."""

    SUBSCRIPTION = "subscription"
    TOKENS = "tokens"
    CREDIT = "credit"


# ── Persistent Records ───────────────────────────────────────────

@dataclass
class User:
    """A signed-in identity. Email is stored lower-case."""

    id: str
    email: str
    jwt_version: int = 0
    credits_balance: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Organization:
    id: str
    name: str
    license_key: str
    plan: Plan
    max_sites: int
    token_limit: int
    tokens_used: int
    tokens_remaining: int
    reset_date: date
    credits: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Membership:
    organization_id: str
    user_id: str
    role: Role


@dataclass
class License:
    """Stand-alone license, typically a free license bound 1:1 to a site."""

    id: str
    license_key: str
    plan: Plan
    token_limit: int
    tokens_used: int
    tokens_remaining: int
    reset_date: date
    service: str = DEFAULT_SERVICE
    site_hash: str | None = None
    site_url: str | None = None
    install_id: str | None = None
    organization_id: str | None = None
    user_id: str | None = None
    auto_attach_status: str = ATTACH_MANUAL
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Site:
    """A single WordPress install, identified by a stable hash."""

    id: str
    site_hash: str
    plan: Plan
    token_limit: int
    tokens_used: int
    tokens_remaining: int
    reset_date: date
    site_url: str | None = None
    install_id: str | None = None
    organization_id: str | None = None
    license_key: str | None = None
    is_active: bool = True
    last_seen: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageLog:
    id: str
    tokens: int
    bucket_kind: BucketKind | None
    site_hash: str | None = None
    organization_id: str | None = None
    user_id: str | None = None
    wp_user_id: str | None = None
    wp_user_name: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CreditHolder:
    kind: CreditHolderKind
    id: str


@dataclass
class CreditTransaction:
    id: str
    holder: CreditHolder
    delta: int
    kind: str  # "purchase" | "spend"
    balance_after: int
    reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


# ── Quota ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BucketRef:
    """Points at the token bucket of a site, organization or license."""

    kind: BucketKind
    key: str


@dataclass
class QuotaBucket:
    """Snapshot of a token bucket as stored."""

    ref: BucketRef
    plan: Plan
    token_limit: int
    tokens_used: int
    tokens_remaining: int
    reset_date: date


@dataclass
class QuotaUsage:
    used: int
    limit: int
    remaining: int
    plan: Plan
    reset_date: date

    @property
    def reset_timestamp(self) -> int:
        start = datetime.combine(self.reset_date, time.min, tzinfo=timezone.utc)
        return int(start.timestamp())

    @classmethod
    def from_bucket(cls, bucket: QuotaBucket) -> "QuotaUsage":
        return cls(
            used=bucket.tokens_used,
            limit=bucket.token_limit,
            remaining=bucket.tokens_remaining,
            plan=bucket.plan,
            reset_date=bucket.reset_date,
        )


# ── Credentials & Access Context ─────────────────────────────────

def _first(*values: Any) -> str | None:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


@dataclass(frozen=True)
class Credentials:
    """Raw credentials pulled from one request. Headers take precedence over body."""

    bearer_token: str | None = None
    license_key: str | None = None
    site_hash: str | None = None
    site_url: str | None = None
    wp_user_id: str | None = None
    wp_user_name: str | None = None

    @classmethod
    def from_request(
        cls,
        headers: Mapping[str, str],
        body: Mapping[str, Any] | None = None,
    ) -> "Credentials":
        body = body or {}
        token: str | None = None
        auth_header = headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            token = _first(auth_header[7:])
        return cls(
            bearer_token=token,
            license_key=_first(headers.get(HEADER_LICENSE_KEY), body.get("licenseKey")),
            site_hash=_first(headers.get(HEADER_SITE_HASH), body.get("siteHash")),
            site_url=_first(headers.get(HEADER_SITE_URL), body.get("siteUrl")),
            wp_user_id=_first(headers.get(HEADER_WP_USER_ID)),
            wp_user_name=_first(headers.get(HEADER_WP_USER_NAME)),
        )


@dataclass(frozen=True)
class JWTAccess:
    user: User
    organization: Organization | None = None
    site: Site | None = None
    auth_method: AuthMethod = AuthMethod.JWT


@dataclass(frozen=True)
class LicenseAccess:
    organization: Organization | None = None
    license: License | None = None
    site: Site | None = None
    auth_method: AuthMethod = AuthMethod.LICENSE


@dataclass(frozen=True)
class SiteHashAccess:
    site: Site
    usage: QuotaUsage
    organization: Organization | None = None
    license: License | None = None
    auth_method: AuthMethod = AuthMethod.SITE_HASH


@dataclass(frozen=True)
class Unauthenticated:
    auth_method: AuthMethod = AuthMethod.NONE


AccessContext = Union[JWTAccess, LicenseAccess, SiteHashAccess, Unauthenticated]


# ── Decisions & Results ──────────────────────────────────────────

@dataclass(frozen=True)
class SubscriptionStatus:
    plan: str = "free"
    status: str = "none"

    @property
    def is_paid(self) -> bool:
        return self.plan not in ("", "free")


@dataclass
class AccessVerdict:
    allowed: bool
    charge: ChargeKind | None = None
    reason: str | None = None
    message: str | None = None
    bucket: BucketRef | None = None
    usage: QuotaUsage | None = None
    credit_holder: CreditHolder | None = None
    credits_balance: int = 0
    subscription: SubscriptionStatus | None = None


@dataclass
class ChargeReceipt:
    """What was actually consumed after a successful generation."""

    charge: ChargeKind | None
    tokens: int = 0
    credits: int = 0
    usage: QuotaUsage | None = None
    credits_balance: int | None = None


@dataclass(frozen=True)
class ActivationRequest:
    site_hash: str
    license_key: str
    plan: Plan
    token_limit: int
    max_sites: int
    organization_id: str | None = None
    site_url: str | None = None
    install_id: str | None = None


@dataclass
class ActivationResult:
    outcome: ActivationOutcome
    site: Site | None
    active_site_count: int
    organization: Organization | None = None
    license: License | None = None


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    paid: bool
    email: str | None
    credits: int


@dataclass
class CreditPurchaseResult:
    transaction: CreditTransaction
    balance: int
    already_applied: bool = False


@dataclass
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
