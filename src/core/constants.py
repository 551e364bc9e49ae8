"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Services ─────────────────────────────────────────────────────
SERVICE_ALTTEXT = "alttext-ai"
SERVICE_SEO_META = "seo-ai-meta"
DEFAULT_SERVICE = SERVICE_ALTTEXT

# ── Plan Defaults ────────────────────────────────────────────────
PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_AGENCY = "agency"

# Monthly token allotment per service and plan
SERVICE_TOKEN_LIMITS: dict[str, dict[str, int]] = {
    SERVICE_ALTTEXT: {PLAN_FREE: 50, PLAN_PRO: 1000, PLAN_AGENCY: 10_000},
    SERVICE_SEO_META: {PLAN_FREE: 10, PLAN_PRO: 100, PLAN_AGENCY: 1000},
}

PLAN_MAX_SITES: dict[str, int] = {
    PLAN_FREE: 1,
    PLAN_PRO: 1,
    PLAN_AGENCY: 10,
}

# ── Subscription ─────────────────────────────────────────────────
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

# ── Roles (lower rank wins) ──────────────────────────────────────
ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
ROLE_RANK: dict[str, int] = {ROLE_OWNER: 0, ROLE_ADMIN: 1, ROLE_MEMBER: 2}
MANAGER_ROLES = frozenset({ROLE_OWNER, ROLE_ADMIN})

# ── Auto-attach status ───────────────────────────────────────────
ATTACH_MANUAL = "manual"
ATTACH_ATTACHED = "attached"

# ── Request Headers ──────────────────────────────────────────────
HEADER_LICENSE_KEY = "x-license-key"
HEADER_SITE_HASH = "x-site-hash"
HEADER_SITE_URL = "x-site-url"
HEADER_WP_USER_ID = "x-wp-user-id"
HEADER_WP_USER_NAME = "x-wp-user-name"
HEADER_ADMIN_SECRET = "x-admin-secret"

# ── Error Codes ──────────────────────────────────────────────────
MISSING_AUTH = "MISSING_AUTH"
INVALID_TOKEN = "INVALID_TOKEN"
LICENSE_NOT_FOUND = "LICENSE_NOT_FOUND"
LICENSE_SITE_MISMATCH = "LICENSE_SITE_MISMATCH"
LICENSE_ORG_MISMATCH = "LICENSE_ORG_MISMATCH"
SITE_LIMIT_REACHED = "SITE_LIMIT_REACHED"
SITE_NOT_FOUND = "SITE_NOT_FOUND"
ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"
SITE_DEACTIVATED = "SITE_DEACTIVATED"
INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
FORBIDDEN = "FORBIDDEN"
ALREADY_MEMBER = "ALREADY_MEMBER"
NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
PAYMENT_NOT_COMPLETED = "PAYMENT_NOT_COMPLETED"
VALIDATION_ERROR = "VALIDATION_ERROR"
GENERATION_ERROR = "GENERATION_ERROR"
AUTH_ERROR = "AUTH_ERROR"
FETCH_ERROR = "FETCH_ERROR"
DISCONNECT_ERROR = "DISCONNECT_ERROR"
ACTIVATION_ERROR = "ACTIVATION_ERROR"
CREDITS_ERROR = "CREDITS_ERROR"

DENIAL_MESSAGES: dict[str, str] = {
    NO_SUBSCRIPTION: "No active subscription found. Please subscribe to continue.",
    SUBSCRIPTION_INACTIVE: "Your subscription is inactive. Please renew to continue.",
    QUOTA_EXHAUSTED: "Monthly quota reached. Please upgrade or purchase credits.",
}
