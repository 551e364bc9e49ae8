"""Abstract base classes — the store and every external collaborator implement these."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Any

from src.core.types import (
    ActivationRequest,
    ActivationResult,
    BucketRef,
    CheckoutSession,
    CreditHolder,
    CreditTransaction,
    GenerationResult,
    License,
    Membership,
    Organization,
    QuotaBucket,
    Site,
    SubscriptionStatus,
    UsageLog,
    User,
)


class BaseStore(ABC):
    """Persistent store for identities, organizations, licenses, sites and ledgers.

    Every method is a single unit of work. Methods documented as atomic
    must not interleave with a concurrent call on the same key, whatever
    the number of processes sharing the backend.
    """

    # ── Users & memberships ──────────────────────────────────────

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> User | None: ...

    @abstractmethod
    async def get_or_create_user(self, email: str) -> User:
        """Atomic on the lower-cased email."""
        ...

    @abstractmethod
    async def bump_jwt_version(self, user_id: str) -> int:
        """Invalidate every outstanding token of the user; returns the new version."""
        ...

    @abstractmethod
    async def list_memberships(self, user_id: str) -> list[Membership]:
        """Memberships of a user, owner first, then admin, then member."""
        ...

    @abstractmethod
    async def list_members(self, organization_id: str) -> list[Membership]: ...

    @abstractmethod
    async def get_membership(self, organization_id: str, user_id: str) -> Membership | None: ...

    @abstractmethod
    async def add_membership(self, membership: Membership) -> bool:
        """Insert unless ``(organization_id, user_id)`` exists. Returns True if inserted."""
        ...

    # ── Organizations & licenses ─────────────────────────────────

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Organization | None: ...

    @abstractmethod
    async def find_organization_by_key(self, license_key: str) -> Organization | None: ...

    @abstractmethod
    async def insert_organization(self, organization: Organization) -> Organization: ...

    @abstractmethod
    async def insert_license(self, license: License) -> License: ...

    @abstractmethod
    async def find_license_by_key(self, license_key: str) -> License | None: ...

    @abstractmethod
    async def mark_license_attached(
        self,
        license_key: str,
        site_hash: str,
        site_url: str | None,
        install_id: str | None,
    ) -> License | None: ...

    # ── Sites ────────────────────────────────────────────────────

    @abstractmethod
    async def get_site(self, site_hash: str) -> Site | None: ...

    @abstractmethod
    async def get_site_by_id(self, site_id: str) -> Site | None: ...

    @abstractmethod
    async def get_or_create_site(self, template: Site) -> tuple[Site, bool]:
        """Atomic upsert on ``site_hash``.

        Inserts ``template`` when absent. When present, refreshes
        ``last_seen`` and replaces ``site_url`` only if the template
        carries a non-empty, different URL. Returns ``(site, created)``.
        """
        ...

    @abstractmethod
    async def list_active_sites(
        self,
        organization_id: str | None,
        license_key: str | None,
    ) -> list[Site]:
        """Active sites in an organization, or bound to an organization-less license."""
        ...

    @abstractmethod
    async def activate_site(self, request: ActivationRequest) -> ActivationResult:
        """Atomic check-and-upsert on ``site_hash`` serialized per license scope.

        Rejections (conflict, limit) leave the store untouched.
        """
        ...

    @abstractmethod
    async def set_site_active(self, site_id: str, active: bool) -> Site | None: ...

    @abstractmethod
    async def attach_free_license(
        self,
        site_template: Site,
        license_template: License,
    ) -> tuple[Site, License | None, bool]:
        """Atomically bind ``license_template`` to the site unless it already has a license.

        Returns ``(site, license, created)``. When the site was already
        bound, ``license`` is the existing stand-alone license, or None if
        the site is bound through an organization key.
        """
        ...

    # ── Token buckets ────────────────────────────────────────────

    @abstractmethod
    async def get_bucket(self, ref: BucketRef) -> QuotaBucket | None: ...

    @abstractmethod
    async def reset_bucket(
        self,
        ref: BucketRef,
        stale_reset_date: date,
        new_reset_date: date,
    ) -> QuotaBucket | None:
        """Compare-and-swap reset. Returns None if ``stale_reset_date`` is no longer stored."""
        ...

    @abstractmethod
    async def deduct_bucket(
        self,
        ref: BucketRef,
        amount: int,
        require_remaining: bool = False,
    ) -> QuotaBucket | None:
        """Atomic ``used += amount``, ``remaining = max(0, limit - used)``.

        With ``require_remaining`` the write only happens while
        ``remaining > 0``; returns None otherwise or when the bucket is absent.
        """
        ...

    @abstractmethod
    async def insert_usage_log(self, entry: UsageLog) -> None: ...

    # ── Credits ──────────────────────────────────────────────────

    @abstractmethod
    async def get_credit_balance(self, holder: CreditHolder) -> int: ...

    @abstractmethod
    async def spend_credits(
        self,
        holder: CreditHolder,
        amount: int,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction | None:
        """Atomic decrement with floor. Returns None when the balance is short."""
        ...

    @abstractmethod
    async def apply_credit_purchase(
        self,
        holder: CreditHolder,
        amount: int,
        reference: str,
    ) -> tuple[CreditTransaction, bool]:
        """Apply a purchase at most once per ``reference``.

        Returns ``(transaction, applied)``; ``applied`` is False when the
        reference had already been recorded and the original row is returned.
        """
        ...

    @abstractmethod
    async def list_credit_transactions(
        self,
        holder: CreditHolder,
        offset: int,
        limit: int,
    ) -> tuple[list[CreditTransaction], int]: ...


class SubscriptionProvider(ABC):
    """Looks up the paid subscription attached to an email."""

    @abstractmethod
    async def get_subscription_status(self, email: str) -> SubscriptionStatus: ...


class CheckoutVerifier(ABC):
    """Retrieves a completed checkout session for credit confirmation."""

    @abstractmethod
    async def retrieve_checkout(self, session_id: str) -> CheckoutSession: ...


class ContentGenerator(ABC):
    """Opaque AI generation call."""

    @abstractmethod
    async def generate(self, prompt: str) -> GenerationResult:
        """Raise ``GenerationError`` on failure or timeout."""
        ...


class InstallationRecorder(ABC):
    """Fire-and-forget record of a plugin install."""

    @abstractmethod
    async def record_installation(
        self,
        site: Site,
        organization_id: str | None,
        license_key: str | None,
    ) -> None: ...


class EmailSender(ABC):
    """Fire-and-forget outbound email."""

    @abstractmethod
    async def send_license_email(self, email: str, license_key: str, plan: str) -> None: ...
