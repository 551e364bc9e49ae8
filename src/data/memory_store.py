"""In-process store for development and tests.

Every method completes without awaiting, so under a single event loop
each call is atomic, the same guarantee the SQL store gets from its
transactions. Records are copied on the way in and out.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Any, Union

from uuid_extensions import uuid7

from src.core.constants import ATTACH_ATTACHED
from src.core.interfaces import BaseStore
from src.core.logging import get_logger
from src.core.types import (
    ActivationOutcome,
    ActivationRequest,
    ActivationResult,
    BucketKind,
    BucketRef,
    CreditHolder,
    CreditHolderKind,
    CreditTransaction,
    License,
    Membership,
    Organization,
    QuotaBucket,
    Site,
    UsageLog,
    User,
    utcnow,
)
from src.saas.policy import (
    apply_activation,
    evaluate_activation,
    remaining_tokens,
    site_in_scope,
)

log = get_logger(__name__)

_Metered = Union[Site, Organization, License]


class InMemoryStore(BaseStore):
    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._email_index: dict[str, str] = {}  # email -> user_id
        self._organizations: dict[str, Organization] = {}
        self._members: dict[tuple[str, str], Membership] = {}
        self._licenses: dict[str, License] = {}  # license_key -> license
        self._sites: dict[str, Site] = {}  # site_hash -> site
        self._usage_logs: list[UsageLog] = []
        self._transactions: list[CreditTransaction] = []
        self._references: dict[str, CreditTransaction] = {}

    @property
    def usage_logs(self) -> list[UsageLog]:
        return list(self._usage_logs)

    # ── Users & memberships ──────────────────────────────────────

    async def get_user(self, user_id: str) -> User | None:
        user = self._users.get(user_id)
        return replace(user) if user else None

    async def find_user_by_email(self, email: str) -> User | None:
        user_id = self._email_index.get(email.strip().lower())
        return await self.get_user(user_id) if user_id else None

    async def get_or_create_user(self, email: str) -> User:
        normalized = email.strip().lower()
        user_id = self._email_index.get(normalized)
        if user_id is None:
            user = User(id=str(uuid7()), email=normalized)
            self._users[user.id] = user
            self._email_index[normalized] = user.id
            log.info("user_created", user_id=user.id)
            user_id = user.id
        return replace(self._users[user_id])

    async def bump_jwt_version(self, user_id: str) -> int:
        user = self._users[user_id]
        user.jwt_version += 1
        return user.jwt_version

    async def list_memberships(self, user_id: str) -> list[Membership]:
        found = [replace(m) for m in self._members.values() if m.user_id == user_id]
        return sorted(found, key=lambda m: m.role.rank)

    async def list_members(self, organization_id: str) -> list[Membership]:
        found = [replace(m) for m in self._members.values() if m.organization_id == organization_id]
        return sorted(found, key=lambda m: m.role.rank)

    async def get_membership(self, organization_id: str, user_id: str) -> Membership | None:
        membership = self._members.get((organization_id, user_id))
        return replace(membership) if membership else None

    async def add_membership(self, membership: Membership) -> bool:
        key = (membership.organization_id, membership.user_id)
        if key in self._members:
            return False
        self._members[key] = replace(membership)
        return True

    # ── Organizations & licenses ─────────────────────────────────

    async def get_organization(self, organization_id: str) -> Organization | None:
        organization = self._organizations.get(organization_id)
        return replace(organization) if organization else None

    async def find_organization_by_key(self, license_key: str) -> Organization | None:
        for organization in self._organizations.values():
            if organization.license_key == license_key:
                return replace(organization)
        return None

    async def insert_organization(self, organization: Organization) -> Organization:
        self._organizations[organization.id] = replace(organization)
        return replace(organization)

    async def insert_license(self, license: License) -> License:
        self._licenses[license.license_key] = replace(license)
        return replace(license)

    async def find_license_by_key(self, license_key: str) -> License | None:
        license = self._licenses.get(license_key)
        return replace(license) if license else None

    async def mark_license_attached(
        self,
        license_key: str,
        site_hash: str,
        site_url: str | None,
        install_id: str | None,
    ) -> License | None:
        license = self._licenses.get(license_key)
        if license is None:
            return None
        license.site_hash = site_hash
        license.site_url = site_url or license.site_url
        license.install_id = install_id or license.install_id
        license.auto_attach_status = ATTACH_ATTACHED
        return replace(license)

    # ── Sites ────────────────────────────────────────────────────

    async def get_site(self, site_hash: str) -> Site | None:
        site = self._sites.get(site_hash)
        return replace(site) if site else None

    async def get_site_by_id(self, site_id: str) -> Site | None:
        for site in self._sites.values():
            if site.id == site_id:
                return replace(site)
        return None

    async def get_or_create_site(self, template: Site) -> tuple[Site, bool]:
        site = self._sites.get(template.site_hash)
        if site is None:
            self._sites[template.site_hash] = replace(template)
            return replace(template), True
        site.last_seen = utcnow()
        if template.site_url and template.site_url != site.site_url:
            site.site_url = template.site_url
        return replace(site), False

    async def list_active_sites(
        self,
        organization_id: str | None,
        license_key: str | None,
    ) -> list[Site]:
        return [
            replace(site)
            for site in self._sites.values()
            if site.is_active and site_in_scope(site, organization_id, license_key)
        ]

    async def activate_site(self, request: ActivationRequest) -> ActivationResult:
        existing = self._sites.get(request.site_hash)
        active = sum(
            1
            for site in self._sites.values()
            if site.is_active
            and site_in_scope(site, request.organization_id, request.license_key)
        )
        outcome = evaluate_activation(existing, request, active)
        if not outcome.succeeded:
            return ActivationResult(outcome=outcome, site=None, active_site_count=active)

        site = apply_activation(existing, request, str(uuid7()), utcnow())
        self._sites[site.site_hash] = site
        if outcome is not ActivationOutcome.REFRESHED:
            active += 1
        return ActivationResult(outcome=outcome, site=replace(site), active_site_count=active)

    async def set_site_active(self, site_id: str, active: bool) -> Site | None:
        for site in self._sites.values():
            if site.id == site_id:
                site.is_active = active
                return replace(site)
        return None

    async def attach_free_license(
        self,
        site_template: Site,
        license_template: License,
    ) -> tuple[Site, License | None, bool]:
        site = self._sites.get(site_template.site_hash)
        if site is None:
            site = replace(site_template)
            self._sites[site.site_hash] = site
        if site.license_key is not None:
            existing = self._licenses.get(site.license_key)
            return replace(site), replace(existing) if existing else None, False

        license = replace(license_template, site_hash=site.site_hash)
        self._licenses[license.license_key] = license
        site.license_key = license.license_key
        site.site_url = site_template.site_url or site.site_url
        site.install_id = site_template.install_id or site.install_id
        site.is_active = True
        return replace(site), replace(license), True

    # ── Token buckets ────────────────────────────────────────────

    def _metered(self, ref: BucketRef) -> _Metered | None:
        if ref.kind is BucketKind.SITE:
            return self._sites.get(ref.key)
        if ref.kind is BucketKind.ORGANIZATION:
            return self._organizations.get(ref.key)
        return self._licenses.get(ref.key)

    @staticmethod
    def _snapshot(ref: BucketRef, record: _Metered) -> QuotaBucket:
        return QuotaBucket(
            ref=ref,
            plan=record.plan,
            token_limit=record.token_limit,
            tokens_used=record.tokens_used,
            tokens_remaining=record.tokens_remaining,
            reset_date=record.reset_date,
        )

    async def get_bucket(self, ref: BucketRef) -> QuotaBucket | None:
        record = self._metered(ref)
        return self._snapshot(ref, record) if record else None

    async def reset_bucket(
        self,
        ref: BucketRef,
        stale_reset_date: date,
        new_reset_date: date,
    ) -> QuotaBucket | None:
        record = self._metered(ref)
        if record is None or record.reset_date != stale_reset_date:
            return None
        record.tokens_used = 0
        record.tokens_remaining = record.token_limit
        record.reset_date = new_reset_date
        return self._snapshot(ref, record)

    async def deduct_bucket(
        self,
        ref: BucketRef,
        amount: int,
        require_remaining: bool = False,
    ) -> QuotaBucket | None:
        record = self._metered(ref)
        if record is None:
            return None
        if require_remaining and record.tokens_remaining <= 0:
            return None
        record.tokens_used += amount
        record.tokens_remaining = remaining_tokens(record.token_limit, record.tokens_used)
        return self._snapshot(ref, record)

    async def insert_usage_log(self, entry: UsageLog) -> None:
        self._usage_logs.append(replace(entry))

    # ── Credits ──────────────────────────────────────────────────

    def _balance(self, holder: CreditHolder) -> int:
        if holder.kind is CreditHolderKind.USER:
            user = self._users.get(holder.id)
            return user.credits_balance if user else 0
        organization = self._organizations.get(holder.id)
        return organization.credits if organization else 0

    def _set_balance(self, holder: CreditHolder, balance: int) -> None:
        if holder.kind is CreditHolderKind.USER:
            self._users[holder.id].credits_balance = balance
        else:
            self._organizations[holder.id].credits = balance

    async def get_credit_balance(self, holder: CreditHolder) -> int:
        return self._balance(holder)

    async def spend_credits(
        self,
        holder: CreditHolder,
        amount: int,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction | None:
        balance = self._balance(holder)
        if balance < amount:
            return None
        self._set_balance(holder, balance - amount)
        txn = CreditTransaction(
            id=str(uuid7()),
            holder=holder,
            delta=-amount,
            kind="spend",
            balance_after=balance - amount,
            metadata=dict(metadata or {}),
        )
        self._transactions.append(txn)
        return replace(txn)

    async def apply_credit_purchase(
        self,
        holder: CreditHolder,
        amount: int,
        reference: str,
    ) -> tuple[CreditTransaction, bool]:
        prior = self._references.get(reference)
        if prior is not None:
            return replace(prior), False
        balance = self._balance(holder) + amount
        self._set_balance(holder, balance)
        txn = CreditTransaction(
            id=str(uuid7()),
            holder=holder,
            delta=amount,
            kind="purchase",
            balance_after=balance,
            reference=reference,
        )
        self._transactions.append(txn)
        self._references[reference] = txn
        return replace(txn), True

    async def list_credit_transactions(
        self,
        holder: CreditHolder,
        offset: int,
        limit: int,
    ) -> tuple[list[CreditTransaction], int]:
        rows = [t for t in reversed(self._transactions) if t.holder == holder]
        return [replace(t) for t in rows[offset:offset + limit]], len(rows)
