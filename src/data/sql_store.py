"""PostgreSQL-backed store.

Every mutation is a single statement or a single transaction. Quota and
credit updates are arithmetic in SQL, never read-modify-write in Python,
and activation row-locks the owning organization or license so the site
cap check and the upsert are serialized per scope.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from uuid_extensions import uuid7

from src.core.constants import ATTACH_ATTACHED
from src.core.exceptions import StoreError
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
    Plan,
    QuotaBucket,
    Role,
    Site,
    UsageLog,
    User,
    utcnow,
)
from src.saas.policy import apply_activation, evaluate_activation

log = get_logger(__name__)

# bucket kind -> (table, key column)
_BUCKET_TABLES: dict[BucketKind, tuple[str, str]] = {
    BucketKind.SITE: ("sites", "site_hash"),
    BucketKind.ORGANIZATION: ("organizations", "id"),
    BucketKind.LICENSE: ("licenses", "license_key"),
}

# credit holder kind -> (table, balance column)
_CREDIT_COLUMNS: dict[CreditHolderKind, tuple[str, str]] = {
    CreditHolderKind.USER: ("users", "credits_balance"),
    CreditHolderKind.ORGANIZATION: ("organizations", "credits"),
}

_BUCKET_COLUMNS = "plan, token_limit, tokens_used, tokens_remaining, reset_date"

_SITE_COLUMNS = (
    "id, site_hash, site_url, install_id, organization_id, license_key, plan, "
    "token_limit, tokens_used, tokens_remaining, reset_date, is_active, last_seen, created_at"
)
_SITE_VALUES = (
    ":id, :site_hash, :site_url, :install_id, :organization_id, :license_key, :plan, "
    ":token_limit, :tokens_used, :tokens_remaining, :reset_date, :is_active, :last_seen, "
    ":created_at"
)

_ROLE_ORDER = "CASE role WHEN 'owner' THEN 0 WHEN 'admin' THEN 1 ELSE 2 END"


class PostgresStore(BaseStore):
    """Async PostgreSQL store using raw SQL over a shared engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @asynccontextmanager
    async def _begin(self, operation: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            log.error("store_error", operation=operation, error=str(exc))
            raise StoreError(f"{operation} failed", context={"operation": operation}) from exc

    # ── Users & memberships ──────────────────────────────────────

    async def get_user(self, user_id: str) -> User | None:
        async with self._begin("get_user") as conn:
            result = await conn.execute(
                text("SELECT * FROM users WHERE id = :id"), {"id": user_id}
            )
            r = result.mappings().first()
        return self._row_to_user(r) if r else None

    async def find_user_by_email(self, email: str) -> User | None:
        async with self._begin("find_user_by_email") as conn:
            result = await conn.execute(
                text("SELECT * FROM users WHERE email = :email"),
                {"email": email.strip().lower()},
            )
            r = result.mappings().first()
        return self._row_to_user(r) if r else None

    async def get_or_create_user(self, email: str) -> User:
        async with self._begin("get_or_create_user") as conn:
            result = await conn.execute(
                text(
                    """
                    INSERT INTO users (id, email, jwt_version, credits_balance, created_at)
                    VALUES (:id, :email, 0, 0, :now)
                    ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
                    RETURNING *
                    """
                ),
                {"id": str(uuid7()), "email": email.strip().lower(), "now": utcnow()},
            )
            r = result.mappings().one()
        return self._row_to_user(r)

    async def bump_jwt_version(self, user_id: str) -> int:
        async with self._begin("bump_jwt_version") as conn:
            result = await conn.execute(
                text(
                    "UPDATE users SET jwt_version = jwt_version + 1 "
                    "WHERE id = :id RETURNING jwt_version"
                ),
                {"id": user_id},
            )
            version = result.scalar_one_or_none()
        if version is None:
            raise StoreError("User not found", context={"user_id": user_id})
        return int(version)

    async def list_memberships(self, user_id: str) -> list[Membership]:
        async with self._begin("list_memberships") as conn:
            result = await conn.execute(
                text(
                    f"SELECT * FROM organization_members WHERE user_id = :uid "
                    f"ORDER BY {_ROLE_ORDER}"
                ),
                {"uid": user_id},
            )
            rows = result.mappings().all()
        return [self._row_to_membership(r) for r in rows]

    async def list_members(self, organization_id: str) -> list[Membership]:
        async with self._begin("list_members") as conn:
            result = await conn.execute(
                text(
                    f"SELECT * FROM organization_members WHERE organization_id = :oid "
                    f"ORDER BY {_ROLE_ORDER}"
                ),
                {"oid": organization_id},
            )
            rows = result.mappings().all()
        return [self._row_to_membership(r) for r in rows]

    async def get_membership(self, organization_id: str, user_id: str) -> Membership | None:
        async with self._begin("get_membership") as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM organization_members "
                    "WHERE organization_id = :oid AND user_id = :uid"
                ),
                {"oid": organization_id, "uid": user_id},
            )
            r = result.mappings().first()
        return self._row_to_membership(r) if r else None

    async def add_membership(self, membership: Membership) -> bool:
        async with self._begin("add_membership") as conn:
            result = await conn.execute(
                text(
                    """
                    INSERT INTO organization_members (organization_id, user_id, role)
                    VALUES (:oid, :uid, :role)
                    ON CONFLICT (organization_id, user_id) DO NOTHING
                    RETURNING user_id
                    """
                ),
                {
                    "oid": membership.organization_id,
                    "uid": membership.user_id,
                    "role": membership.role.value,
                },
            )
            return result.first() is not None

    # ── Organizations & licenses ─────────────────────────────────

    async def get_organization(self, organization_id: str) -> Organization | None:
        async with self._begin("get_organization") as conn:
            result = await conn.execute(
                text("SELECT * FROM organizations WHERE id = :id"), {"id": organization_id}
            )
            r = result.mappings().first()
        return self._row_to_organization(r) if r else None

    async def find_organization_by_key(self, license_key: str) -> Organization | None:
        async with self._begin("find_organization_by_key") as conn:
            result = await conn.execute(
                text("SELECT * FROM organizations WHERE license_key = :key"),
                {"key": license_key},
            )
            r = result.mappings().first()
        return self._row_to_organization(r) if r else None

    async def insert_organization(self, organization: Organization) -> Organization:
        async with self._begin("insert_organization") as conn:
            result = await conn.execute(
                text(
                    """
                    INSERT INTO organizations
                        (id, name, license_key, plan, max_sites, token_limit,
                         tokens_used, tokens_remaining, reset_date, credits, created_at)
                    VALUES
                        (:id, :name, :license_key, :plan, :max_sites, :token_limit,
                         :tokens_used, :tokens_remaining, :reset_date, :credits, :created_at)
                    RETURNING *
                    """
                ),
                {
                    "id": organization.id,
                    "name": organization.name,
                    "license_key": organization.license_key,
                    "plan": organization.plan.value,
                    "max_sites": organization.max_sites,
                    "token_limit": organization.token_limit,
                    "tokens_used": organization.tokens_used,
                    "tokens_remaining": organization.tokens_remaining,
                    "reset_date": organization.reset_date,
                    "credits": organization.credits,
                    "created_at": organization.created_at,
                },
            )
            r = result.mappings().one()
        return self._row_to_organization(r)

    async def insert_license(self, license: License) -> License:
        async with self._begin("insert_license") as conn:
            r = await self._insert_license(conn, license)
        return self._row_to_license(r)

    async def find_license_by_key(self, license_key: str) -> License | None:
        async with self._begin("find_license_by_key") as conn:
            result = await conn.execute(
                text("SELECT * FROM licenses WHERE license_key = :key"), {"key": license_key}
            )
            r = result.mappings().first()
        return self._row_to_license(r) if r else None

    async def mark_license_attached(
        self,
        license_key: str,
        site_hash: str,
        site_url: str | None,
        install_id: str | None,
    ) -> License | None:
        async with self._begin("mark_license_attached") as conn:
            result = await conn.execute(
                text(
                    """
                    UPDATE licenses SET
                        site_hash = :site_hash,
                        site_url = COALESCE(:site_url, site_url),
                        install_id = COALESCE(:install_id, install_id),
                        auto_attach_status = :status
                    WHERE license_key = :key
                    RETURNING *
                    """
                ),
                {
                    "key": license_key,
                    "site_hash": site_hash,
                    "site_url": site_url,
                    "install_id": install_id,
                    "status": ATTACH_ATTACHED,
                },
            )
            r = result.mappings().first()
        return self._row_to_license(r) if r else None

    # ── Sites ────────────────────────────────────────────────────

    async def get_site(self, site_hash: str) -> Site | None:
        async with self._begin("get_site") as conn:
            result = await conn.execute(
                text("SELECT * FROM sites WHERE site_hash = :hash"), {"hash": site_hash}
            )
            r = result.mappings().first()
        return self._row_to_site(r) if r else None

    async def get_site_by_id(self, site_id: str) -> Site | None:
        async with self._begin("get_site_by_id") as conn:
            result = await conn.execute(
                text("SELECT * FROM sites WHERE id = :id"), {"id": site_id}
            )
            r = result.mappings().first()
        return self._row_to_site(r) if r else None

    async def get_or_create_site(self, template: Site) -> tuple[Site, bool]:
        async with self._begin("get_or_create_site") as conn:
            result = await conn.execute(
                text(
                    f"""
                    INSERT INTO sites ({_SITE_COLUMNS})
                    VALUES ({_SITE_VALUES})
                    ON CONFLICT (site_hash) DO UPDATE SET
                        last_seen = EXCLUDED.last_seen,
                        site_url = COALESCE(NULLIF(EXCLUDED.site_url, ''), sites.site_url)
                    RETURNING *, (xmax = 0) AS inserted
                    """
                ),
                self._site_params(template, last_seen=utcnow()),
            )
            r = result.mappings().one()
        return self._row_to_site(r), bool(r["inserted"])

    async def list_active_sites(
        self,
        organization_id: str | None,
        license_key: str | None,
    ) -> list[Site]:
        async with self._begin("list_active_sites") as conn:
            clause, params = self._scope_clause(organization_id, license_key)
            result = await conn.execute(
                text(f"SELECT * FROM sites WHERE is_active AND {clause} ORDER BY created_at"),
                params,
            )
            rows = result.mappings().all()
        return [self._row_to_site(r) for r in rows]

    async def activate_site(self, request: ActivationRequest) -> ActivationResult:
        async with self._begin("activate_site") as conn:
            if request.organization_id is not None:
                await conn.execute(
                    text("SELECT id FROM organizations WHERE id = :id FOR UPDATE"),
                    {"id": request.organization_id},
                )
            else:
                await conn.execute(
                    text("SELECT id FROM licenses WHERE license_key = :key FOR UPDATE"),
                    {"key": request.license_key},
                )

            result = await conn.execute(
                text("SELECT * FROM sites WHERE site_hash = :hash FOR UPDATE"),
                {"hash": request.site_hash},
            )
            row = result.mappings().first()
            existing = self._row_to_site(row) if row else None

            clause, params = self._scope_clause(request.organization_id, request.license_key)
            count_result = await conn.execute(
                text(f"SELECT count(*) FROM sites WHERE is_active AND {clause}"), params
            )
            active = int(count_result.scalar_one())

            outcome = evaluate_activation(existing, request, active)
            if not outcome.succeeded:
                return ActivationResult(outcome=outcome, site=None, active_site_count=active)

            now = utcnow()
            site = apply_activation(existing, request, str(uuid7()), now)
            # the WHERE guard keeps a concurrent first activation from another
            # organization from being overwritten
            upsert = await conn.execute(
                text(
                    f"""
                    INSERT INTO sites ({_SITE_COLUMNS})
                    VALUES ({_SITE_VALUES})
                    ON CONFLICT (site_hash) DO UPDATE SET
                        plan = EXCLUDED.plan,
                        token_limit = EXCLUDED.token_limit,
                        tokens_remaining = GREATEST(0, EXCLUDED.token_limit - sites.tokens_used),
                        site_url = COALESCE(EXCLUDED.site_url, sites.site_url),
                        install_id = COALESCE(EXCLUDED.install_id, sites.install_id),
                        organization_id = EXCLUDED.organization_id,
                        license_key = EXCLUDED.license_key,
                        is_active = true,
                        last_seen = EXCLUDED.last_seen
                    WHERE sites.organization_id IS NULL
                       OR sites.organization_id = EXCLUDED.organization_id
                    RETURNING *
                    """
                ),
                self._site_params(site, last_seen=now),
            )
            r = upsert.mappings().first()
            if r is None:
                return ActivationResult(
                    outcome=ActivationOutcome.CONFLICT, site=None, active_site_count=active
                )

        if outcome is not ActivationOutcome.REFRESHED:
            active += 1
        return ActivationResult(outcome=outcome, site=self._row_to_site(r), active_site_count=active)

    async def set_site_active(self, site_id: str, active: bool) -> Site | None:
        async with self._begin("set_site_active") as conn:
            result = await conn.execute(
                text("UPDATE sites SET is_active = :active WHERE id = :id RETURNING *"),
                {"id": site_id, "active": active},
            )
            r = result.mappings().first()
        return self._row_to_site(r) if r else None

    async def attach_free_license(
        self,
        site_template: Site,
        license_template: License,
    ) -> tuple[Site, License | None, bool]:
        async with self._begin("attach_free_license") as conn:
            # DO UPDATE (not DO NOTHING) so the row is returned and locked
            result = await conn.execute(
                text(
                    f"""
                    INSERT INTO sites ({_SITE_COLUMNS})
                    VALUES ({_SITE_VALUES})
                    ON CONFLICT (site_hash) DO UPDATE SET last_seen = EXCLUDED.last_seen
                    RETURNING *
                    """
                ),
                self._site_params(site_template, last_seen=utcnow()),
            )
            site_row = result.mappings().one()

            if site_row["license_key"]:
                found = await conn.execute(
                    text("SELECT * FROM licenses WHERE license_key = :key"),
                    {"key": site_row["license_key"]},
                )
                license_row = found.mappings().first()
                license = self._row_to_license(license_row) if license_row else None
                return self._row_to_site(site_row), license, False

            license_row = await self._insert_license(conn, license_template)
            updated = await conn.execute(
                text(
                    """
                    UPDATE sites SET
                        license_key = :key,
                        site_url = COALESCE(:site_url, site_url),
                        install_id = COALESCE(:install_id, install_id),
                        is_active = true
                    WHERE id = :id
                    RETURNING *
                    """
                ),
                {
                    "key": license_template.license_key,
                    "site_url": site_template.site_url,
                    "install_id": site_template.install_id,
                    "id": site_row["id"],
                },
            )
            site_row = updated.mappings().one()
        return self._row_to_site(site_row), self._row_to_license(license_row), True

    # ── Token buckets ────────────────────────────────────────────

    async def get_bucket(self, ref: BucketRef) -> QuotaBucket | None:
        table, column = _BUCKET_TABLES[ref.kind]
        async with self._begin("get_bucket") as conn:
            result = await conn.execute(
                text(f"SELECT {_BUCKET_COLUMNS} FROM {table} WHERE {column} = :key"),
                {"key": ref.key},
            )
            r = result.mappings().first()
        return self._row_to_bucket(ref, r) if r else None

    async def reset_bucket(
        self,
        ref: BucketRef,
        stale_reset_date: date,
        new_reset_date: date,
    ) -> QuotaBucket | None:
        table, column = _BUCKET_TABLES[ref.kind]
        async with self._begin("reset_bucket") as conn:
            result = await conn.execute(
                text(
                    f"""
                    UPDATE {table} SET
                        tokens_used = 0,
                        tokens_remaining = token_limit,
                        reset_date = :new_reset
                    WHERE {column} = :key AND reset_date = :stale_reset
                    RETURNING {_BUCKET_COLUMNS}
                    """
                ),
                {"key": ref.key, "new_reset": new_reset_date, "stale_reset": stale_reset_date},
            )
            r = result.mappings().first()
        return self._row_to_bucket(ref, r) if r else None

    async def deduct_bucket(
        self,
        ref: BucketRef,
        amount: int,
        require_remaining: bool = False,
    ) -> QuotaBucket | None:
        table, column = _BUCKET_TABLES[ref.kind]
        guard = " AND tokens_remaining > 0" if require_remaining else ""
        async with self._begin("deduct_bucket") as conn:
            result = await conn.execute(
                text(
                    f"""
                    UPDATE {table} SET
                        tokens_used = tokens_used + :n,
                        tokens_remaining = GREATEST(0, token_limit - (tokens_used + :n))
                    WHERE {column} = :key{guard}
                    RETURNING {_BUCKET_COLUMNS}
                    """
                ),
                {"key": ref.key, "n": amount},
            )
            r = result.mappings().first()
        return self._row_to_bucket(ref, r) if r else None

    async def insert_usage_log(self, entry: UsageLog) -> None:
        async with self._begin("insert_usage_log") as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO usage_logs
                        (id, site_hash, organization_id, user_id, tokens, bucket,
                         wp_user_id, wp_user_name, created_at)
                    VALUES
                        (:id, :site_hash, :organization_id, :user_id, :tokens, :bucket,
                         :wp_user_id, :wp_user_name, :created_at)
                    """
                ),
                {
                    "id": entry.id,
                    "site_hash": entry.site_hash,
                    "organization_id": entry.organization_id,
                    "user_id": entry.user_id,
                    "tokens": entry.tokens,
                    "bucket": entry.bucket_kind.value if entry.bucket_kind else None,
                    "wp_user_id": entry.wp_user_id,
                    "wp_user_name": entry.wp_user_name,
                    "created_at": entry.created_at,
                },
            )

    # ── Credits ──────────────────────────────────────────────────

    async def get_credit_balance(self, holder: CreditHolder) -> int:
        table, column = _CREDIT_COLUMNS[holder.kind]
        async with self._begin("get_credit_balance") as conn:
            result = await conn.execute(
                text(f"SELECT {column} FROM {table} WHERE id = :id"), {"id": holder.id}
            )
            balance = result.scalar_one_or_none()
        return int(balance or 0)

    async def spend_credits(
        self,
        holder: CreditHolder,
        amount: int,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction | None:
        table, column = _CREDIT_COLUMNS[holder.kind]
        async with self._begin("spend_credits") as conn:
            result = await conn.execute(
                text(
                    f"UPDATE {table} SET {column} = {column} - :n "
                    f"WHERE id = :id AND {column} >= :n RETURNING {column}"
                ),
                {"id": holder.id, "n": amount},
            )
            balance = result.scalar_one_or_none()
            if balance is None:
                return None
            txn = CreditTransaction(
                id=str(uuid7()),
                holder=holder,
                delta=-amount,
                kind="spend",
                balance_after=int(balance),
                metadata=dict(metadata or {}),
            )
            await self._insert_transaction(conn, txn)
        return txn

    async def apply_credit_purchase(
        self,
        holder: CreditHolder,
        amount: int,
        reference: str,
    ) -> tuple[CreditTransaction, bool]:
        table, column = _CREDIT_COLUMNS[holder.kind]
        txn = CreditTransaction(
            id=str(uuid7()),
            holder=holder,
            delta=amount,
            kind="purchase",
            balance_after=0,
            reference=reference,
        )
        async with self._begin("apply_credit_purchase") as conn:
            inserted = await self._insert_transaction(conn, txn, on_conflict_skip=True)
            if not inserted:
                result = await conn.execute(
                    text("SELECT * FROM credit_transactions WHERE reference = :ref"),
                    {"ref": reference},
                )
                return self._row_to_transaction(result.mappings().one()), False

            result = await conn.execute(
                text(
                    f"UPDATE {table} SET {column} = {column} + :n "
                    f"WHERE id = :id RETURNING {column}"
                ),
                {"id": holder.id, "n": amount},
            )
            txn.balance_after = int(result.scalar_one())
            await conn.execute(
                text("UPDATE credit_transactions SET balance_after = :b WHERE id = :id"),
                {"b": txn.balance_after, "id": txn.id},
            )
        return txn, True

    async def list_credit_transactions(
        self,
        holder: CreditHolder,
        offset: int,
        limit: int,
    ) -> tuple[list[CreditTransaction], int]:
        params = {"kind": holder.kind.value, "id": holder.id}
        async with self._begin("list_credit_transactions") as conn:
            result = await conn.execute(
                text(
                    """
                    SELECT * FROM credit_transactions
                    WHERE holder_kind = :kind AND holder_id = :id
                    ORDER BY created_at DESC, id DESC
                    LIMIT :limit OFFSET :offset
                    """
                ),
                {**params, "limit": limit, "offset": offset},
            )
            rows = result.mappings().all()
            count = await conn.execute(
                text(
                    "SELECT count(*) FROM credit_transactions "
                    "WHERE holder_kind = :kind AND holder_id = :id"
                ),
                params,
            )
            total = int(count.scalar_one())
        return [self._row_to_transaction(r) for r in rows], total

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _scope_clause(
        organization_id: str | None,
        license_key: str | None,
    ) -> tuple[str, dict[str, Any]]:
        if organization_id is not None:
            return "organization_id = :scope_org", {"scope_org": organization_id}
        return (
            "organization_id IS NULL AND license_key = :scope_key",
            {"scope_key": license_key},
        )

    @staticmethod
    def _site_params(site: Site, last_seen: Any) -> dict[str, Any]:
        return {
            "id": site.id,
            "site_hash": site.site_hash,
            "site_url": site.site_url,
            "install_id": site.install_id,
            "organization_id": site.organization_id,
            "license_key": site.license_key,
            "plan": site.plan.value,
            "token_limit": site.token_limit,
            "tokens_used": site.tokens_used,
            "tokens_remaining": site.tokens_remaining,
            "reset_date": site.reset_date,
            "is_active": site.is_active,
            "last_seen": last_seen,
            "created_at": site.created_at,
        }

    async def _insert_license(self, conn: AsyncConnection, license: License) -> Mapping[str, Any]:
        result = await conn.execute(
            text(
                """
                INSERT INTO licenses
                    (id, license_key, plan, service, token_limit, tokens_used,
                     tokens_remaining, reset_date, site_hash, site_url, install_id,
                     organization_id, user_id, auto_attach_status, created_at)
                VALUES
                    (:id, :license_key, :plan, :service, :token_limit, :tokens_used,
                     :tokens_remaining, :reset_date, :site_hash, :site_url, :install_id,
                     :organization_id, :user_id, :auto_attach_status, :created_at)
                RETURNING *
                """
            ),
            {
                "id": license.id,
                "license_key": license.license_key,
                "plan": license.plan.value,
                "service": license.service,
                "token_limit": license.token_limit,
                "tokens_used": license.tokens_used,
                "tokens_remaining": license.tokens_remaining,
                "reset_date": license.reset_date,
                "site_hash": license.site_hash,
                "site_url": license.site_url,
                "install_id": license.install_id,
                "organization_id": license.organization_id,
                "user_id": license.user_id,
                "auto_attach_status": license.auto_attach_status,
                "created_at": license.created_at,
            },
        )
        return result.mappings().one()

    async def _insert_transaction(
        self,
        conn: AsyncConnection,
        txn: CreditTransaction,
        on_conflict_skip: bool = False,
    ) -> bool:
        conflict = " ON CONFLICT (reference) DO NOTHING" if on_conflict_skip else ""
        result = await conn.execute(
            text(
                f"""
                INSERT INTO credit_transactions
                    (id, holder_kind, holder_id, delta, kind, balance_after,
                     reference, metadata, created_at)
                VALUES
                    (:id, :holder_kind, :holder_id, :delta, :kind, :balance_after,
                     :reference, CAST(:metadata AS JSONB), :created_at)
                {conflict}
                RETURNING id
                """
            ),
            {
                "id": txn.id,
                "holder_kind": txn.holder.kind.value,
                "holder_id": txn.holder.id,
                "delta": txn.delta,
                "kind": txn.kind,
                "balance_after": txn.balance_after,
                "reference": txn.reference,
                "metadata": json.dumps(txn.metadata),
                "created_at": txn.created_at,
            },
        )
        return result.first() is not None

    @staticmethod
    def _row_to_user(r: Mapping[str, Any]) -> User:
        return User(
            id=r["id"],
            email=r["email"],
            jwt_version=r["jwt_version"],
            credits_balance=r["credits_balance"],
            created_at=r["created_at"],
        )

    @staticmethod
    def _row_to_membership(r: Mapping[str, Any]) -> Membership:
        return Membership(
            organization_id=r["organization_id"],
            user_id=r["user_id"],
            role=Role(r["role"]),
        )

    @staticmethod
    def _row_to_organization(r: Mapping[str, Any]) -> Organization:
        return Organization(
            id=r["id"],
            name=r["name"],
            license_key=r["license_key"],
            plan=Plan.parse(r["plan"]),
            max_sites=r["max_sites"],
            token_limit=r["token_limit"],
            tokens_used=r["tokens_used"],
            tokens_remaining=r["tokens_remaining"],
            reset_date=r["reset_date"],
            credits=r["credits"],
            created_at=r["created_at"],
        )

    @staticmethod
    def _row_to_license(r: Mapping[str, Any]) -> License:
        return License(
            id=r["id"],
            license_key=r["license_key"],
            plan=Plan.parse(r["plan"]),
            token_limit=r["token_limit"],
            tokens_used=r["tokens_used"],
            tokens_remaining=r["tokens_remaining"],
            reset_date=r["reset_date"],
            service=r["service"],
            site_hash=r.get("site_hash"),
            site_url=r.get("site_url"),
            install_id=r.get("install_id"),
            organization_id=r.get("organization_id"),
            user_id=r.get("user_id"),
            auto_attach_status=r["auto_attach_status"],
            created_at=r["created_at"],
        )

    @staticmethod
    def _row_to_site(r: Mapping[str, Any]) -> Site:
        return Site(
            id=r["id"],
            site_hash=r["site_hash"],
            plan=Plan.parse(r["plan"]),
            token_limit=r["token_limit"],
            tokens_used=r["tokens_used"],
            tokens_remaining=r["tokens_remaining"],
            reset_date=r["reset_date"],
            site_url=r.get("site_url"),
            install_id=r.get("install_id"),
            organization_id=r.get("organization_id"),
            license_key=r.get("license_key"),
            is_active=r["is_active"],
            last_seen=r.get("last_seen"),
            created_at=r["created_at"],
        )

    @staticmethod
    def _row_to_bucket(ref: BucketRef, r: Mapping[str, Any]) -> QuotaBucket:
        return QuotaBucket(
            ref=ref,
            plan=Plan.parse(r["plan"]),
            token_limit=r["token_limit"],
            tokens_used=r["tokens_used"],
            tokens_remaining=r["tokens_remaining"],
            reset_date=r["reset_date"],
        )

    @staticmethod
    def _row_to_transaction(r: Mapping[str, Any]) -> CreditTransaction:
        meta = r.get("metadata") or {}
        if isinstance(meta, str):
            meta = json.loads(meta)
        return CreditTransaction(
            id=r["id"],
            holder=CreditHolder(CreditHolderKind(r["holder_kind"]), r["holder_id"]),
            delta=r["delta"],
            kind=r["kind"],
            balance_after=r["balance_after"],
            reference=r.get("reference"),
            metadata=meta,
            created_at=r["created_at"],
        )
