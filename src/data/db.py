"""PostgreSQL connection and schema definitions."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from src.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("email", String, nullable=False, unique=True),
    Column("jwt_version", Integer, nullable=False, server_default="0"),
    Column("credits_balance", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

organizations = Table(
    "organizations",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("license_key", String, nullable=False, unique=True),
    Column("plan", String, nullable=False),
    Column("max_sites", Integer, nullable=False),
    Column("token_limit", Integer, nullable=False),
    Column("tokens_used", Integer, nullable=False, server_default="0"),
    Column("tokens_remaining", Integer, nullable=False),
    Column("reset_date", Date, nullable=False),
    Column("credits", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

organization_members = Table(
    "organization_members",
    metadata,
    Column("organization_id", String, ForeignKey("organizations.id"), nullable=False),
    Column("user_id", String, ForeignKey("users.id"), nullable=False),
    Column("role", String, nullable=False),
    UniqueConstraint("organization_id", "user_id", name="uq_member"),
)

licenses = Table(
    "licenses",
    metadata,
    Column("id", String, primary_key=True),
    Column("license_key", String, nullable=False, unique=True),
    Column("plan", String, nullable=False),
    Column("service", String, nullable=False),
    Column("token_limit", Integer, nullable=False),
    Column("tokens_used", Integer, nullable=False, server_default="0"),
    Column("tokens_remaining", Integer, nullable=False),
    Column("reset_date", Date, nullable=False),
    Column("site_hash", String, nullable=True, index=True),
    Column("site_url", String, nullable=True),
    Column("install_id", String, nullable=True),
    Column("organization_id", String, ForeignKey("organizations.id"), nullable=True),
    Column("user_id", String, ForeignKey("users.id"), nullable=True),
    Column("auto_attach_status", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

sites = Table(
    "sites",
    metadata,
    Column("id", String, primary_key=True),
    Column("site_hash", String, nullable=False, unique=True),
    Column("site_url", String, nullable=True),
    Column("install_id", String, nullable=True),
    Column("organization_id", String, ForeignKey("organizations.id"), nullable=True),
    Column("license_key", String, nullable=True),
    Column("plan", String, nullable=False),
    Column("token_limit", Integer, nullable=False),
    Column("tokens_used", Integer, nullable=False, server_default="0"),
    Column("tokens_remaining", Integer, nullable=False),
    Column("reset_date", Date, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="true"),
    Column("last_seen", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_sites_org_active", "organization_id", "is_active"),
    Index("ix_sites_license_active", "license_key", "is_active"),
)

usage_logs = Table(
    "usage_logs",
    metadata,
    Column("id", String, primary_key=True),
    Column("site_hash", String, nullable=True, index=True),
    Column("organization_id", String, nullable=True, index=True),
    Column("user_id", String, nullable=True),
    Column("tokens", Integer, nullable=False),
    Column("bucket", String, nullable=True),
    Column("wp_user_id", String, nullable=True),
    Column("wp_user_name", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)

credit_transactions = Table(
    "credit_transactions",
    metadata,
    Column("id", String, primary_key=True),
    Column("holder_kind", String, nullable=False),
    Column("holder_id", String, nullable=False),
    Column("delta", Integer, nullable=False),
    Column("kind", String, nullable=False),
    Column("balance_after", Integer, nullable=False),
    # NULL for spends; Postgres allows many NULLs under a unique constraint
    Column("reference", String, nullable=True, unique=True),
    Column("metadata", JSONB, nullable=False, server_default="{}"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_credit_txn_holder", "holder_kind", "holder_id", "created_at"),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
        )
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema() -> None:
    """Create all tables. Safe to run repeatedly."""
    engine = await get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    log.info("schema_initialized", tables=sorted(metadata.tables))


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
