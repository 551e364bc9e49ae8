"""FastAPI dependency injection — shared instances for routes."""

from __future__ import annotations

from typing import Any

from fastapi import Depends, Request

from config.settings import get_settings
from src.api.middleware import get_jwt_manager
from src.core.constants import MISSING_AUTH
from src.core.exceptions import AuthenticationError
from src.billing.notifications import LoggingEmailSender, LoggingInstallationRecorder
from src.billing.stripe_billing import StripeBilling
from src.core.interfaces import BaseStore, ContentGenerator
from src.core.logging import get_logger
from src.core.types import AccessContext, Credentials, JWTAccess, User
from src.data.db import get_engine
from src.data.memory_store import InMemoryStore
from src.data.sql_store import PostgresStore
from src.saas.access import AccessResolver
from src.saas.credits import CreditLedger
from src.saas.decision import AccessDecision
from src.saas.identity import IdentityManager
from src.saas.quota import QuotaAccountant
from src.saas.sites import SiteLifecycleManager

log = get_logger(__name__)

_store: BaseStore | None = None
_billing: StripeBilling | None = None
_generator: ContentGenerator | None = None


# ── Store & collaborators ────────────────────────────────────────


async def get_store() -> BaseStore:
    """Provide the configured store (singleton per process)."""
    global _store  # noqa: PLW0603
    if _store is None:
        settings = get_settings()
        if settings.store_backend == "memory":
            _store = InMemoryStore()
        else:
            _store = PostgresStore(await get_engine())
        log.info("store_initialized", backend=settings.store_backend)
    return _store


def get_billing() -> StripeBilling:
    global _billing  # noqa: PLW0603
    if _billing is None:
        _billing = StripeBilling()
    return _billing


def get_generator() -> ContentGenerator:
    global _generator  # noqa: PLW0603
    if _generator is None:
        from src.llm.generator import OpenAIGenerator

        _generator = OpenAIGenerator()
    return _generator


# ── Engine services ──────────────────────────────────────────────


def get_quota(store: BaseStore = Depends(get_store)) -> QuotaAccountant:
    return QuotaAccountant(store)


def get_credit_ledger(
    store: BaseStore = Depends(get_store),
    billing: StripeBilling = Depends(get_billing),
) -> CreditLedger:
    return CreditLedger(store, checkout=billing)


def get_resolver(
    store: BaseStore = Depends(get_store),
    quota: QuotaAccountant = Depends(get_quota),
) -> AccessResolver:
    return AccessResolver(store, quota, get_jwt_manager())


def get_decision(
    quota: QuotaAccountant = Depends(get_quota),
    credits: CreditLedger = Depends(get_credit_ledger),
    billing: StripeBilling = Depends(get_billing),
) -> AccessDecision:
    return AccessDecision(quota, credits, subscriptions=billing)


def get_identity(store: BaseStore = Depends(get_store)) -> IdentityManager:
    return IdentityManager(store, get_jwt_manager())


def get_site_manager(store: BaseStore = Depends(get_store)) -> SiteLifecycleManager:
    return SiteLifecycleManager(
        store,
        installations=LoggingInstallationRecorder(),
        emails=LoggingEmailSender(),
    )


# ── Auth dependencies ────────────────────────────────────────────


async def get_credentials(request: Request) -> Credentials:
    """Credentials from headers, then from a JSON body if there is one."""
    body: dict[str, Any] = {}
    if "application/json" in request.headers.get("content-type", ""):
        try:
            parsed = await request.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
    return Credentials.from_request(request.headers, body)


async def require_access(
    credentials: Credentials = Depends(get_credentials),
    resolver: AccessResolver = Depends(get_resolver),
) -> AccessContext:
    return await resolver.resolve(credentials)


async def require_user(
    credentials: Credentials = Depends(get_credentials),
    resolver: AccessResolver = Depends(get_resolver),
) -> User:
    """A signed-in user; license keys and site hashes are not accepted here."""
    context = await resolver.resolve(Credentials(bearer_token=credentials.bearer_token))
    if not isinstance(context, JWTAccess):
        raise AuthenticationError("Sign-in required", code=MISSING_AUTH)
    return context.user
