"""Tests for credential resolution into access contexts."""

from __future__ import annotations

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.core.exceptions import AuthenticationError, AuthorizationError, InfrastructureError
from src.core.exceptions import StoreError
from src.core.types import (
    AuthMethod,
    Credentials,
    JWTAccess,
    License,
    LicenseAccess,
    Membership,
    Organization,
    Plan,
    Role,
    Site,
    SiteHashAccess,
    Unauthenticated,
)
from src.data.memory_store import InMemoryStore
from src.saas.access import AccessResolver
from src.saas.quota import QuotaAccountant
from src.saas.tokens import JWTManager

NOW = datetime(2026, 3, 20, tzinfo=timezone.utc)
SECRET = "test-secret-key"


def _resolver(store) -> AccessResolver:
    return AccessResolver(
        store,
        QuotaAccountant(store, clock=lambda: NOW),
        JWTManager(secret=SECRET),
        clock=lambda: NOW,
    )


def _org(org_id: str = "org-1", key: str = "org-key-1") -> Organization:
    return Organization(
        id=org_id,
        name="Acme",
        license_key=key,
        plan=Plan.AGENCY,
        max_sites=10,
        token_limit=10_000,
        tokens_used=100,
        tokens_remaining=9_900,
        reset_date=date(2026, 4, 1),
    )


def _site(site_hash: str = "h1", org: str | None = None, key: str | None = None,
          active: bool = True) -> Site:
    return Site(
        id=f"site-{site_hash}",
        site_hash=site_hash,
        plan=Plan.FREE,
        token_limit=50,
        tokens_used=5,
        tokens_remaining=45,
        reset_date=date(2026, 4, 1),
        organization_id=org,
        license_key=key,
        is_active=active,
    )


def _license(key: str = "free-key", org: str | None = None) -> License:
    return License(
        id=f"lic-{key}",
        license_key=key,
        plan=Plan.FREE,
        token_limit=50,
        tokens_used=0,
        tokens_remaining=50,
        reset_date=date(2026, 4, 1),
        organization_id=org,
    )


class TestPriority:
    @pytest.mark.asyncio
    async def test_jwt_wins_over_license(self, store: InMemoryStore) -> None:
        user = await store.get_or_create_user("owner@example.com")
        await store.insert_organization(_org())
        await store.add_membership(Membership("org-1", user.id, Role.OWNER))
        token = JWTManager(secret=SECRET).create_token(user.id, user.email)

        context = await _resolver(store).resolve(
            Credentials(bearer_token=token, license_key="does-not-exist")
        )
        assert isinstance(context, JWTAccess)
        assert context.auth_method is AuthMethod.JWT
        assert context.organization is not None
        assert context.organization.id == "org-1"

    @pytest.mark.asyncio
    async def test_failed_token_falls_through_to_license(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        context = await _resolver(store).resolve(
            Credentials(bearer_token="garbage", license_key="org-key-1")
        )
        assert isinstance(context, LicenseAccess)

    @pytest.mark.asyncio
    async def test_non_ascii_token_falls_through_to_license(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        context = await _resolver(store).resolve(
            Credentials(bearer_token="a.b.\u00e9", license_key="org-key-1")
        )
        assert isinstance(context, LicenseAccess)
        assert context.organization is not None

    @pytest.mark.asyncio
    async def test_non_ascii_token_alone_is_invalid_token(self, store: InMemoryStore) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await _resolver(store).resolve(Credentials(bearer_token="a.b.\u00e9"))
        assert exc_info.value.code == "INVALID_TOKEN"

    @pytest.mark.asyncio
    async def test_failed_token_alone_is_invalid_token(self, store: InMemoryStore) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await _resolver(store).resolve(Credentials(bearer_token="garbage"))
        assert exc_info.value.code == "INVALID_TOKEN"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_nothing_is_missing_auth(self, store: InMemoryStore) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await _resolver(store).resolve(Credentials())
        assert exc_info.value.code == "MISSING_AUTH"

    @pytest.mark.asyncio
    async def test_optional_yields_unauthenticated(self, store: InMemoryStore) -> None:
        context = await _resolver(store).resolve_optional(Credentials())
        assert isinstance(context, Unauthenticated)


class TestJWT:
    @pytest.mark.asyncio
    async def test_bumped_version_revokes_token(self, store: InMemoryStore) -> None:
        user = await store.get_or_create_user("a@example.com")
        token = JWTManager(secret=SECRET).create_token(user.id, user.email, user.jwt_version)
        await store.bump_jwt_version(user.id)
        with pytest.raises(AuthenticationError) as exc_info:
            await _resolver(store).resolve(Credentials(bearer_token=token))
        assert exc_info.value.code == "INVALID_TOKEN"

    @pytest.mark.asyncio
    async def test_unknown_user(self, store: InMemoryStore) -> None:
        token = JWTManager(secret=SECRET).create_token("ghost", "g@example.com")
        with pytest.raises(AuthenticationError):
            await _resolver(store).resolve(Credentials(bearer_token=token))

    @pytest.mark.asyncio
    async def test_site_hash_is_read_only_lookup(self, store: InMemoryStore) -> None:
        user = await store.get_or_create_user("a@example.com")
        token = JWTManager(secret=SECRET).create_token(user.id, user.email)
        context = await _resolver(store).resolve(
            Credentials(bearer_token=token, site_hash="unseen")
        )
        assert isinstance(context, JWTAccess)
        assert context.site is None
        assert await store.get_site("unseen") is None


class TestLicense:
    @pytest.mark.asyncio
    async def test_unknown_key(self, store: InMemoryStore) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await _resolver(store).resolve(Credentials(license_key="nope"))
        assert exc_info.value.code == "LICENSE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_standalone_license(self, store: InMemoryStore) -> None:
        await store.insert_license(_license())
        context = await _resolver(store).resolve(Credentials(license_key="free-key"))
        assert isinstance(context, LicenseAccess)
        assert context.license is not None
        assert context.organization is None

    @pytest.mark.asyncio
    async def test_license_of_organization_resolves_org(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        await store.insert_license(_license("member-key", org="org-1"))
        context = await _resolver(store).resolve(Credentials(license_key="member-key"))
        assert isinstance(context, LicenseAccess)
        assert context.organization is not None
        assert context.organization.id == "org-1"

    @pytest.mark.asyncio
    async def test_site_bound_to_other_key(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        await store.get_or_create_site(_site(key="other-key"))
        with pytest.raises(AuthorizationError) as exc_info:
            await _resolver(store).resolve(
                Credentials(license_key="org-key-1", site_hash="h1")
            )
        assert exc_info.value.code == "LICENSE_SITE_MISMATCH"

    @pytest.mark.asyncio
    async def test_site_of_other_organization(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        await store.get_or_create_site(_site(org="org-2"))
        with pytest.raises(AuthorizationError) as exc_info:
            await _resolver(store).resolve(
                Credentials(license_key="org-key-1", site_hash="h1")
            )
        assert exc_info.value.code == "LICENSE_ORG_MISMATCH"

    @pytest.mark.asyncio
    async def test_matching_site_attached(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        await store.get_or_create_site(_site(org="org-1", key="org-key-1"))
        context = await _resolver(store).resolve(
            Credentials(license_key="org-key-1", site_hash="h1")
        )
        assert isinstance(context, LicenseAccess)
        assert context.site is not None


class TestSiteHash:
    @pytest.mark.asyncio
    async def test_first_contact_creates_free_site(self, store: InMemoryStore) -> None:
        context = await _resolver(store).resolve(
            Credentials(site_hash="new-hash", site_url="https://blog.example")
        )
        assert isinstance(context, SiteHashAccess)
        assert context.site.plan is Plan.FREE
        assert context.usage.remaining == 50
        created = await store.get_site("new-hash")
        assert created is not None
        assert created.site_url == "https://blog.example"

    @pytest.mark.asyncio
    async def test_repeat_contact_reuses_site(self, store: InMemoryStore) -> None:
        resolver = _resolver(store)
        first = await resolver.resolve(Credentials(site_hash="h"))
        second = await resolver.resolve(Credentials(site_hash="h"))
        assert isinstance(first, SiteHashAccess) and isinstance(second, SiteHashAccess)
        assert first.site.id == second.site.id

    @pytest.mark.asyncio
    async def test_org_site_uses_org_bucket(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        await store.get_or_create_site(_site(org="org-1"))
        context = await _resolver(store).resolve(Credentials(site_hash="h1"))
        assert isinstance(context, SiteHashAccess)
        assert context.organization is not None
        assert context.usage.limit == 10_000
        assert context.usage.used == 100

    @pytest.mark.asyncio
    async def test_deactivated_org_site_rejected(self, store: InMemoryStore) -> None:
        await store.insert_organization(_org())
        await store.get_or_create_site(_site(org="org-1", active=False))
        with pytest.raises(AuthorizationError) as exc_info:
            await _resolver(store).resolve(Credentials(site_hash="h1"))
        assert exc_info.value.code == "SITE_DEACTIVATED"

    @pytest.mark.asyncio
    async def test_free_license_site_attaches_license(self, store: InMemoryStore) -> None:
        await store.insert_license(_license())
        await store.get_or_create_site(_site(key="free-key"))
        context = await _resolver(store).resolve(Credentials(site_hash="h1"))
        assert isinstance(context, SiteHashAccess)
        assert context.license is not None
        assert context.usage.used == 5


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_store_error_maps_to_auth_error(self) -> None:
        broken = AsyncMock()
        broken.find_organization_by_key.side_effect = StoreError("timeout")
        with pytest.raises(InfrastructureError) as exc_info:
            await _resolver(broken).resolve(Credentials(license_key="k"))
        assert exc_info.value.code == "AUTH_ERROR"
        assert exc_info.value.status_code == 500
