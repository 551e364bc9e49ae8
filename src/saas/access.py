"""Request authentication: turns raw credentials into an explicit access context.

Priority is fixed and short-circuiting: bearer token, then license key,
then bare site hash. A failed token falls through to the next credential;
a missing or mismatched license key does not.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from uuid_extensions import uuid7

from src.core.constants import (
    AUTH_ERROR,
    INVALID_TOKEN,
    LICENSE_NOT_FOUND,
    LICENSE_ORG_MISMATCH,
    LICENSE_SITE_MISMATCH,
    MISSING_AUTH,
    SITE_DEACTIVATED,
)
from src.core.exceptions import AuthenticationError, AuthorizationError, map_store_errors
from src.core.interfaces import BaseStore
from src.core.logging import get_logger, key_preview
from src.core.types import (
    AccessContext,
    Credentials,
    JWTAccess,
    License,
    LicenseAccess,
    Organization,
    SiteHashAccess,
    Unauthenticated,
    utcnow,
)
from src.saas.policy import new_free_site, primary_membership
from src.saas.quota import QuotaAccountant, bucket_ref_for
from src.saas.tokens import JWTManager

log = get_logger(__name__)


class AccessResolver:
    def __init__(
        self,
        store: BaseStore,
        quota: QuotaAccountant,
        jwt: JWTManager,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._quota = quota
        self._jwt = jwt
        self._clock = clock

    async def resolve(self, credentials: Credentials) -> AccessContext:
        """Resolve credentials or raise ``AuthenticationError`` / ``AuthorizationError``."""
        context, token_failed = await self._resolve(credentials)
        if isinstance(context, Unauthenticated):
            if token_failed:
                raise AuthenticationError("Invalid or expired token", code=INVALID_TOKEN)
            raise AuthenticationError(
                "Authentication required. Provide a bearer token, license key or site hash.",
                code=MISSING_AUTH,
            )
        return context

    async def resolve_optional(self, credentials: Credentials) -> AccessContext:
        """Like ``resolve`` but an empty credential set yields ``Unauthenticated``."""
        context, _ = await self._resolve(credentials)
        return context

    async def _resolve(self, credentials: Credentials) -> tuple[AccessContext, bool]:
        token_failed = False
        with map_store_errors(AUTH_ERROR, "Authentication error"):
            if credentials.bearer_token:
                jwt_context = await self._from_token(credentials)
                if jwt_context is not None:
                    return jwt_context, False
                token_failed = True

            if credentials.license_key:
                return await self._from_license(credentials), False

            if credentials.site_hash:
                return await self._from_site_hash(credentials), False

        return Unauthenticated(), token_failed

    # ── Strategies ───────────────────────────────────────────────

    async def _from_token(self, credentials: Credentials) -> JWTAccess | None:
        payload = self._jwt.verify_token(credentials.bearer_token or "")
        if payload is None:
            return None

        user = await self._store.get_user(str(payload["sub"]))
        if user is None:
            log.warning("jwt_unknown_user", user_id=payload["sub"])
            return None
        if int(payload.get("ver", 0)) != user.jwt_version:
            log.info("jwt_revoked", user_id=user.id)
            return None

        organization = None
        membership = primary_membership(await self._store.list_memberships(user.id))
        if membership is not None:
            organization = await self._store.get_organization(membership.organization_id)

        site = None
        if credentials.site_hash:
            site = await self._store.get_site(credentials.site_hash)

        log.debug(
            "auth_jwt",
            user_id=user.id,
            organization_id=organization.id if organization else None,
        )
        return JWTAccess(user=user, organization=organization, site=site)

    async def _from_license(self, credentials: Credentials) -> LicenseAccess:
        key = credentials.license_key or ""
        organization, license = await self._lookup_key(key)
        if organization is None and license is None:
            log.warning("auth_license_not_found", license_key=key_preview(key))
            raise AuthenticationError("Invalid license key", code=LICENSE_NOT_FOUND)

        site = None
        if credentials.site_hash:
            site = await self._store.get_site(credentials.site_hash)
        if site is not None:
            if site.license_key and site.license_key != key:
                raise AuthorizationError(
                    "License key does not match this site",
                    code=LICENSE_SITE_MISMATCH,
                )
            resolved_org = organization.id if organization else None
            if site.organization_id and site.organization_id != resolved_org:
                raise AuthorizationError(
                    "Site belongs to a different organization",
                    code=LICENSE_ORG_MISMATCH,
                )

        log.debug("auth_license", license_key=key_preview(key), has_site=site is not None)
        return LicenseAccess(organization=organization, license=license, site=site)

    async def _from_site_hash(self, credentials: Credentials) -> SiteHashAccess:
        site_hash = credentials.site_hash or ""
        template = new_free_site(str(uuid7()), site_hash, credentials.site_url, self._clock())
        site, created = await self._store.get_or_create_site(template)
        if created:
            log.info("site_created", site_hash=site_hash, site_url=site.site_url)

        if site.organization_id and not site.is_active:
            raise AuthorizationError(
                "This site has been deactivated for its license",
                code=SITE_DEACTIVATED,
            )

        organization: Organization | None = None
        license: License | None = None
        if site.organization_id:
            organization = await self._store.get_organization(site.organization_id)
        elif site.license_key:
            license = await self._store.find_license_by_key(site.license_key)

        ref = bucket_ref_for(organization, site, license)
        usage = await self._quota.get_usage(ref) if ref is not None else None
        if usage is None:
            usage = await self._quota.site_usage(site_hash)
        return SiteHashAccess(site=site, usage=usage, organization=organization, license=license)

    async def _lookup_key(self, key: str) -> tuple[Organization | None, License | None]:
        organization = await self._store.find_organization_by_key(key)
        if organization is not None:
            return organization, None
        license = await self._store.find_license_by_key(key)
        if license is not None and license.organization_id:
            organization = await self._store.get_organization(license.organization_id)
        return organization, license
