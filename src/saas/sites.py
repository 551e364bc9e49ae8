"""Site activation lifecycle and license administration.

A site moves absent -> active -> inactive -> active. Activation is a
single atomic store call; every rejection leaves the store untouched.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from uuid_extensions import uuid7

from src.core.constants import (
    ACTIVATION_ERROR,
    ALREADY_MEMBER,
    ATTACH_ATTACHED,
    DEFAULT_SERVICE,
    DISCONNECT_ERROR,
    FETCH_ERROR,
    INSUFFICIENT_PERMISSIONS,
    LICENSE_NOT_FOUND,
    LICENSE_SITE_MISMATCH,
    ORGANIZATION_NOT_FOUND,
    SITE_LIMIT_REACHED,
    SITE_NOT_FOUND,
)
from src.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    map_store_errors,
)
from src.core.interfaces import BaseStore, EmailSender, InstallationRecorder
from src.core.logging import get_logger, key_preview
from src.core.types import (
    ActivationOutcome,
    ActivationRequest,
    ActivationResult,
    Credentials,
    License,
    Membership,
    Organization,
    Plan,
    Role,
    Site,
    User,
    utcnow,
)
from src.saas.policy import (
    can_manage,
    max_sites_for,
    new_free_site,
    new_license_key,
    next_reset_date,
    token_limit_for,
)

log = get_logger(__name__)


def activated_site(result: ActivationResult) -> Site:
    """The site row a successful activation wrote."""
    if result.site is None:
        raise InfrastructureError("Activation returned no site", code=ACTIVATION_ERROR)
    return result.site


@dataclass
class AttachResult:
    site: Site
    license: License | None = None
    organization: Organization | None = None
    created: bool = False
    activation: ActivationResult | None = None


@dataclass
class LicenseInfo:
    organization: Organization | None
    license: License | None
    active_sites: list[Site] = field(default_factory=list)
    members: list[tuple[Membership, str]] = field(default_factory=list)

    @property
    def plan(self) -> Plan:
        holder = self.organization or self.license
        return holder.plan if holder else Plan.FREE

    @property
    def max_sites(self) -> int:
        if self.organization is not None:
            return self.organization.max_sites
        return max_sites_for(self.plan)


class SiteLifecycleManager:
    def __init__(
        self,
        store: BaseStore,
        installations: InstallationRecorder | None = None,
        emails: EmailSender | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._installations = installations
        self._emails = emails
        self._clock = clock

    # ── Activation ───────────────────────────────────────────────

    async def activate(
        self,
        license_key: str,
        site_hash: str,
        site_url: str | None = None,
        install_id: str | None = None,
    ) -> ActivationResult:
        """Bind ``site_hash`` to the license, creating or reactivating the site."""
        with map_store_errors(ACTIVATION_ERROR, "Failed to activate license"):
            organization, license = await self._require_key(license_key)
            request = self._activation_request(
                license_key, organization, license, site_hash, site_url, install_id
            )
            result = await self._store.activate_site(request)

            if result.outcome is ActivationOutcome.CONFLICT:
                log.warning(
                    "activation_conflict",
                    site_hash=site_hash,
                    license_key=key_preview(license_key),
                )
                raise ConflictError(
                    "This site is already registered to a different license",
                    code=LICENSE_SITE_MISMATCH,
                )
            if result.outcome is ActivationOutcome.LIMIT_REACHED:
                log.info(
                    "activation_limit_reached",
                    license_key=key_preview(license_key),
                    active=result.active_site_count,
                    max_sites=request.max_sites,
                )
                raise ConflictError(
                    f"Site limit reached. This license allows {request.max_sites} active site(s).",
                    code=SITE_LIMIT_REACHED,
                    context={
                        "max_sites": request.max_sites,
                        "active_sites": result.active_site_count,
                    },
                )

            if license is not None and organization is None:
                license = await self._store.mark_license_attached(
                    license.license_key, site_hash, site_url, install_id
                ) or license

        result.organization = organization
        result.license = license
        log.info(
            "site_activated",
            outcome=result.outcome.value,
            site_hash=site_hash,
            license_key=key_preview(license_key),
            active_sites=result.active_site_count,
        )
        await self._record_installation(activated_site(result), organization, license_key)
        return result

    async def deactivate(
        self,
        requester: User,
        site_id: str | None = None,
        site_hash: str | None = None,
    ) -> Site:
        """Owner or admin of the site's organization turns a site off. Idempotent."""
        with map_store_errors(DISCONNECT_ERROR, "Failed to deactivate site"):
            site = await self._find_site(site_id, site_hash)
            membership = None
            if site.organization_id:
                membership = await self._store.get_membership(site.organization_id, requester.id)
            if not can_manage(membership):
                raise AuthorizationError(
                    "Only organization owners and admins can deactivate sites",
                    code=INSUFFICIENT_PERMISSIONS,
                )
            updated = await self._deactivate(site)

        log.info("site_deactivated", site_id=site.id, user_id=requester.id)
        return updated

    async def disconnect(self, license_key: str, site_hash: str) -> Site:
        """Plugin-side disconnect using the license key the site holds. Idempotent."""
        with map_store_errors(DISCONNECT_ERROR, "Failed to disconnect site"):
            organization, _ = await self._require_key(license_key)
            site = await self._find_site(None, site_hash)
            owns = site.license_key == license_key or (
                organization is not None and site.organization_id == organization.id
            )
            if not owns:
                raise AuthorizationError(
                    "License key does not match this site",
                    code=LICENSE_SITE_MISMATCH,
                )
            updated = await self._deactivate(site)

        log.info("site_disconnected", site_hash=site_hash, license_key=key_preview(license_key))
        return updated

    # ── Licenses ─────────────────────────────────────────────────

    async def generate_license(
        self,
        name: str,
        plan: Plan = Plan.FREE,
        max_sites: int | None = None,
        token_limit: int | None = None,
        owner: User | None = None,
        email: str | None = None,
        service: str = DEFAULT_SERVICE,
    ) -> Organization:
        """Create an organization holding a fresh license key."""
        limit = token_limit if token_limit is not None else token_limit_for(plan, service)
        organization = Organization(
            id=str(uuid7()),
            name=name,
            license_key=new_license_key(),
            plan=plan,
            max_sites=max_sites if max_sites is not None else max_sites_for(plan),
            token_limit=limit,
            tokens_used=0,
            tokens_remaining=limit,
            reset_date=next_reset_date(self._clock()),
        )
        with map_store_errors(ACTIVATION_ERROR, "Failed to generate license"):
            organization = await self._store.insert_organization(organization)
            if owner is None and email:
                owner = await self._store.get_or_create_user(email)
            if owner is not None:
                await self._store.add_membership(
                    Membership(organization.id, owner.id, Role.OWNER)
                )

        log.info(
            "license_generated",
            organization_id=organization.id,
            plan=plan.value,
            max_sites=organization.max_sites,
            license_key=key_preview(organization.license_key),
        )
        if email and self._emails is not None:
            try:
                await self._emails.send_license_email(email, organization.license_key, plan.value)
            except Exception as exc:
                log.warning("license_email_failed", organization_id=organization.id, error=str(exc))
        return organization

    async def auto_attach(
        self,
        credentials: Credentials,
        site_hash: str,
        site_url: str | None = None,
        install_id: str | None = None,
    ) -> AttachResult:
        """Give a site a license on first contact.

        Without a key the site gets its own free license, created once;
        with a key this is an activation.
        """
        if credentials.license_key:
            activation = await self.activate(
                credentials.license_key, site_hash, site_url, install_id
            )
            return AttachResult(
                site=activated_site(activation),
                license=activation.license,
                organization=activation.organization,
                created=activation.outcome is ActivationOutcome.CREATED,
                activation=activation,
            )

        now = self._clock()
        site_template = new_free_site(str(uuid7()), site_hash, site_url, now)
        site_template.install_id = install_id
        limit = token_limit_for(Plan.FREE)
        license_template = License(
            id=str(uuid7()),
            license_key=new_license_key(),
            plan=Plan.FREE,
            token_limit=limit,
            tokens_used=0,
            tokens_remaining=limit,
            reset_date=next_reset_date(now),
            site_hash=site_hash,
            site_url=site_url,
            install_id=install_id,
            auto_attach_status=ATTACH_ATTACHED,
        )
        with map_store_errors(ACTIVATION_ERROR, "Failed to attach license"):
            site, license, created = await self._store.attach_free_license(
                site_template, license_template
            )
            organization = None
            if site.organization_id:
                organization = await self._store.get_organization(site.organization_id)

        if created:
            log.info("free_license_attached", site_hash=site_hash)
            await self._record_installation(site, None, site.license_key)
        return AttachResult(site=site, license=license, organization=organization, created=created)

    async def license_info(self, license_key: str) -> LicenseInfo:
        with map_store_errors(FETCH_ERROR, "Failed to fetch license info"):
            organization, license = await self._require_key(license_key)
            if organization is not None:
                sites = await self._store.list_active_sites(organization.id, None)
                members = []
                for membership in await self._store.list_members(organization.id):
                    user = await self._store.get_user(membership.user_id)
                    members.append((membership, user.email if user else ""))
            else:
                sites = await self._store.list_active_sites(None, license_key)
                members = []
        return LicenseInfo(
            organization=organization,
            license=license,
            active_sites=sites,
            members=members,
        )

    async def invite_member(
        self,
        organization_id: str,
        requester: User,
        email: str,
        role: Role = Role.MEMBER,
    ) -> Membership:
        with map_store_errors(FETCH_ERROR, "Failed to invite member"):
            organization = await self._store.get_organization(organization_id)
            if organization is None:
                raise NotFoundError("Organization not found", code=ORGANIZATION_NOT_FOUND)
            if not can_manage(await self._store.get_membership(organization_id, requester.id)):
                raise AuthorizationError(
                    "Only organization owners and admins can invite members",
                    code=INSUFFICIENT_PERMISSIONS,
                )
            user = await self._store.get_or_create_user(email)
            membership = Membership(organization_id, user.id, role)
            if not await self._store.add_membership(membership):
                raise ConflictError(
                    "User is already a member of this organization",
                    code=ALREADY_MEMBER,
                    status_code=409,
                )

        log.info(
            "member_invited",
            organization_id=organization_id,
            user_id=user.id,
            role=role.value,
            invited_by=requester.id,
        )
        return membership

    # ── Helpers ──────────────────────────────────────────────────

    async def _require_key(self, license_key: str) -> tuple[Organization | None, License | None]:
        organization = await self._store.find_organization_by_key(license_key)
        if organization is not None:
            return organization, None
        license = await self._store.find_license_by_key(license_key)
        if license is None:
            raise NotFoundError("License key not found", code=LICENSE_NOT_FOUND)
        if license.organization_id:
            organization = await self._store.get_organization(license.organization_id)
        return organization, license

    @staticmethod
    def _activation_request(
        license_key: str,
        organization: Organization | None,
        license: License | None,
        site_hash: str,
        site_url: str | None,
        install_id: str | None,
    ) -> ActivationRequest:
        if organization is not None:
            return ActivationRequest(
                site_hash=site_hash,
                license_key=license_key,
                plan=organization.plan,
                token_limit=organization.token_limit,
                max_sites=organization.max_sites,
                organization_id=organization.id,
                site_url=site_url,
                install_id=install_id,
            )
        if license is None:
            raise NotFoundError("License key not found", code=LICENSE_NOT_FOUND)
        return ActivationRequest(
            site_hash=site_hash,
            license_key=license_key,
            plan=license.plan,
            token_limit=license.token_limit,
            max_sites=max_sites_for(license.plan),
            site_url=site_url,
            install_id=install_id,
        )

    async def _find_site(self, site_id: str | None, site_hash: str | None) -> Site:
        site = None
        if site_id:
            site = await self._store.get_site_by_id(site_id)
        elif site_hash:
            site = await self._store.get_site(site_hash)
        if site is None:
            raise NotFoundError("Site not found", code=SITE_NOT_FOUND)
        return site

    async def _deactivate(self, site: Site) -> Site:
        if not site.is_active:
            return site
        return await self._store.set_site_active(site.id, False) or site

    async def _record_installation(
        self,
        site: Site,
        organization: Organization | None,
        license_key: str | None,
    ) -> None:
        if self._installations is None:
            return
        try:
            await self._installations.record_installation(
                site, organization.id if organization else None, license_key
            )
        except Exception as exc:
            log.warning("installation_record_failed", site_hash=site.site_hash, error=str(exc))
