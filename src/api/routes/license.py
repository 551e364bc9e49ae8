"""License endpoints — activation lifecycle and license administration."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import (
    get_credentials,
    get_quota,
    get_site_manager,
    require_user,
)
from src.api.middleware import require_admin_secret
from src.api.models.schemas import (
    ActivateRequest,
    ActivateResponse,
    AutoAttachRequest,
    AutoAttachResponse,
    DeactivateRequest,
    DisconnectRequest,
    GenerateLicenseRequest,
    GenerateLicenseResponse,
    LicenseInfoResponse,
    LicenseOut,
    MemberOut,
    SiteOut,
    SiteResponse,
    UsageOut,
)
from src.core.constants import DEFAULT_SERVICE, VALIDATION_ERROR
from src.core.exceptions import ServiceError
from src.core.types import Credentials, Plan, User
from src.saas.policy import max_sites_for, token_limit_for
from src.saas.quota import QuotaAccountant, bucket_ref_for
from src.saas.sites import SiteLifecycleManager, activated_site

router = APIRouter(prefix="/license", tags=["license"])


def _missing(field: str) -> ServiceError:
    return ServiceError(f"{field} is required", code=VALIDATION_ERROR, status_code=422)


@router.post("/activate", response_model=ActivateResponse)
async def activate(
    body: ActivateRequest,
    sites: SiteLifecycleManager = Depends(get_site_manager),
) -> ActivateResponse:
    result = await sites.activate(body.license_key, body.site_hash, body.site_url, body.install_id)
    site = activated_site(result)
    holder = result.organization or result.license
    plan = holder.plan if holder else Plan.FREE
    max_sites = result.organization.max_sites if result.organization else max_sites_for(plan)
    return ActivateResponse(
        outcome=result.outcome.value,
        site=SiteOut.from_site(site),
        organization_id=result.organization.id if result.organization else None,
        plan=plan.value,
        max_sites=max_sites,
        active_sites=result.active_site_count,
    )


@router.post("/deactivate", response_model=SiteResponse)
async def deactivate(
    body: DeactivateRequest,
    user: User = Depends(require_user),
    sites: SiteLifecycleManager = Depends(get_site_manager),
) -> SiteResponse:
    if not body.site_id and not body.site_hash:
        raise _missing("siteId or siteHash")
    site = await sites.deactivate(user, site_id=body.site_id, site_hash=body.site_hash)
    return SiteResponse(site=SiteOut.from_site(site))


@router.post("/disconnect", response_model=SiteResponse)
async def disconnect(
    body: DisconnectRequest,
    credentials: Credentials = Depends(get_credentials),
    sites: SiteLifecycleManager = Depends(get_site_manager),
) -> SiteResponse:
    license_key = credentials.license_key or body.license_key
    site_hash = credentials.site_hash or body.site_hash
    if not license_key:
        raise _missing("licenseKey")
    if not site_hash:
        raise _missing("siteHash")
    site = await sites.disconnect(license_key, site_hash)
    return SiteResponse(site=SiteOut.from_site(site))


@router.post(
    "/generate",
    response_model=GenerateLicenseResponse,
    dependencies=[Depends(require_admin_secret)],
)
async def generate_license(
    body: GenerateLicenseRequest,
    sites: SiteLifecycleManager = Depends(get_site_manager),
) -> GenerateLicenseResponse:
    organization = await sites.generate_license(
        name=body.name,
        plan=Plan(body.plan),
        max_sites=body.max_sites,
        token_limit=body.token_limit,
        email=body.email,
        service=body.service or DEFAULT_SERVICE,
    )
    return GenerateLicenseResponse(
        license=LicenseOut(
            license_key=organization.license_key,
            plan=organization.plan.value,
            max_sites=organization.max_sites,
            token_limit=organization.token_limit,
            organization_id=organization.id,
            name=organization.name,
        )
    )


@router.post("/auto-attach", response_model=AutoAttachResponse)
async def auto_attach(
    body: AutoAttachRequest,
    credentials: Credentials = Depends(get_credentials),
    sites: SiteLifecycleManager = Depends(get_site_manager),
) -> AutoAttachResponse:
    """Attach a license to a site on first contact; repeated calls are no-ops."""
    site_hash = credentials.site_hash or body.site_hash
    if not site_hash:
        raise _missing("siteHash")
    result = await sites.auto_attach(
        credentials,
        site_hash,
        site_url=credentials.site_url or body.site_url,
        install_id=body.install_id,
    )
    holder = result.organization or result.license
    return AutoAttachResponse(
        created=result.created,
        license_key=result.site.license_key,
        plan=(holder.plan if holder else result.site.plan).value,
        organization_id=result.organization.id if result.organization else None,
        site=SiteOut.from_site(result.site),
    )


@router.get("/info/{license_key}", response_model=LicenseInfoResponse)
async def license_info(
    license_key: str,
    sites: SiteLifecycleManager = Depends(get_site_manager),
    quota: QuotaAccountant = Depends(get_quota),
) -> LicenseInfoResponse:
    info = await sites.license_info(license_key)
    holder = info.organization or info.license
    token_limit = holder.token_limit if holder else token_limit_for(info.plan)
    ref = bucket_ref_for(info.organization, None, info.license)
    usage = await quota.get_usage(ref) if ref is not None else None

    return LicenseInfoResponse(
        license=LicenseOut(
            license_key=license_key,
            plan=info.plan.value,
            max_sites=info.max_sites,
            token_limit=token_limit,
            organization_id=info.organization.id if info.organization else None,
            name=info.organization.name if info.organization else None,
        ),
        usage=UsageOut.from_usage(usage) if usage else None,
        sites=[SiteOut.from_site(site) for site in info.active_sites],
        members=[
            MemberOut(user_id=m.user_id, email=email, role=m.role.value)
            for m, email in info.members
        ],
    )
