"""Usage endpoint — quota and credits for whoever is calling."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import get_credit_ledger, get_quota, require_access
from src.api.models.schemas import UsageOut, UsageResponse
from src.core.types import AccessContext, SiteHashAccess
from src.saas.credits import CreditLedger
from src.saas.decision import credit_holder_for
from src.saas.quota import QuotaAccountant

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageResponse)
async def get_usage(
    context: AccessContext = Depends(require_access),
    quota: QuotaAccountant = Depends(get_quota),
    credits: CreditLedger = Depends(get_credit_ledger),
) -> UsageResponse:
    """Current token bucket of the caller, after any due monthly reset."""
    if isinstance(context, SiteHashAccess):
        usage = context.usage
    else:
        bucket = quota.bucket_for(context)
        usage = await quota.get_usage(bucket) if bucket is not None else None

    holder = credit_holder_for(context)
    balance = await credits.balance(holder) if holder is not None else 0
    organization = getattr(context, "organization", None)

    return UsageResponse(
        auth_method=context.auth_method.value,
        usage=UsageOut.from_usage(usage) if usage else None,
        credits_balance=balance,
        organization_id=organization.id if organization else None,
    )
