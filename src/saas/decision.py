"""Grant-or-deny for a generation request and the charge that follows it.

``check`` runs before the generation call and only reads; ``commit``
runs after the generation succeeded and performs the atomic charge.
"""

from __future__ import annotations

from typing import Any

from src.core.constants import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    DENIAL_MESSAGES,
    MISSING_AUTH,
    NO_SUBSCRIPTION,
    QUOTA_EXHAUSTED,
    SUBSCRIPTION_INACTIVE,
)
from src.core.exceptions import AuthenticationError, AuthorizationError, PaymentError
from src.core.interfaces import SubscriptionProvider
from src.core.logging import get_logger
from src.core.types import (
    AccessContext,
    AccessVerdict,
    ChargeKind,
    ChargeReceipt,
    CreditHolder,
    CreditHolderKind,
    JWTAccess,
    LicenseAccess,
    SiteHashAccess,
    SubscriptionStatus,
    Unauthenticated,
    UsageLog,
)
from src.saas.credits import CreditLedger
from src.saas.quota import QuotaAccountant

log = get_logger(__name__)


def credit_holder_for(context: AccessContext) -> CreditHolder | None:
    """The JWT user when present, else the organization."""
    if isinstance(context, JWTAccess):
        return CreditHolder(CreditHolderKind.USER, context.user.id)
    if isinstance(context, (LicenseAccess, SiteHashAccess)) and context.organization:
        return CreditHolder(CreditHolderKind.ORGANIZATION, context.organization.id)
    return None


class AccessDecision:
    """Subscription first, then the token bucket, then prepaid credits."""

    def __init__(
        self,
        quota: QuotaAccountant,
        credits: CreditLedger,
        subscriptions: SubscriptionProvider | None = None,
    ) -> None:
        self._quota = quota
        self._credits = credits
        self._subscriptions = subscriptions

    async def check(self, context: AccessContext) -> AccessVerdict:
        if isinstance(context, Unauthenticated):
            raise AuthenticationError("Authentication required", code=MISSING_AUTH)

        bucket = self._quota.bucket_for(context)
        usage = await self._quota.get_usage(bucket) if bucket is not None else None
        holder = credit_holder_for(context)
        subscription = await self._subscription_for(context)

        base = {
            "bucket": bucket,
            "usage": usage,
            "credit_holder": holder,
            "subscription": subscription,
        }

        if subscription.is_paid and subscription.status in ACTIVE_SUBSCRIPTION_STATUSES:
            return AccessVerdict(allowed=True, charge=ChargeKind.SUBSCRIPTION, **base)

        if usage is not None and usage.remaining > 0:
            return AccessVerdict(allowed=True, charge=ChargeKind.TOKENS, **base)

        balance = await self._credits.balance(holder) if holder is not None else 0
        if balance > 0:
            return AccessVerdict(
                allowed=True, charge=ChargeKind.CREDIT, credits_balance=balance, **base
            )

        if subscription.is_paid:
            reason = SUBSCRIPTION_INACTIVE
        elif bucket is None:
            reason = NO_SUBSCRIPTION
        else:
            reason = QUOTA_EXHAUSTED
        log.info(
            "access_denied",
            reason=reason,
            auth_method=context.auth_method.value,
            bucket=bucket.kind.value if bucket else None,
        )
        return AccessVerdict(
            allowed=False,
            reason=reason,
            message=DENIAL_MESSAGES[reason],
            credits_balance=balance,
            **base,
        )

    async def enforce(self, context: AccessContext) -> AccessVerdict:
        """``check`` that raises a 403 carrying the denial reason."""
        verdict = await self.check(context)
        if not verdict.allowed:
            raise AuthorizationError(
                verdict.message or "Access denied",
                code=verdict.reason,
                context={"usage": verdict.usage, "credits": verdict.credits_balance},
            )
        return verdict

    async def commit(
        self,
        context: AccessContext,
        verdict: AccessVerdict,
        tokens: int,
        wp_user_id: str | None = None,
        wp_user_name: str | None = None,
    ) -> ChargeReceipt:
        """Charge a granted request once its generation has succeeded."""
        entry = self._usage_entry(context, tokens, wp_user_id, wp_user_name)

        if verdict.charge is ChargeKind.SUBSCRIPTION:
            usage = None
            if verdict.bucket is not None:
                usage = await self._quota.deduct(verdict.bucket, tokens, entry)
            else:
                await self._quota.record(entry)
            return ChargeReceipt(charge=ChargeKind.SUBSCRIPTION, tokens=tokens, usage=usage)

        if verdict.charge is ChargeKind.TOKENS and verdict.bucket is not None:
            usage = await self._quota.deduct(
                verdict.bucket, tokens, entry, require_remaining=True
            )
            if usage is not None:
                return ChargeReceipt(charge=ChargeKind.TOKENS, tokens=tokens, usage=usage)
            log.info("quota_drained_before_commit", bucket=verdict.bucket.kind.value)

        return await self._charge_credit(context, verdict, entry)

    async def _charge_credit(
        self,
        context: AccessContext,
        verdict: AccessVerdict,
        entry: UsageLog,
    ) -> ChargeReceipt:
        holder = verdict.credit_holder
        if holder is not None:
            try:
                txn = await self._credits.spend(holder, 1, metadata=self._spend_metadata(entry))
            except PaymentError:
                log.warning("credit_drained_before_commit", holder_id=holder.id)
            else:
                await self._quota.record(entry)
                return ChargeReceipt(
                    charge=ChargeKind.CREDIT,
                    credits=1,
                    usage=verdict.usage,
                    credits_balance=txn.balance_after,
                )

        await self._quota.record(entry)
        log.warning(
            "quota_overdraw_prevented",
            auth_method=context.auth_method.value,
            bucket=verdict.bucket.kind.value if verdict.bucket else None,
            tokens=entry.tokens,
        )
        return ChargeReceipt(charge=None, usage=verdict.usage)

    async def _subscription_for(self, context: AccessContext) -> SubscriptionStatus:
        if self._subscriptions is None or not isinstance(context, JWTAccess):
            return SubscriptionStatus()
        try:
            return await self._subscriptions.get_subscription_status(context.user.email)
        except Exception as exc:
            # lookup outage degrades to tokens and credits
            log.warning("subscription_lookup_failed", user_id=context.user.id, error=str(exc))
            return SubscriptionStatus()

    @staticmethod
    def _usage_entry(
        context: AccessContext,
        tokens: int,
        wp_user_id: str | None,
        wp_user_name: str | None,
    ) -> UsageLog:
        site = getattr(context, "site", None)
        organization = getattr(context, "organization", None)
        user = context.user if isinstance(context, JWTAccess) else None
        return UsageLog(
            id="",
            tokens=tokens,
            bucket_kind=None,
            site_hash=site.site_hash if site else None,
            organization_id=organization.id if organization else None,
            user_id=user.id if user else None,
            wp_user_id=wp_user_id,
            wp_user_name=wp_user_name,
        )

    @staticmethod
    def _spend_metadata(entry: UsageLog) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("site_hash", entry.site_hash),
                ("organization_id", entry.organization_id),
                ("wp_user_id", entry.wp_user_id),
            )
            if value
        }
