"""Monthly token buckets: lazy reset, usage snapshots and atomic deduction."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from uuid_extensions import uuid7

from src.core.interfaces import BaseStore
from src.core.logging import get_logger
from src.core.types import (
    AccessContext,
    BucketKind,
    BucketRef,
    JWTAccess,
    License,
    LicenseAccess,
    Organization,
    Plan,
    QuotaBucket,
    QuotaUsage,
    Site,
    SiteHashAccess,
    UsageLog,
    utcnow,
)
from src.saas.policy import next_reset_date, reset_due, token_limit_for

log = get_logger(__name__)

_MAX_RESET_ATTEMPTS = 3


def bucket_ref_for(
    organization: Organization | None,
    site: Site | None,
    license: License | None,
) -> BucketRef | None:
    """Pick the bucket a request draws from: organization, then site, then license.

    A stand-alone license bound to a site draws from that site's bucket
    whether or not the request names the site.
    """
    if organization is not None:
        return BucketRef(BucketKind.ORGANIZATION, organization.id)
    if site is not None:
        return BucketRef(BucketKind.SITE, site.site_hash)
    if license is not None:
        if license.site_hash:
            return BucketRef(BucketKind.SITE, license.site_hash)
        return BucketRef(BucketKind.LICENSE, license.license_key)
    return None


class QuotaAccountant:
    """Reads and charges token buckets.

    Resets are lazy: whoever touches a bucket past its reset date swaps
    it to a fresh month with a compare-and-swap on ``reset_date``, so two
    readers racing across the boundary reset it exactly once.
    """

    def __init__(self, store: BaseStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def bucket_for(context: AccessContext) -> BucketRef | None:
        if isinstance(context, JWTAccess):
            return bucket_ref_for(context.organization, context.site, None)
        if isinstance(context, (LicenseAccess, SiteHashAccess)):
            return bucket_ref_for(context.organization, context.site, context.license)
        return None

    async def get_usage(self, ref: BucketRef) -> QuotaUsage | None:
        """Current usage of a bucket, reset first if its month is over."""
        bucket = await self._fresh_bucket(ref)
        if bucket is None:
            return None
        return QuotaUsage.from_bucket(bucket)

    async def site_usage(self, site_hash: str) -> QuotaUsage:
        """Usage of a site's own bucket; a site never seen reports free-plan defaults."""
        usage = await self.get_usage(BucketRef(BucketKind.SITE, site_hash))
        if usage is not None:
            return usage
        limit = token_limit_for(Plan.FREE)
        return QuotaUsage(
            used=0,
            limit=limit,
            remaining=limit,
            plan=Plan.FREE,
            reset_date=next_reset_date(self._clock()),
        )

    async def deduct(
        self,
        ref: BucketRef,
        tokens: int,
        entry: UsageLog | None = None,
        require_remaining: bool = False,
    ) -> QuotaUsage | None:
        """Charge ``tokens`` against a bucket and append a usage log row.

        Remaining never drops below zero. With ``require_remaining`` the
        charge is refused (None) if the bucket drained in the meantime;
        nothing is logged in that case.
        """
        if tokens <= 0:
            raise ValueError(f"tokens must be positive, got {tokens}")

        await self._fresh_bucket(ref)
        bucket = await self._store.deduct_bucket(ref, tokens, require_remaining=require_remaining)
        if bucket is None:
            log.info("quota_deduct_refused", bucket=ref.kind.value, tokens=tokens)
            return None

        await self.record(entry or UsageLog(id="", tokens=tokens, bucket_kind=ref.kind), ref)
        log.debug(
            "quota_deducted",
            bucket=ref.kind.value,
            tokens=tokens,
            remaining=bucket.tokens_remaining,
        )
        return QuotaUsage.from_bucket(bucket)

    async def record(self, entry: UsageLog, ref: BucketRef | None = None) -> None:
        if not entry.id:
            entry.id = str(uuid7())
        if ref is not None:
            entry.bucket_kind = ref.kind
        await self._store.insert_usage_log(entry)

    async def _fresh_bucket(self, ref: BucketRef) -> QuotaBucket | None:
        for _ in range(_MAX_RESET_ATTEMPTS):
            bucket = await self._store.get_bucket(ref)
            now = self._clock()
            if bucket is None or not reset_due(bucket.reset_date, now):
                return bucket

            fresh = await self._store.reset_bucket(ref, bucket.reset_date, next_reset_date(now))
            if fresh is not None:
                log.info(
                    "quota_reset",
                    bucket=ref.kind.value,
                    previous_reset=bucket.reset_date.isoformat(),
                    next_reset=fresh.reset_date.isoformat(),
                )
                return fresh
            # another caller reset it first; re-read
        return await self._store.get_bucket(ref)
