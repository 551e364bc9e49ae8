"""Stripe-backed subscription lookup and checkout-session retrieval.

The Stripe SDK is synchronous; calls run in a worker thread so the
event loop is never blocked.
"""

from __future__ import annotations

import asyncio
from typing import Any

import stripe

from config.settings import get_settings
from src.core.constants import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    CREDITS_ERROR,
    PAYMENT_NOT_COMPLETED,
    PLAN_PRO,
)
from src.core.exceptions import InfrastructureError, PaymentError
from src.core.interfaces import CheckoutVerifier, SubscriptionProvider
from src.core.logging import get_logger
from src.core.types import CheckoutSession, SubscriptionStatus

log = get_logger(__name__)


def _metadata(obj: Any) -> dict[str, Any]:
    meta = getattr(obj, "metadata", None) or {}
    return dict(meta)


class StripeBilling(SubscriptionProvider, CheckoutVerifier):
    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else (
            get_settings().stripe_api_key.get_secret_value()
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def get_subscription_status(self, email: str) -> SubscriptionStatus:
        if not self.configured:
            return SubscriptionStatus()
        return await asyncio.to_thread(self._lookup_subscription, email)

    async def retrieve_checkout(self, session_id: str) -> CheckoutSession:
        if not self.configured:
            raise PaymentError("Payments are not configured", code=CREDITS_ERROR, status_code=500)
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id, api_key=self._api_key
            )
        except stripe.InvalidRequestError as exc:
            log.warning("checkout_session_not_found", session_id=session_id, error=str(exc))
            raise PaymentError(
                "Checkout session not found",
                code=PAYMENT_NOT_COMPLETED,
                status_code=400,
            ) from exc
        except stripe.StripeError as exc:
            log.error("checkout_session_retrieve_failed", session_id=session_id, error=str(exc))
            raise InfrastructureError("Failed to verify payment", code=CREDITS_ERROR) from exc

        meta = _metadata(session)
        details = getattr(session, "customer_details", None)
        email = getattr(details, "email", None) or meta.get("user_email")
        try:
            credits = int(meta.get("credits") or 0)
        except (TypeError, ValueError):
            credits = 0

        return CheckoutSession(
            session_id=session_id,
            paid=getattr(session, "payment_status", None) == "paid",
            email=email.strip().lower() if email else None,
            credits=credits,
        )

    def _lookup_subscription(self, email: str) -> SubscriptionStatus:
        customers = stripe.Customer.list(email=email, limit=3, api_key=self._api_key)
        latest: Any = None
        for customer in customers.data:
            subs = stripe.Subscription.list(
                customer=customer.id, status="all", limit=5, api_key=self._api_key
            )
            for sub in subs.data:
                if sub.status in ACTIVE_SUBSCRIPTION_STATUSES:
                    return self._to_status(sub)
                if latest is None or sub.created > latest.created:
                    latest = sub

        if latest is None:
            return SubscriptionStatus()
        return self._to_status(latest)

    @staticmethod
    def _to_status(sub: Any) -> SubscriptionStatus:
        plan = _metadata(sub).get("plan") or PLAN_PRO
        log.debug("subscription_found", status=sub.status, plan=plan)
        return SubscriptionStatus(plan=plan, status=sub.status)
