"""Tests for the Stripe adapter and the log-only notification sinks."""

from __future__ import annotations

from datetime import date
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from src.billing.notifications import LoggingEmailSender, LoggingInstallationRecorder
from src.billing.stripe_billing import StripeBilling
from src.core.exceptions import InfrastructureError, PaymentError
from src.core.types import Plan, Site


def _session(**kwargs: object) -> SimpleNamespace:
    defaults: dict[str, object] = {
        "payment_status": "paid",
        "customer_details": SimpleNamespace(email="Buyer@Example.com"),
        "metadata": {"credits": "25"},
    }
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


def _sub(status: str, created: int, plan: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(status=status, created=created, metadata={"plan": plan} if plan else {})


class TestRetrieveCheckout:
    @pytest.mark.asyncio
    async def test_paid_session(self) -> None:
        with patch("stripe.checkout.Session.retrieve", return_value=_session()) as retrieve:
            session = await StripeBilling(api_key="sk_test").retrieve_checkout("cs_1")
        assert session.paid is True
        assert session.email == "buyer@example.com"
        assert session.credits == 25
        assert retrieve.call_args.kwargs["api_key"] == "sk_test"

    @pytest.mark.asyncio
    async def test_email_from_metadata(self) -> None:
        session = _session(customer_details=None, metadata={"credits": "5", "user_email": "m@x.io"})
        with patch("stripe.checkout.Session.retrieve", return_value=session):
            result = await StripeBilling(api_key="sk_test").retrieve_checkout("cs_1")
        assert result.email == "m@x.io"

    @pytest.mark.asyncio
    async def test_unpaid_and_bad_credits(self) -> None:
        session = _session(payment_status="unpaid", metadata={"credits": "lots"})
        with patch("stripe.checkout.Session.retrieve", return_value=session):
            result = await StripeBilling(api_key="sk_test").retrieve_checkout("cs_1")
        assert result.paid is False
        assert result.credits == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self) -> None:
        error = stripe.InvalidRequestError("No such checkout.session", param="id")
        with patch("stripe.checkout.Session.retrieve", side_effect=error):
            with pytest.raises(PaymentError) as exc_info:
                await StripeBilling(api_key="sk_test").retrieve_checkout("cs_missing")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_stripe_outage(self) -> None:
        with patch("stripe.checkout.Session.retrieve", side_effect=stripe.StripeError("boom")):
            with pytest.raises(InfrastructureError) as exc_info:
                await StripeBilling(api_key="sk_test").retrieve_checkout("cs_1")
        assert exc_info.value.code == "CREDITS_ERROR"

    @pytest.mark.asyncio
    async def test_unconfigured(self) -> None:
        with pytest.raises(PaymentError):
            await StripeBilling(api_key="").retrieve_checkout("cs_1")


class TestSubscriptionStatus:
    @pytest.mark.asyncio
    async def test_unconfigured_is_free(self) -> None:
        status = await StripeBilling(api_key="").get_subscription_status("a@example.com")
        assert status.is_paid is False

    @pytest.mark.asyncio
    async def test_active_subscription_wins(self) -> None:
        customers = SimpleNamespace(data=[SimpleNamespace(id="cus_1")])
        subs = SimpleNamespace(data=[_sub("canceled", 200), _sub("active", 100, plan="agency")])
        with patch("stripe.Customer.list", return_value=customers), \
                patch("stripe.Subscription.list", return_value=subs):
            status = await StripeBilling(api_key="sk_test").get_subscription_status("a@x.io")
        assert status.status == "active"
        assert status.plan == "agency"

    @pytest.mark.asyncio
    async def test_latest_inactive_reported(self) -> None:
        customers = SimpleNamespace(data=[SimpleNamespace(id="cus_1")])
        subs = SimpleNamespace(data=[_sub("canceled", 100), _sub("past_due", 300)])
        with patch("stripe.Customer.list", return_value=customers), \
                patch("stripe.Subscription.list", return_value=subs):
            status = await StripeBilling(api_key="sk_test").get_subscription_status("a@x.io")
        assert status.status == "past_due"
        assert status.plan == "pro"
        assert status.is_paid is True

    @pytest.mark.asyncio
    async def test_no_customer(self) -> None:
        with patch("stripe.Customer.list", return_value=SimpleNamespace(data=[])):
            status = await StripeBilling(api_key="sk_test").get_subscription_status("a@x.io")
        assert status.plan == "free"
        assert status.status == "none"


class TestNotifications:
    @pytest.mark.asyncio
    async def test_sinks_accept_calls(self) -> None:
        site = Site(
            id="s", site_hash="h", plan=Plan.FREE, token_limit=50,
            tokens_used=0, tokens_remaining=50, reset_date=date(2026, 4, 1),
        )
        await LoggingEmailSender().send_license_email("a@example.com", "key-123456789", "pro")
        await LoggingInstallationRecorder().record_installation(site, None, None)
