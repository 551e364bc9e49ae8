"""Billing and notification adapters — Stripe lookups plus log-only side effects."""

from src.billing.notifications import LoggingEmailSender, LoggingInstallationRecorder
from src.billing.stripe_billing import StripeBilling

__all__ = [
    "LoggingEmailSender",
    "LoggingInstallationRecorder",
    "StripeBilling",
]
