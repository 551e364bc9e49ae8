"""Licensing engine — request resolution, quota metering and the site lifecycle."""

from src.saas.access import AccessResolver
from src.saas.credits import CreditLedger
from src.saas.decision import AccessDecision
from src.saas.identity import IdentityManager
from src.saas.quota import QuotaAccountant
from src.saas.sites import AttachResult, LicenseInfo, SiteLifecycleManager
from src.saas.tokens import JWTManager

__all__ = [
    "AccessDecision",
    "AccessResolver",
    "AttachResult",
    "CreditLedger",
    "IdentityManager",
    "JWTManager",
    "LicenseInfo",
    "QuotaAccountant",
    "SiteLifecycleManager",
]
