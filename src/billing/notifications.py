"""Fire-and-forget side effects: license emails and plugin installation records.

Both are log-only sinks. Delivery to a mail provider or an analytics
table plugs in behind the same interfaces.
"""

from __future__ import annotations

from src.core.interfaces import EmailSender, InstallationRecorder
from src.core.logging import get_logger, key_preview
from src.core.types import Site

log = get_logger(__name__)


class LoggingEmailSender(EmailSender):
    async def send_license_email(self, email: str, license_key: str, plan: str) -> None:
        log.info(
            "license_email_queued",
            email_domain=email.rsplit("@", 1)[-1],
            license_key=key_preview(license_key),
            plan=plan,
        )


class LoggingInstallationRecorder(InstallationRecorder):
    async def record_installation(
        self,
        site: Site,
        organization_id: str | None,
        license_key: str | None,
    ) -> None:
        log.info(
            "plugin_installation_recorded",
            site_hash=site.site_hash,
            site_url=site.site_url,
            install_id=site.install_id,
            organization_id=organization_id,
            license_key=key_preview(license_key),
        )
