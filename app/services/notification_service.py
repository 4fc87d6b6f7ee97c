"""Email notifications through the Mailgun HTTP API."""
import logging

import httpx

from app.config import Settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Fire-and-forget email sender. Failures are logged, never raised."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self._transport = transport
        if not settings.mailgun_api_key or not settings.mailgun_domain:
            logger.warning("Mailgun not configured - emails will only be logged")

    @property
    def admin_emails(self) -> list[str]:
        """Operator addresses that receive alerts."""
        return [email.strip() for email in self.settings.admin_emails if email.strip()]

    async def send(
        self,
        recipients: str | list[str],
        subject: str,
        text: str,
        tags: list[str] | None = None,
    ) -> bool:
        """
        Send a plain text email.

        Returns:
            True if Mailgun accepted the message, False otherwise
        """
        to = [recipients] if isinstance(recipients, str) else list(recipients)
        if not to:
            logger.warning(f"No recipients for email '{subject}'")
            return False

        if not self.settings.mailgun_api_key or not self.settings.mailgun_domain:
            logger.info(f"Email not sent (Mailgun not configured): to={to}, subject={subject!r}")
            return False

        data = {
            "from": self.settings.mailgun_from_email,
            "to": to,
            "subject": subject,
            "text": text,
        }
        if tags:
            data["o:tag"] = tags

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.mailgun_base_url,
                timeout=10.0,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"/v3/{self.settings.mailgun_domain}/messages",
                    data=data,
                    auth=("api", self.settings.mailgun_api_key),
                )
            if response.status_code >= 400:
                logger.error(f"Mailgun rejected email '{subject}' to {to}: {response.status_code} {response.text}")
                return False
        except httpx.HTTPError as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}", exc_info=True)
            return False

        logger.info(f"Email '{subject}' sent to {len(to)} recipient(s)")
        return True

    async def notify_admins(self, subject: str, text: str, severity: str = "medium") -> bool:
        """Send an operator alert to every admin address."""
        recipients = self.admin_emails
        if not recipients:
            logger.warning(f"No admin emails configured for alert: {subject}")
            return False

        body = (
            f"{text}\n\n"
            f"Severity: {severity}\n"
            f"Admin panel: {self.settings.admin_panel_url}"
        )
        return await self.send(recipients, f"[{severity.upper()}] {subject}", body, tags=["admin-alert"])

    async def send_urgent_alert(self, subject: str, text: str) -> bool:
        """Send an escalation to each admin separately so one bad address cannot block the rest."""
        delivered = False
        for email in self.admin_emails:
            sent = await self.send(email, subject, text, tags=["urgent"])
            delivered = delivered or sent
        return delivered
