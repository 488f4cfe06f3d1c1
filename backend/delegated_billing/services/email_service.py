"""Email service for sending transactional emails via SMTP."""

from __future__ import annotations

import logging
from email.message import EmailMessage

from delegated_billing.core.config import settings
from delegated_billing.schemas.email import TransactionalEmail

logger = logging.getLogger(__name__)

_PLAIN_TEXT_FALLBACK = "Please view this email in an HTML-capable client."


class EmailDeliveryError(Exception):
    """Raised when the SMTP server could not accept a message."""


def _format_tags(tags: dict[str, str]) -> str:
    return ", ".join(f"{key}={value}" for key, value in sorted(tags.items()))


class EmailService:
    """Service for sending transactional emails via SMTP."""

    def build_message(self, email: TransactionalEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
        msg["To"] = ", ".join(email.to)
        msg["Subject"] = email.subject
        if email.tags:
            msg["X-Tags"] = _format_tags(email.tags)
            category = email.tags.get("category")
            if category:
                msg["X-Category"] = category
        msg.set_content(email.text_body or _PLAIN_TEXT_FALLBACK)
        msg.add_alternative(email.html_body, subtype="html")
        return msg

    async def send_transactional_email(self, email: TransactionalEmail) -> bool:
        """Send a transactional email via SMTP.

        Args:
            email: Recipients, subject, bodies and tags of the message.

        Returns:
            True if sent successfully (or no-op when SMTP unconfigured).

        Raises:
            EmailDeliveryError: If the SMTP server could not be reached or
                rejected the message.
        """
        if not settings.smtp_enabled:
            logger.info(
                "SMTP not configured, skipping email to %s: %s",
                ", ".join(email.to),
                email.subject,
            )
            return True

        import aiosmtplib

        msg = self.build_message(email)
        try:
            await aiosmtplib.send(
                msg,
                hostname=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USERNAME or None,
                password=settings.SMTP_PASSWORD or None,
                start_tls=settings.SMTP_USE_TLS,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(
                f"Failed to send '{email.subject}' to {', '.join(email.to)}: {exc}"
            ) from exc
        logger.info("Email sent to %s: %s", ", ".join(email.to), email.subject)
        return True
