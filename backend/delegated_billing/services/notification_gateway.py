"""Customer-facing lifecycle emails: cancellation, resumption and dunning cancellation."""

from __future__ import annotations

import logging
from html import escape
from uuid import UUID

from delegated_billing.schemas.email import TransactionalEmail
from delegated_billing.schemas.notification import SubscriptionEmailContext
from delegated_billing.services.email_service import EmailService

CATEGORY_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
CATEGORY_SUBSCRIPTION_RESUMED = "subscription_resumed"
CATEGORY_DUNNING_CANCELLATION = "dunning_cancellation"

_RED = "#dc3545"
_GREEN = "#28a745"


def _layout(header: str, color: str, paragraphs: list[str]) -> str:
    body = "".join(f"<p>{paragraph}</p>" for paragraph in paragraphs)
    return (
        "<!DOCTYPE html><html><body "
        'style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">'
        '<div style="max-width: 600px; margin: 0 auto; padding: 20px;">'
        f'<div style="background-color: {color}; color: white; padding: 20px; '
        f'text-align: center;"><h2>{header}</h2></div>'
        f'<div style="padding: 20px;">{body}</div>'
        "</div></body></html>"
    )


def _sign_off(context: SubscriptionEmailContext) -> str:
    return f"Best regards,<br>{escape(context.workspace_name)} Team"


class NotificationGateway:
    """Renders lifecycle emails and hands them to the EmailService.

    Each ``send_*`` method raises whatever the EmailService raises; callers
    treat delivery as best effort.
    """

    def __init__(
        self,
        email_service: EmailService,
        logger: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ):
        self.email_service = email_service
        self.logger = logger or logging.getLogger(__name__)

    async def deliver(self, category: str, context: SubscriptionEmailContext | None) -> bool:
        """Send the ``category`` email for ``context``, logging instead of raising.

        Returns True only when the email was handed to the EmailService.
        """
        senders = {
            CATEGORY_SUBSCRIPTION_CANCELLED: self.send_cancellation_email,
            CATEGORY_SUBSCRIPTION_RESUMED: self.send_resumption_email,
            CATEGORY_DUNNING_CANCELLATION: self.send_dunning_cancellation_email,
        }
        send = senders.get(category)
        if send is None:
            raise ValueError(f"Unknown email category: {category}")
        if context is None:
            self.logger.warning("No subscription details available, skipping %s email", category)
            return False
        try:
            return await send(context)
        except Exception:
            self.logger.warning(
                "Failed to send %s email for subscription %s",
                category,
                context.subscription_id,
                exc_info=True,
            )
            return False

    async def send_cancellation_email(self, context: SubscriptionEmailContext) -> bool:
        product = escape(context.product_name)
        return await self._send(
            context,
            subject=f"Subscription Cancelled - {context.product_name}",
            category=CATEGORY_SUBSCRIPTION_CANCELLED,
            html_body=_layout(
                "Subscription Cancelled",
                _RED,
                [
                    f"Hi {escape(context.customer_name or 'there')},",
                    f"Your subscription to <strong>{product}</strong> has been cancelled "
                    "as scheduled.",
                    "We're sorry to see you go. If you'd like to resubscribe in the future, "
                    "you can do so anytime from our website.",
                    "Thank you for being a valued customer.",
                    _sign_off(context),
                ],
            ),
            text_body=(
                f"Your subscription to {context.product_name} has been cancelled as scheduled."
            ),
        )

    async def send_resumption_email(self, context: SubscriptionEmailContext) -> bool:
        product = escape(context.product_name)
        return await self._send(
            context,
            subject=f"Subscription Resumed - {context.product_name}",
            category=CATEGORY_SUBSCRIPTION_RESUMED,
            html_body=_layout(
                "Subscription Resumed",
                _GREEN,
                [
                    f"Hi {escape(context.customer_name or 'there')},",
                    f"Your subscription to <strong>{product}</strong> has been automatically "
                    "resumed as scheduled.",
                    "You now have full access to all features. Welcome back!",
                    "If you have any questions, please don't hesitate to contact us.",
                    _sign_off(context),
                ],
            ),
            text_body=(
                f"Your subscription to {context.product_name} has been resumed as scheduled."
            ),
        )

    async def send_dunning_cancellation_email(self, context: SubscriptionEmailContext) -> bool:
        product = escape(context.product_name)
        paragraphs = [
            f"Hi {escape(context.customer_name or 'there')},",
            f"We regret to inform you that your subscription to <strong>{product}</strong> "
            "has been cancelled due to repeated payment failures.",
            "Despite multiple attempts, we were unable to collect your payment. "
            "As a result, your access to the service has been terminated.",
            "If you'd like to reactivate your subscription, please renew your payment "
            "authorization and resubscribe.",
        ]
        if context.support_email:
            paragraphs.append(
                "If you believe this was an error or need assistance, please contact us at "
                f"{escape(context.support_email)}."
            )
        paragraphs.append(_sign_off(context))
        return await self._send(
            context,
            subject=f"Subscription Cancelled - Payment Issues - {context.product_name}",
            category=CATEGORY_DUNNING_CANCELLATION,
            html_body=_layout("Subscription Cancelled", _RED, paragraphs),
            text_body=(
                f"Your subscription to {context.product_name} has been cancelled due to "
                "repeated payment failures."
            ),
        )

    async def _send(
        self,
        context: SubscriptionEmailContext,
        *,
        subject: str,
        category: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        if not context.customer_email:
            self.logger.warning(
                "Subscription %s has no customer email, skipping %s email",
                context.subscription_id,
                category,
            )
            return False
        email = TransactionalEmail(
            to=[context.customer_email],
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            tags=_tags(category, context.subscription_id),
        )
        return await self.email_service.send_transactional_email(email)


def _tags(category: str, subscription_id: UUID) -> dict[str, str]:
    return {"category": category, "subscription_id": str(subscription_id)}
