"""Service for creating operator-facing in-app notifications."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from delegated_billing.models.notification import Notification
from delegated_billing.repositories.notification_repository import NotificationRepository

# Notification categories
CATEGORY_DUNNING = "dunning"
CATEGORY_PAYMENT = "payment"
CATEGORY_SUBSCRIPTION = "subscription"


class NotificationService:
    """Service for creating in-app notifications from system events."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def notify(
        self,
        *,
        workspace_id: UUID,
        category: str,
        title: str,
        message: str,
        resource_type: str | None = None,
        resource_id: UUID | None = None,
    ) -> Notification:
        """Create a notification."""
        return self.repo.create(
            workspace_id=workspace_id,
            category=category,
            title=title,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
        )

    def notify_final_action_unhandled(
        self,
        *,
        workspace_id: UUID,
        campaign_id: UUID,
        subscription_id: UUID,
        final_action: str,
    ) -> Notification:
        """Alert operators that an exhausted campaign needs manual handling."""
        return self.notify(
            workspace_id=workspace_id,
            category=CATEGORY_DUNNING,
            title="Dunning final action needs attention",
            message=(
                f"Dunning campaign {campaign_id} for subscription {subscription_id} "
                f"exhausted its retries, but final action '{final_action}' cannot be "
                f"applied automatically. Handle it manually."
            ),
            resource_type="dunning_campaign",
            resource_id=campaign_id,
        )

    def notify_payment_recovered(
        self,
        *,
        workspace_id: UUID,
        subscription_id: UUID,
        amount_cents: int,
        transaction_hash: str,
    ) -> Notification:
        """Create a notification when a dunning retry collects the payment."""
        amount = amount_cents / 100
        return self.notify(
            workspace_id=workspace_id,
            category=CATEGORY_PAYMENT,
            title="Payment recovered",
            message=(
                f"Payment of {amount:.2f} for subscription {subscription_id} "
                f"was recovered (tx {transaction_hash})."
            ),
            resource_type="subscription",
            resource_id=subscription_id,
        )

    def notify_redemption_unresolved(
        self,
        *,
        workspace_id: UUID,
        campaign_id: UUID,
        subscription_id: UUID,
        attempt_id: UUID,
    ) -> Notification:
        """Alert operators that a retry's outcome is unknown and retries are on hold."""
        return self.notify(
            workspace_id=workspace_id,
            category=CATEGORY_DUNNING,
            title="Dunning retry outcome unknown",
            message=(
                f"Payment retry {attempt_id} for subscription {subscription_id} never "
                f"recorded whether the delegation was redeemed. Retries for dunning "
                f"campaign {campaign_id} are on hold until the payment is reconciled."
            ),
            resource_type="dunning_campaign",
            resource_id=campaign_id,
        )

    def notify_payment_unreconciled(
        self,
        *,
        workspace_id: UUID,
        campaign_id: UUID,
        subscription_id: UUID,
        transaction_hash: str,
    ) -> Notification:
        """Alert operators that a payment settled for a campaign that had already closed."""
        return self.notify(
            workspace_id=workspace_id,
            category=CATEGORY_PAYMENT,
            title="Payment needs reconciliation",
            message=(
                f"A dunning retry for subscription {subscription_id} was paid "
                f"(tx {transaction_hash}), but dunning campaign {campaign_id} was no "
                f"longer active. The subscription was left unchanged."
            ),
            resource_type="dunning_campaign",
            resource_id=campaign_id,
        )
