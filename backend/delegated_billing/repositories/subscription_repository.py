"""Subscription repository: due-work queries, status transitions and the state-change log.

Every mutation is a single conditional ``UPDATE`` keyed on the row's id and the
status the caller observed, committed on its own. A concurrent writer that moves
the row first makes the update match zero rows instead of being overwritten.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from delegated_billing.models.customer import Customer
from delegated_billing.models.delegation import Delegation
from delegated_billing.models.product import Product
from delegated_billing.models.subscription import (
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from delegated_billing.models.subscription_state_change import (
    SYSTEM_INITIATOR,
    SubscriptionStateChange,
)
from delegated_billing.models.workspace import Workspace
from delegated_billing.schemas.notification import SubscriptionEmailContext

# Statuses a dunning pause may start from
_PAUSABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)
_PAUSE_CAS_ATTEMPTS = 3


class ConcurrentUpdateError(Exception):
    """Raised when a row kept changing underneath a guarded update."""


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_subscriptions_due_for_cancellation(self, now: datetime) -> list[Subscription]:
        """Non-terminal subscriptions whose ``cancel_at`` has passed."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.cancel_at.isnot(None),
                Subscription.cancel_at <= now,
                Subscription.status.notin_(TERMINAL_STATUSES),
            )
            .order_by(Subscription.cancel_at.asc())
            .all()
        )

    def get_subscriptions_due_for_resumption(self, now: datetime) -> list[Subscription]:
        """Paused subscriptions whose ``pause_ends_at`` has passed."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.PAUSED.value,
                Subscription.pause_ends_at.isnot(None),
                Subscription.pause_ends_at <= now,
            )
            .order_by(Subscription.pause_ends_at.asc())
            .all()
        )

    def cancel_subscription_immediately(
        self,
        subscription_id: UUID,
        *,
        expected_status: str,
        now: datetime,
    ) -> bool:
        """Cancel a subscription and clear its monetary total.

        Returns False when the row is no longer in ``expected_status`` (or is
        terminal), in which case nothing was written.
        """
        if expected_status in TERMINAL_STATUSES:
            return False
        count = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.status == expected_status,
            )
            .update(
                {
                    "status": SubscriptionStatus.CANCELED.value,
                    "canceled_at": now,
                    "total_amount_in_cents": 0,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count == 1

    def schedule_subscription_cancellation(
        self,
        subscription_id: UUID,
        *,
        cancel_at: datetime,
        reason: str,
    ) -> bool:
        """Schedule a cancellation at ``cancel_at``.

        Safe to repeat: an existing earlier ``cancel_at`` is kept, and terminal
        subscriptions are left alone. Returns True if the row changed.
        """
        count = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.status.notin_(TERMINAL_STATUSES),
                or_(Subscription.cancel_at.is_(None), Subscription.cancel_at > cancel_at),
            )
            .update(
                {"cancel_at": cancel_at, "cancellation_reason": reason},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count == 1

    def pause_subscription(
        self,
        subscription_id: UUID,
        *,
        now: datetime,
        pause_ends_at: datetime | None = None,
    ) -> str | None:
        """Pause a subscription, indefinitely when ``pause_ends_at`` is None.

        Returns the status the subscription left when a status transition
        happened, or None when there was nothing to transition (already paused,
        terminal or missing). An already-paused subscription has its
        ``pause_ends_at`` overwritten so repeated calls converge on the same row.
        """
        for _ in range(_PAUSE_CAS_ATTEMPTS):
            current = (
                self.db.query(Subscription.status)
                .filter(Subscription.id == subscription_id)
                .scalar()
            )
            if current is None or current in TERMINAL_STATUSES:
                return None

            if current == SubscriptionStatus.PAUSED.value:
                count = (
                    self.db.query(Subscription)
                    .filter(
                        Subscription.id == subscription_id,
                        Subscription.status == SubscriptionStatus.PAUSED.value,
                    )
                    .update({"pause_ends_at": pause_ends_at}, synchronize_session=False)
                )
                self.db.commit()
                if count == 1:
                    return None
                continue

            if current not in _PAUSABLE_STATUSES:
                return None

            count = (
                self.db.query(Subscription)
                .filter(
                    Subscription.id == subscription_id,
                    Subscription.status == current,
                )
                .update(
                    {
                        "status": SubscriptionStatus.PAUSED.value,
                        "paused_at": now,
                        "pause_ends_at": pause_ends_at,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
            if count == 1:
                return str(current)

        raise ConcurrentUpdateError(
            f"Subscription {subscription_id} kept changing status while pausing"
        )

    def resume_subscription(
        self,
        subscription_id: UUID,
        *,
        period_start: datetime,
        period_end: datetime,
    ) -> bool:
        """Move a paused subscription back to active and start a new period."""
        count = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.PAUSED.value,
            )
            .update(
                {
                    "status": SubscriptionStatus.ACTIVE.value,
                    "paused_at": None,
                    "pause_ends_at": None,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count == 1

    def reactivate_past_due(self, subscription_id: UUID) -> bool:
        """Return a past-due subscription to active after a recovered payment."""
        count = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
            )
            .update({"status": SubscriptionStatus.ACTIVE.value}, synchronize_session=False)
        )
        self.db.commit()
        return count == 1

    def record_state_change(
        self,
        *,
        subscription_id: UUID,
        workspace_id: UUID,
        from_status: str | None,
        to_status: str,
        from_amount_cents: int | None,
        to_amount_cents: int | None,
        change_reason: str,
        initiated_by: str = SYSTEM_INITIATOR,
        line_items_snapshot: dict[str, Any] | None = None,
    ) -> SubscriptionStateChange:
        record = SubscriptionStateChange(
            subscription_id=subscription_id,
            workspace_id=workspace_id,
            from_status=from_status,
            to_status=to_status,
            from_amount_cents=from_amount_cents,
            to_amount_cents=to_amount_cents,
            line_items_snapshot=line_items_snapshot or {},
            change_reason=change_reason,
            initiated_by=initiated_by,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def get_state_changes(
        self,
        subscription_id: UUID,
        skip: int = 0,
        limit: int = 100,
    ) -> list[SubscriptionStateChange]:
        return (
            self.db.query(SubscriptionStateChange)
            .filter(SubscriptionStateChange.subscription_id == subscription_id)
            .order_by(SubscriptionStateChange.created_at.asc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def get_delegation(self, subscription_id: UUID) -> Delegation | None:
        return (
            self.db.query(Delegation)
            .join(Subscription, Subscription.delegation_id == Delegation.id)
            .filter(Subscription.id == subscription_id)
            .first()
        )

    def get_email_context(self, subscription_id: UUID) -> SubscriptionEmailContext | None:
        """Load the customer, product and workspace names needed to address an email."""
        row = (
            self.db.query(Subscription, Customer, Product, Workspace)
            .outerjoin(Customer, Customer.id == Subscription.customer_id)
            .outerjoin(Product, Product.id == Subscription.product_id)
            .outerjoin(Workspace, Workspace.id == Subscription.workspace_id)
            .filter(Subscription.id == subscription_id)
            .first()
        )
        if row is None:
            return None
        subscription, customer, product, workspace = row
        return SubscriptionEmailContext(
            subscription_id=subscription.id,
            customer_name=customer.name if customer else None,
            customer_email=customer.email if customer else None,
            product_name=product.name if product else "your subscription",
            workspace_name=workspace.name if workspace else "",
            support_email=workspace.support_email if workspace else None,
        )
