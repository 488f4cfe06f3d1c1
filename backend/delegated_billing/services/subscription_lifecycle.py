"""Service applying scheduled subscription transitions: cancellations and resumptions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from delegated_billing.models.subscription import Subscription, SubscriptionStatus
from delegated_billing.repositories.subscription_repository import SubscriptionRepository
from delegated_billing.schemas.notification import SubscriptionEmailContext
from delegated_billing.schemas.scheduler import StageResult
from delegated_billing.services.billing_periods import period_starting_at
from delegated_billing.services.notification_gateway import (
    CATEGORY_SUBSCRIPTION_CANCELLED,
    CATEGORY_SUBSCRIPTION_RESUMED,
    NotificationGateway,
)

STAGE_CANCELLATIONS = "cancellations"
STAGE_RESUMPTIONS = "resumptions"

SCHEDULED_CANCELLATION_REASON = "Scheduled cancellation processed"
SCHEDULED_RESUMPTION_REASON = "Scheduled resumption processed"


@dataclass(frozen=True)
class _DueSubscription:
    """Values read when the due query ran; later transitions are guarded on them."""

    id: UUID
    workspace_id: UUID
    status: str
    total_amount_in_cents: int
    billing_interval: str

    @classmethod
    def from_model(cls, subscription: Subscription) -> _DueSubscription:
        return cls(
            id=UUID(str(subscription.id)),
            workspace_id=UUID(str(subscription.workspace_id)),
            status=str(subscription.status),
            total_amount_in_cents=int(subscription.total_amount_in_cents or 0),
            billing_interval=str(subscription.billing_interval),
        )


class SubscriptionLifecycleService:
    """Applies due scheduled cancellations and resumptions.

    For each due subscription the status mutation commits first, the state
    change is recorded next, and the customer email goes out last. A failed
    email never undoes the transition; a failed transition never sends an email.
    """

    def __init__(
        self,
        db: Session,
        gateway: NotificationGateway,
        logger: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ):
        self.db = db
        self.subscription_repo = SubscriptionRepository(db)
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)

    async def process_cancellations(self, now: datetime | None = None) -> StageResult:
        now = now or datetime.now(UTC)
        result = StageResult(stage=STAGE_CANCELLATIONS)

        due = [
            _DueSubscription.from_model(sub)
            for sub in self.subscription_repo.get_subscriptions_due_for_cancellation(now)
        ]
        if not due:
            self.logger.debug("No subscriptions due for cancellation")
            return result
        self.logger.info("Found %d subscriptions due for cancellation", len(due))

        for sub in due:
            try:
                changed = self.subscription_repo.cancel_subscription_immediately(
                    sub.id, expected_status=sub.status, now=now
                )
            except SQLAlchemyError:
                self.db.rollback()
                self.logger.exception("Failed to cancel subscription %s", sub.id)
                result.failed += 1
                continue

            if not changed:
                self.logger.info(
                    "Subscription %s is no longer %s, skipping cancellation", sub.id, sub.status
                )
                result.skipped += 1
                continue

            result.processed += 1
            self.logger.info("Canceled subscription %s (was %s)", sub.id, sub.status)
            self._record_transition(
                sub,
                to_status=SubscriptionStatus.CANCELED.value,
                to_amount_cents=0,
                reason=SCHEDULED_CANCELLATION_REASON,
            )
            await self.gateway.deliver(
                CATEGORY_SUBSCRIPTION_CANCELLED, self._email_context(sub.id)
            )

        return result

    async def process_resumptions(self, now: datetime | None = None) -> StageResult:
        now = now or datetime.now(UTC)
        result = StageResult(stage=STAGE_RESUMPTIONS)

        due = [
            _DueSubscription.from_model(sub)
            for sub in self.subscription_repo.get_subscriptions_due_for_resumption(now)
        ]
        if not due:
            self.logger.debug("No subscriptions due for resumption")
            return result
        self.logger.info("Found %d subscriptions due for resumption", len(due))

        for sub in due:
            try:
                period_start, period_end = period_starting_at(now, sub.billing_interval)
                changed = self.subscription_repo.resume_subscription(
                    sub.id, period_start=period_start, period_end=period_end
                )
            except ValueError:
                self.logger.exception("Cannot compute a new billing period for %s", sub.id)
                result.failed += 1
                continue
            except SQLAlchemyError:
                self.db.rollback()
                self.logger.exception("Failed to resume subscription %s", sub.id)
                result.failed += 1
                continue

            if not changed:
                self.logger.info("Subscription %s is no longer paused, skipping resumption", sub.id)
                result.skipped += 1
                continue

            result.processed += 1
            self.logger.info("Resumed subscription %s until %s", sub.id, period_end.isoformat())
            self._record_transition(
                sub,
                to_status=SubscriptionStatus.ACTIVE.value,
                to_amount_cents=sub.total_amount_in_cents,
                reason=SCHEDULED_RESUMPTION_REASON,
            )
            await self.gateway.deliver(CATEGORY_SUBSCRIPTION_RESUMED, self._email_context(sub.id))

        return result

    def _record_transition(
        self,
        sub: _DueSubscription,
        *,
        to_status: str,
        to_amount_cents: int,
        reason: str,
    ) -> None:
        try:
            self.subscription_repo.record_state_change(
                subscription_id=sub.id,
                workspace_id=sub.workspace_id,
                from_status=sub.status,
                to_status=to_status,
                from_amount_cents=sub.total_amount_in_cents,
                to_amount_cents=to_amount_cents,
                change_reason=reason,
            )
        except SQLAlchemyError:
            self.db.rollback()
            self.logger.exception(
                "Failed to record %s -> %s state change for subscription %s",
                sub.status,
                to_status,
                sub.id,
            )

    def _email_context(self, subscription_id: UUID) -> SubscriptionEmailContext | None:
        try:
            return self.subscription_repo.get_email_context(subscription_id)
        except SQLAlchemyError:
            self.db.rollback()
            self.logger.exception("Failed to load email details for subscription %s", subscription_id)
            return None
