"""DunningCampaign repository for data access."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from delegated_billing.models.dunning_attempt import DunningAttempt, DunningAttemptStatus
from delegated_billing.models.dunning_campaign import DunningCampaign, DunningCampaignStatus
from delegated_billing.models.subscription import TERMINAL_STATUSES, Subscription


class DunningCampaignRepository:
    """Repository for DunningCampaign and its DunningAttempt rows."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, campaign_id: UUID) -> DunningCampaign | None:
        return self.db.query(DunningCampaign).filter(DunningCampaign.id == campaign_id).first()

    def get_campaigns_needing_final_action(self) -> list[DunningCampaign]:
        """Campaigns that exhausted their retries and have no final action recorded.

        Campaigns whose subscription already reached a terminal status are left out.
        """
        return (
            self.db.query(DunningCampaign)
            .join(Subscription, Subscription.id == DunningCampaign.subscription_id)
            .filter(
                DunningCampaign.retry_count >= DunningCampaign.max_retries,
                DunningCampaign.final_action_taken.is_(None),
                Subscription.status.notin_(TERMINAL_STATUSES),
            )
            .order_by(DunningCampaign.created_at.asc())
            .all()
        )

    def get_campaigns_due_for_retry(self, now: datetime, limit: int = 100) -> list[DunningCampaign]:
        return (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.status == DunningCampaignStatus.ACTIVE.value,
                DunningCampaign.retry_count < DunningCampaign.max_retries,
                DunningCampaign.final_action_taken.is_(None),
                DunningCampaign.next_retry_at.isnot(None),
                DunningCampaign.next_retry_at <= now,
            )
            .order_by(DunningCampaign.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    def fail_dunning_campaign(self, campaign_id: UUID, final_action_taken: str) -> bool:
        """Record the final action and fail the campaign.

        Only the first caller wins; returns False if a final action was
        already recorded.
        """
        count = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.final_action_taken.is_(None),
            )
            .update(
                {
                    "final_action_taken": final_action_taken,
                    "status": DunningCampaignStatus.FAILED.value,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count == 1

    def mark_final_action_alerted(self, campaign_id: UUID, now: datetime) -> bool:
        count = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.final_action_alerted_at.is_(None),
            )
            .update({"final_action_alerted_at": now}, synchronize_session=False)
        )
        self.db.commit()
        return count == 1

    def record_retry_failure(
        self,
        campaign_id: UUID,
        *,
        expected_retry_count: int,
        retry_count: int,
        next_retry_at: datetime | None,
        now: datetime,
    ) -> bool:
        """Advance the retry counter, guarded on the count the caller observed."""
        count = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.status == DunningCampaignStatus.ACTIVE.value,
                DunningCampaign.retry_count == expected_retry_count,
            )
            .update(
                {
                    "retry_count": retry_count,
                    "next_retry_at": next_retry_at,
                    "last_retry_at": now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count == 1

    def touch_last_retry(self, campaign_id: UUID, now: datetime) -> None:
        self.db.query(DunningCampaign).filter(DunningCampaign.id == campaign_id).update(
            {"last_retry_at": now}, synchronize_session=False
        )
        self.db.commit()

    def hold_retries(self, campaign_id: UUID, now: datetime) -> bool:
        """Take an active campaign off the retry schedule until an operator steps in."""
        count = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.status == DunningCampaignStatus.ACTIVE.value,
            )
            .update({"next_retry_at": None, "last_retry_at": now}, synchronize_session=False)
        )
        self.db.commit()
        return count == 1

    def mark_recovered(
        self,
        campaign_id: UUID,
        *,
        recovered_amount_cents: int,
        now: datetime,
    ) -> bool:
        count = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.status == DunningCampaignStatus.ACTIVE.value,
            )
            .update(
                {
                    "status": DunningCampaignStatus.RECOVERED.value,
                    "recovered_amount_cents": recovered_amount_cents,
                    "next_retry_at": None,
                    "last_retry_at": now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count == 1

    def create_attempt(self, campaign_id: UUID, attempt_number: int) -> DunningAttempt:
        attempt = DunningAttempt(
            campaign_id=campaign_id,
            attempt_number=attempt_number,
            status=DunningAttemptStatus.PENDING.value,
        )
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)
        return attempt

    def complete_attempt(
        self,
        attempt: DunningAttempt,
        *,
        status: DunningAttemptStatus,
        transaction_hash: str | None = None,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> DunningAttempt:
        attempt.status = status.value  # type: ignore[assignment]
        attempt.transaction_hash = transaction_hash  # type: ignore[assignment]
        attempt.error_kind = error_kind  # type: ignore[assignment]
        attempt.error_message = error_message  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(attempt)
        return attempt

    def get_attempts(self, campaign_id: UUID) -> list[DunningAttempt]:
        return (
            self.db.query(DunningAttempt)
            .filter(DunningAttempt.campaign_id == campaign_id)
            .order_by(DunningAttempt.attempt_number.asc(), DunningAttempt.created_at.asc())
            .all()
        )

    def get_successful_attempt(self, campaign_id: UUID) -> DunningAttempt | None:
        return (
            self.db.query(DunningAttempt)
            .filter(
                DunningAttempt.campaign_id == campaign_id,
                DunningAttempt.status == DunningAttemptStatus.SUCCESS.value,
            )
            .first()
        )

    def get_unresolved_attempt(self, campaign_id: UUID) -> DunningAttempt | None:
        """Oldest attempt whose redemption outcome was never recorded."""
        return (
            self.db.query(DunningAttempt)
            .filter(
                DunningAttempt.campaign_id == campaign_id,
                DunningAttempt.status.in_(
                    [DunningAttemptStatus.PENDING.value, DunningAttemptStatus.UNKNOWN.value]
                ),
            )
            .order_by(DunningAttempt.created_at.asc())
            .first()
        )
