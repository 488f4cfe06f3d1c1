"""Dunning final actions for campaigns whose payment retries are exhausted."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from delegated_billing.models.dunning_campaign import DunningCampaign, FinalAction
from delegated_billing.models.subscription import SubscriptionStatus
from delegated_billing.repositories.dunning_campaign_repository import DunningCampaignRepository
from delegated_billing.repositories.subscription_repository import (
    ConcurrentUpdateError,
    SubscriptionRepository,
)
from delegated_billing.schemas.scheduler import StageResult
from delegated_billing.services.notification_gateway import (
    CATEGORY_DUNNING_CANCELLATION,
    NotificationGateway,
)
from delegated_billing.services.notification_service import NotificationService

STAGE_FINAL_ACTIONS = "final_actions"

DUNNING_CANCELLATION_REASON = "Failed dunning process - automatic cancellation"
DUNNING_PAUSE_REASON = "Failed dunning process - automatic pause"


@dataclass(frozen=True)
class _ExhaustedCampaign:
    id: UUID
    workspace_id: UUID
    subscription_id: UUID
    final_action: str
    alerted: bool

    @classmethod
    def from_model(cls, campaign: DunningCampaign) -> _ExhaustedCampaign:
        return cls(
            id=UUID(str(campaign.id)),
            workspace_id=UUID(str(campaign.workspace_id)),
            subscription_id=UUID(str(campaign.subscription_id)),
            final_action=str(campaign.final_action or ""),
            alerted=campaign.final_action_alerted_at is not None,
        )


class DunningService:
    """Executes the final action of exhausted dunning campaigns.

    ``final_action_taken`` is written only after the subscription side of the
    action has committed, and it is the only thing that stops a campaign from
    being picked up again. Both side effects converge on the same row state
    when repeated, so a crash between them is safe to retry.
    """

    def __init__(
        self,
        db: Session,
        gateway: NotificationGateway,
        logger: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ):
        self.db = db
        self.subscription_repo = SubscriptionRepository(db)
        self.campaign_repo = DunningCampaignRepository(db)
        self.notification_service = NotificationService(db)
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)

    async def process_final_actions(self, now: datetime | None = None) -> StageResult:
        now = now or datetime.now(UTC)
        result = StageResult(stage=STAGE_FINAL_ACTIONS)

        campaigns = [
            _ExhaustedCampaign.from_model(campaign)
            for campaign in self.campaign_repo.get_campaigns_needing_final_action()
        ]
        if not campaigns:
            self.logger.debug("No dunning campaigns need a final action")
            return result
        self.logger.info("Found %d dunning campaigns needing a final action", len(campaigns))

        for campaign in campaigns:
            action = FinalAction.parse(campaign.final_action)
            try:
                if action is FinalAction.CANCEL:
                    applied = await self._apply_cancel(campaign, now)
                elif action is FinalAction.PAUSE:
                    applied = self._apply_pause(campaign, now)
                elif action is FinalAction.DOWNGRADE:
                    self._flag_unhandled(campaign, now, "downgrade is not implemented")
                    applied = False
                else:
                    self._flag_unhandled(campaign, now, "unrecognized final action")
                    applied = False
            except (SQLAlchemyError, ConcurrentUpdateError):
                self.db.rollback()
                self.logger.exception(
                    "Failed to apply final action %r for dunning campaign %s",
                    campaign.final_action,
                    campaign.id,
                )
                result.failed += 1
                continue

            if applied:
                result.processed += 1
            else:
                result.skipped += 1

        return result

    async def _apply_cancel(self, campaign: _ExhaustedCampaign, now: datetime) -> bool:
        scheduled = self.subscription_repo.schedule_subscription_cancellation(
            campaign.subscription_id,
            cancel_at=now,
            reason=DUNNING_CANCELLATION_REASON,
        )
        if not scheduled:
            self.logger.info(
                "Subscription %s already scheduled for cancellation", campaign.subscription_id
            )

        if not self.campaign_repo.fail_dunning_campaign(campaign.id, campaign.final_action):
            self.logger.info("Dunning campaign %s was already actioned", campaign.id)
            return False

        self.logger.info(
            "Scheduled cancellation of subscription %s after failed dunning campaign %s",
            campaign.subscription_id,
            campaign.id,
        )
        try:
            context = self.subscription_repo.get_email_context(campaign.subscription_id)
        except SQLAlchemyError:
            self.db.rollback()
            self.logger.exception(
                "Failed to load email details for subscription %s", campaign.subscription_id
            )
            context = None
        await self.gateway.deliver(CATEGORY_DUNNING_CANCELLATION, context)
        return True

    def _apply_pause(self, campaign: _ExhaustedCampaign, now: datetime) -> bool:
        from_status = self.subscription_repo.pause_subscription(
            campaign.subscription_id, now=now, pause_ends_at=None
        )
        if from_status is not None:
            subscription = self.subscription_repo.get_by_id(campaign.subscription_id)
            amount = int(subscription.total_amount_in_cents or 0) if subscription else None
            try:
                self.subscription_repo.record_state_change(
                    subscription_id=campaign.subscription_id,
                    workspace_id=campaign.workspace_id,
                    from_status=from_status,
                    to_status=SubscriptionStatus.PAUSED.value,
                    from_amount_cents=amount,
                    to_amount_cents=amount,
                    change_reason=DUNNING_PAUSE_REASON,
                )
            except SQLAlchemyError:
                self.db.rollback()
                self.logger.exception(
                    "Failed to record pause state change for subscription %s",
                    campaign.subscription_id,
                )

        if not self.campaign_repo.fail_dunning_campaign(campaign.id, campaign.final_action):
            self.logger.info("Dunning campaign %s was already actioned", campaign.id)
            return False

        self.logger.info(
            "Paused subscription %s indefinitely after failed dunning campaign %s",
            campaign.subscription_id,
            campaign.id,
        )
        return True

    def _flag_unhandled(self, campaign: _ExhaustedCampaign, now: datetime, problem: str) -> None:
        """Leave the campaign un-actioned and alert operators once."""
        if campaign.alerted:
            self.logger.debug(
                "Dunning campaign %s still awaits manual handling (final action %r)",
                campaign.id,
                campaign.final_action,
            )
            return

        self.logger.warning(
            "Dunning campaign %s for subscription %s: %s (final action %r); leaving it un-actioned",
            campaign.id,
            campaign.subscription_id,
            problem,
            campaign.final_action,
        )
        self.notification_service.notify_final_action_unhandled(
            workspace_id=campaign.workspace_id,
            campaign_id=campaign.id,
            subscription_id=campaign.subscription_id,
            final_action=campaign.final_action,
        )
        self.campaign_repo.mark_final_action_alerted(campaign.id, now)
