"""Service retrying failed subscription payments by redeeming the customer's delegation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from delegated_billing.core.config import settings
from delegated_billing.models.dunning_attempt import DunningAttempt, DunningAttemptStatus
from delegated_billing.models.dunning_campaign import DunningCampaign
from delegated_billing.models.shared import ensure_utc
from delegated_billing.models.subscription import SubscriptionStatus
from delegated_billing.repositories.dunning_campaign_repository import DunningCampaignRepository
from delegated_billing.repositories.subscription_repository import SubscriptionRepository
from delegated_billing.schemas.scheduler import RetryRunResult
from delegated_billing.services.billing_periods import retry_delay
from delegated_billing.services.delegation_redeemer import (
    DelegationRedeemer,
    RedemptionError,
    RedemptionErrorKind,
    RedemptionResult,
)
from delegated_billing.services.notification_service import NotificationService

PAYMENT_RECOVERED_REASON = "Dunning payment recovered"

# A pending attempt younger than this may still be redeeming in another run
MIN_UNRESOLVED_ATTEMPT_AGE = timedelta(minutes=10)


class RetryOutcome(str, Enum):
    RECOVERED = "recovered"
    TRANSIENT = "transient"
    REJECTED = "rejected"
    HELD = "held"


@dataclass(frozen=True)
class _DueCampaign:
    id: UUID
    workspace_id: UUID
    subscription_id: UUID
    retry_count: int
    max_retries: int
    retry_interval_days: list[int]
    original_amount_cents: int

    @classmethod
    def from_model(cls, campaign: DunningCampaign) -> _DueCampaign:
        return cls(
            id=UUID(str(campaign.id)),
            workspace_id=UUID(str(campaign.workspace_id)),
            subscription_id=UUID(str(campaign.subscription_id)),
            retry_count=int(campaign.retry_count or 0),
            max_retries=int(campaign.max_retries or 0),
            retry_interval_days=list(campaign.retry_interval_days or []),
            original_amount_cents=int(campaign.original_amount_cents or 0),
        )


def unresolved_attempt_age() -> timedelta:
    """How old a pending attempt must be before its run is presumed dead."""
    return max(
        MIN_UNRESOLVED_ATTEMPT_AGE,
        timedelta(seconds=2 * settings.DELEGATION_REDEEM_TIMEOUT_SECONDS),
    )


class PaymentRetryService:
    """Runs due dunning retries and feeds their outcome into the campaign counters.

    Transient failures leave the counter alone so the campaign is picked up
    again on the next run. Insufficient funds use up one retry. A revoked or
    invalid delegation exhausts the campaign, handing it to the final-action
    stage of the scheduler.

    Every attempt row is written before the redeemer is called and its id is
    sent as the idempotency key. An attempt still ``pending`` on a later run
    means the earlier run died without recording the outcome; the campaign is
    then held for an operator instead of being redeemed again.
    """

    def __init__(
        self,
        db: Session,
        redeemer: DelegationRedeemer,
        logger: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ):
        self.db = db
        self.redeemer = redeemer
        self.subscription_repo = SubscriptionRepository(db)
        self.campaign_repo = DunningCampaignRepository(db)
        self.notification_service = NotificationService(db)
        self.logger = logger or logging.getLogger(__name__)

    async def process_due_retries(
        self,
        now: datetime | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> RetryRunResult:
        now = now or datetime.now(UTC)
        result = RetryRunResult()

        campaigns = [
            _DueCampaign.from_model(campaign)
            for campaign in self.campaign_repo.get_campaigns_due_for_retry(
                now, limit=limit or settings.DUNNING_RETRY_BATCH_SIZE
            )
        ]
        if not campaigns:
            self.logger.debug("No dunning campaigns due for a payment retry")
            return result
        self.logger.info("Retrying payment for %d dunning campaigns", len(campaigns))

        for campaign in campaigns:
            result.attempted += 1
            try:
                outcome = await self._retry(campaign, now, timeout)
            except Exception:
                self.db.rollback()
                self.logger.exception("Payment retry failed for dunning campaign %s", campaign.id)
                result.errors += 1
                continue

            if outcome is RetryOutcome.RECOVERED:
                result.recovered += 1
            elif outcome is RetryOutcome.TRANSIENT:
                result.transient_failures += 1
            elif outcome is RetryOutcome.REJECTED:
                result.rejected += 1
            else:
                result.held += 1

        return result

    async def _retry(
        self,
        campaign: _DueCampaign,
        now: datetime,
        timeout: float | None,
    ) -> RetryOutcome:
        settled = self.campaign_repo.get_successful_attempt(campaign.id)
        if settled is not None:
            # Redeemed on an earlier run that failed before recording the recovery
            return self._apply_recovery(
                campaign, RedemptionResult(transaction_hash=str(settled.transaction_hash)), now
            )

        unresolved = self.campaign_repo.get_unresolved_attempt(campaign.id)
        if unresolved is not None:
            self._hold(campaign, unresolved, now)
            return RetryOutcome.HELD

        attempt = self.campaign_repo.create_attempt(campaign.id, campaign.retry_count + 1)

        try:
            redemption = await self._redeem(campaign, attempt, timeout)
        except RedemptionError as exc:
            self.campaign_repo.complete_attempt(
                attempt,
                status=DunningAttemptStatus.FAILED,
                error_kind=exc.kind.value,
                error_message=exc.message[:1000],
            )
            self._apply_failure(campaign, exc, now)
            return RetryOutcome.TRANSIENT if exc.retryable else RetryOutcome.REJECTED
        except Exception as exc:
            self.campaign_repo.complete_attempt(
                attempt,
                status=DunningAttemptStatus.FAILED,
                error_kind=RedemptionErrorKind.TRANSIENT.value,
                error_message=f"Unexpected redemption error: {exc!r}"[:1000],
            )
            self.campaign_repo.touch_last_retry(campaign.id, now)
            raise

        self.campaign_repo.complete_attempt(
            attempt,
            status=DunningAttemptStatus.SUCCESS,
            transaction_hash=redemption.transaction_hash,
        )
        return self._apply_recovery(campaign, redemption, now)

    async def _redeem(
        self,
        campaign: _DueCampaign,
        attempt: DunningAttempt,
        timeout: float | None,
    ) -> RedemptionResult:
        delegation = self.subscription_repo.get_delegation(campaign.subscription_id)
        if delegation is None:
            raise RedemptionError(
                RedemptionErrorKind.DELEGATION_REVOKED,
                f"Subscription {campaign.subscription_id} has no delegation",
            )
        if delegation.revoked_at is not None:
            raise RedemptionError(
                RedemptionErrorKind.DELEGATION_REVOKED,
                f"Delegation {delegation.id} was revoked",
            )
        payload: dict[str, Any] = dict(delegation.payload or {})
        return await self.redeemer.redeem(
            payload, timeout=timeout, idempotency_key=str(attempt.id)
        )

    def _hold(self, campaign: _DueCampaign, attempt: DunningAttempt, now: datetime) -> None:
        started_at = ensure_utc(attempt.created_at)
        if (
            attempt.status == DunningAttemptStatus.PENDING.value
            and started_at is not None
            and now - started_at < unresolved_attempt_age()
        ):
            self.logger.info(
                "Dunning campaign %s has attempt %s in flight, skipping", campaign.id, attempt.id
            )
            return

        if attempt.status == DunningAttemptStatus.PENDING.value:
            self.campaign_repo.complete_attempt(
                attempt,
                status=DunningAttemptStatus.UNKNOWN,
                error_message="Run ended before the redemption outcome was recorded",
            )
        if not self.campaign_repo.hold_retries(campaign.id, now):
            return

        self.logger.warning(
            "Retries for dunning campaign %s held: outcome of attempt %s is unknown",
            campaign.id,
            attempt.id,
        )
        self.notification_service.notify_redemption_unresolved(
            workspace_id=campaign.workspace_id,
            campaign_id=campaign.id,
            subscription_id=campaign.subscription_id,
            attempt_id=UUID(str(attempt.id)),
        )

    def _apply_failure(self, campaign: _DueCampaign, error: RedemptionError, now: datetime) -> None:
        if error.kind is RedemptionErrorKind.TRANSIENT:
            self.logger.warning(
                "Transient redemption failure for dunning campaign %s, will retry: %s",
                campaign.id,
                error.message,
            )
            self.campaign_repo.touch_last_retry(campaign.id, now)
            return

        if error.kind is RedemptionErrorKind.INSUFFICIENT_FUNDS:
            retry_count = campaign.retry_count + 1
        else:
            retry_count = max(campaign.max_retries, campaign.retry_count + 1)

        next_retry_at = None
        if retry_count < campaign.max_retries:
            next_retry_at = now + retry_delay(campaign.retry_interval_days, retry_count)

        updated = self.campaign_repo.record_retry_failure(
            campaign.id,
            expected_retry_count=campaign.retry_count,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            now=now,
        )
        if not updated:
            self.logger.warning(
                "Dunning campaign %s changed during the retry, counter left as is", campaign.id
            )
            return

        self.logger.info(
            "Redemption rejected for dunning campaign %s (%s), retry %d/%d",
            campaign.id,
            error.kind.value,
            retry_count,
            campaign.max_retries,
        )

    def _apply_recovery(
        self,
        campaign: _DueCampaign,
        redemption: RedemptionResult,
        now: datetime,
    ) -> RetryOutcome:
        recovered = self.campaign_repo.mark_recovered(
            campaign.id,
            recovered_amount_cents=campaign.original_amount_cents,
            now=now,
        )
        if not recovered:
            self.logger.warning(
                "Payment for dunning campaign %s settled (tx %s) after the campaign closed; "
                "needs reconciliation",
                campaign.id,
                redemption.transaction_hash,
            )
            self.notification_service.notify_payment_unreconciled(
                workspace_id=campaign.workspace_id,
                campaign_id=campaign.id,
                subscription_id=campaign.subscription_id,
                transaction_hash=redemption.transaction_hash,
            )
            return RetryOutcome.HELD

        self.logger.info(
            "Recovered payment for dunning campaign %s (tx %s)",
            campaign.id,
            redemption.transaction_hash,
        )

        if self.subscription_repo.reactivate_past_due(campaign.subscription_id):
            subscription = self.subscription_repo.get_by_id(campaign.subscription_id)
            amount = int(subscription.total_amount_in_cents or 0) if subscription else None
            self.subscription_repo.record_state_change(
                subscription_id=campaign.subscription_id,
                workspace_id=campaign.workspace_id,
                from_status=SubscriptionStatus.PAST_DUE.value,
                to_status=SubscriptionStatus.ACTIVE.value,
                from_amount_cents=amount,
                to_amount_cents=amount,
                change_reason=PAYMENT_RECOVERED_REASON,
            )

        self.notification_service.notify_payment_recovered(
            workspace_id=campaign.workspace_id,
            subscription_id=campaign.subscription_id,
            amount_cents=campaign.original_amount_cents,
            transaction_hash=redemption.transaction_hash,
        )
        return RetryOutcome.RECOVERED
