"""Tests for DunningService final actions on exhausted campaigns."""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from delegated_billing.models.dunning_campaign import DunningCampaign, DunningCampaignStatus
from delegated_billing.models.notification import Notification
from delegated_billing.models.shared import ensure_utc
from delegated_billing.models.subscription import Subscription, SubscriptionStatus
from delegated_billing.repositories.subscription_repository import (
    ConcurrentUpdateError,
    SubscriptionRepository,
)
from delegated_billing.services.dunning_service import (
    DUNNING_CANCELLATION_REASON,
    DUNNING_PAUSE_REASON,
    DunningService,
)
from delegated_billing.services.notification_gateway import CATEGORY_DUNNING_CANCELLATION
from delegated_billing.services.subscription_lifecycle import SubscriptionLifecycleService
from tests.conftest import NOW, create_campaign, create_subscription


@pytest.fixture
def gateway():
    mock = MagicMock()
    mock.deliver = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def service(db_session, gateway):
    return DunningService(db_session, gateway)


def _reload_subscription(db_session, sub) -> Subscription:  # type: ignore[no-untyped-def]
    db_session.expire_all()
    return db_session.query(Subscription).filter(Subscription.id == sub.id).one()


def _reload_campaign(db_session, campaign) -> DunningCampaign:  # type: ignore[no-untyped-def]
    db_session.expire_all()
    return db_session.query(DunningCampaign).filter(DunningCampaign.id == campaign.id).one()


class TestCancelFinalAction:
    @pytest.mark.asyncio
    async def test_schedules_cancellation_and_emails(self, db_session, service, gateway):
        sub = create_subscription(db_session, status=SubscriptionStatus.PAST_DUE.value)
        campaign = create_campaign(db_session, sub, final_action="cancel")

        result = await service.process_final_actions(NOW)

        assert result.processed == 1
        row = _reload_subscription(db_session, sub)
        assert ensure_utc(row.cancel_at) == NOW
        assert row.cancellation_reason == DUNNING_CANCELLATION_REASON
        assert row.status == SubscriptionStatus.PAST_DUE.value

        refreshed = _reload_campaign(db_session, campaign)
        assert refreshed.final_action_taken == "cancel"
        assert refreshed.status == DunningCampaignStatus.FAILED.value

        gateway.deliver.assert_awaited_once()
        assert gateway.deliver.call_args.args[0] == CATEGORY_DUNNING_CANCELLATION

    @pytest.mark.asyncio
    async def test_repeated_passes_send_one_email(self, db_session, service, gateway):
        sub = create_subscription(db_session)
        create_campaign(db_session, sub)

        await service.process_final_actions(NOW)
        second = await service.process_final_actions(NOW + timedelta(minutes=5))

        assert second.processed == 0
        assert gateway.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_next_cancellation_pass_cancels_subscription(self, db_session, service, gateway):
        sub = create_subscription(db_session, status=SubscriptionStatus.PAST_DUE.value)
        create_campaign(db_session, sub)
        await service.process_final_actions(NOW)

        lifecycle = SubscriptionLifecycleService(db_session, gateway)
        result = await lifecycle.process_cancellations(NOW + timedelta(minutes=5))

        assert result.processed == 1
        assert _reload_subscription(db_session, sub).status == SubscriptionStatus.CANCELED.value
        history = SubscriptionRepository(db_session).get_state_changes(sub.id)
        assert [(h.from_status, h.to_status) for h in history] == [("past_due", "canceled")]

    @pytest.mark.asyncio
    async def test_existing_earlier_cancel_at_is_kept(self, db_session, service):
        earlier = NOW - timedelta(hours=1)
        sub = create_subscription(db_session, cancel_at=earlier)
        create_campaign(db_session, sub)

        result = await service.process_final_actions(NOW)

        assert result.processed == 1
        assert ensure_utc(_reload_subscription(db_session, sub).cancel_at) == earlier

    @pytest.mark.asyncio
    async def test_mixed_case_action_is_applied_and_kept_verbatim(self, db_session, service):
        sub = create_subscription(db_session)
        campaign = create_campaign(db_session, sub, final_action=" Cancel ")

        result = await service.process_final_actions(NOW)

        assert result.processed == 1
        assert _reload_campaign(db_session, campaign).final_action_taken == " Cancel "


class TestPauseFinalAction:
    @pytest.mark.asyncio
    async def test_pauses_indefinitely(self, db_session, service, gateway):
        sub = create_subscription(db_session, status=SubscriptionStatus.PAST_DUE.value)
        campaign = create_campaign(db_session, sub, final_action="pause")

        result = await service.process_final_actions(NOW)

        assert result.processed == 1
        row = _reload_subscription(db_session, sub)
        assert row.status == SubscriptionStatus.PAUSED.value
        assert row.pause_ends_at is None
        assert _reload_campaign(db_session, campaign).final_action_taken == "pause"

        history = SubscriptionRepository(db_session).get_state_changes(sub.id)
        assert len(history) == 1
        assert history[0].from_status == "past_due"
        assert history[0].to_status == "paused"
        assert history[0].change_reason == DUNNING_PAUSE_REASON
        gateway.deliver.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_paused_records_no_transition(self, db_session, service):
        sub = create_subscription(
            db_session,
            status=SubscriptionStatus.PAUSED.value,
            pause_ends_at=NOW + timedelta(days=2),
        )
        campaign = create_campaign(db_session, sub, final_action="pause")

        result = await service.process_final_actions(NOW)

        assert result.processed == 1
        assert _reload_subscription(db_session, sub).pause_ends_at is None
        assert SubscriptionRepository(db_session).get_state_changes(sub.id) == []
        assert _reload_campaign(db_session, campaign).final_action_taken == "pause"

    @pytest.mark.asyncio
    async def test_concurrent_updates_count_as_failure(self, db_session, service):
        sub = create_subscription(db_session)
        campaign = create_campaign(db_session, sub, final_action="pause")

        with patch.object(
            SubscriptionRepository,
            "pause_subscription",
            side_effect=ConcurrentUpdateError("kept changing"),
        ):
            result = await service.process_final_actions(NOW)

        assert result.failed == 1
        assert _reload_campaign(db_session, campaign).final_action_taken is None


class TestUnhandledFinalActions:
    @pytest.mark.asyncio
    async def test_downgrade_is_left_unactioned_and_alerted_once(
        self, db_session, service, gateway, caplog
    ):
        sub = create_subscription(db_session)
        campaign = create_campaign(db_session, sub, final_action="downgrade")

        with caplog.at_level(logging.WARNING):
            first = await service.process_final_actions(NOW)
            second = await service.process_final_actions(NOW + timedelta(minutes=5))

        assert first.skipped == 1
        assert second.skipped == 1
        refreshed = _reload_campaign(db_session, campaign)
        assert refreshed.final_action_taken is None
        assert ensure_utc(refreshed.final_action_alerted_at) == NOW
        assert _reload_subscription(db_session, sub).status == SubscriptionStatus.ACTIVE.value

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "downgrade is not implemented" in warnings[0].getMessage()
        assert db_session.query(Notification).count() == 1
        gateway.deliver.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_action_is_flagged(self, db_session, service):
        sub = create_subscription(db_session)
        campaign = create_campaign(db_session, sub, final_action="refund")

        result = await service.process_final_actions(NOW)

        assert result.skipped == 1
        notification = db_session.query(Notification).one()
        assert notification.resource_id == campaign.id
        assert "'refund'" in notification.message


class TestIsolation:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, db_session, service):
        broken = create_subscription(db_session)
        healthy = create_subscription(db_session)
        create_campaign(db_session, broken)
        healthy_campaign = create_campaign(db_session, healthy)
        original = SubscriptionRepository.schedule_subscription_cancellation

        def flaky(repo, subscription_id, **kwargs):  # type: ignore[no-untyped-def]
            if subscription_id == broken.id:
                raise OperationalError("UPDATE subscriptions", {}, Exception("locked"))
            return original(repo, subscription_id, **kwargs)

        with patch.object(
            SubscriptionRepository,
            "schedule_subscription_cancellation",
            autospec=True,
            side_effect=flaky,
        ):
            result = await service.process_final_actions(NOW)

        assert (result.processed, result.failed) == (1, 1)
        assert _reload_campaign(db_session, healthy_campaign).final_action_taken == "cancel"

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, service):
        result = await service.process_final_actions(NOW)
        assert (result.processed, result.failed, result.skipped) == (0, 0, 0)
