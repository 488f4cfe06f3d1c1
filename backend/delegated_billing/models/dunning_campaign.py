"""DunningCampaign model for payment recovery on a single subscription."""

from enum import Enum

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, String, func

from delegated_billing.core.database import Base
from delegated_billing.models.shared import DEFAULT_WORKSPACE_ID, UUIDType, generate_uuid


class DunningCampaignStatus(str, Enum):
    ACTIVE = "active"
    RECOVERED = "recovered"
    FAILED = "failed"


class FinalAction(str, Enum):
    """Action taken once a campaign's retries are exhausted.

    ``UNKNOWN`` stands in for any stored value this code does not recognize.
    """

    CANCEL = "cancel"
    PAUSE = "pause"
    DOWNGRADE = "downgrade"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "FinalAction":
        try:
            action = cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN
        return action


DEFAULT_RETRY_INTERVAL_DAYS = [1, 3, 7]


class DunningCampaign(Base):
    """DunningCampaign model - retry state and final action for a failed payment."""

    __tablename__ = "dunning_campaigns"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    workspace_id = Column(
        UUIDType,
        ForeignKey("workspaces.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_WORKSPACE_ID,
    )
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(
        String(20), nullable=False, default=DunningCampaignStatus.ACTIVE.value, index=True
    )
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_interval_days = Column(JSON, nullable=False, default=lambda: list(DEFAULT_RETRY_INTERVAL_DAYS))
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    original_amount_cents = Column(BigInteger, nullable=False, default=0)
    recovered_amount_cents = Column(BigInteger, nullable=True)
    final_action = Column(String(50), nullable=False, default=FinalAction.CANCEL.value)
    final_action_taken = Column(String(50), nullable=True)
    final_action_alerted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
