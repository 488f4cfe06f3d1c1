"""DunningAttempt model - one payment retry made on behalf of a dunning campaign."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func

from delegated_billing.core.database import Base
from delegated_billing.models.shared import UUIDType, generate_uuid


class DunningAttemptStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    # Redemption may or may not have settled; needs an operator to reconcile
    UNKNOWN = "unknown"


class DunningAttempt(Base):
    __tablename__ = "dunning_attempts"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    campaign_id = Column(
        UUIDType,
        ForeignKey("dunning_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=DunningAttemptStatus.PENDING.value)
    error_kind = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    transaction_hash = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
