"""Append-only audit trail of subscription status transitions."""

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, String, func

from delegated_billing.core.database import Base
from delegated_billing.models.shared import DEFAULT_WORKSPACE_ID, UUIDType, generate_uuid

SYSTEM_INITIATOR = "system"


class SubscriptionStateChange(Base):
    """One status transition. Rows are written once and never updated."""

    __tablename__ = "subscription_state_changes"

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
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    from_amount_cents = Column(BigInteger, nullable=True)
    to_amount_cents = Column(BigInteger, nullable=True)
    line_items_snapshot = Column(JSON, nullable=False, default=dict)
    change_reason = Column(String(500), nullable=True)
    initiated_by = Column(String(50), nullable=False, default=SYSTEM_INITIATOR)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
