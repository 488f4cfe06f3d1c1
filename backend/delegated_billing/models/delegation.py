"""Delegation model - signed smart-account permission stored for later redemption."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, func

from delegated_billing.core.database import Base
from delegated_billing.models.shared import DEFAULT_WORKSPACE_ID, UUIDType, generate_uuid


class Delegation(Base):
    """Opaque delegation payload. Only the redeemer interprets ``payload``."""

    __tablename__ = "delegations"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    workspace_id = Column(
        UUIDType,
        ForeignKey("workspaces.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_WORKSPACE_ID,
    )
    payload = Column(JSON, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
