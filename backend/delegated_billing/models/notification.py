"""Notification model for operator-facing in-app alerts."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func

from delegated_billing.core.database import Base
from delegated_billing.models.shared import DEFAULT_WORKSPACE_ID, UUIDType, generate_uuid


class Notification(Base):
    """Notification model - stores in-app notifications for workspace operators."""

    __tablename__ = "notifications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    workspace_id = Column(
        UUIDType,
        ForeignKey("workspaces.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_WORKSPACE_ID,
    )
    category = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(String(1000), nullable=False)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(UUIDType, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
