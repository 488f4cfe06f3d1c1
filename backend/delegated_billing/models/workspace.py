from sqlalchemy import Column, DateTime, String, func

from delegated_billing.core.database import Base
from delegated_billing.models.shared import UUIDType, generate_uuid


class Workspace(Base):
    """Merchant workspace that owns products, customers and subscriptions."""

    __tablename__ = "workspaces"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    support_email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
