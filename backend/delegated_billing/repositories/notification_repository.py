"""Repository for operator Notification rows."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from delegated_billing.models.notification import Notification
from delegated_billing.models.shared import generate_uuid


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        workspace_id: UUID,
        category: str,
        title: str,
        message: str,
        resource_type: str | None = None,
        resource_id: UUID | None = None,
    ) -> Notification:
        notification = Notification(
            id=generate_uuid(),
            workspace_id=workspace_id,
            category=category,
            title=title,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def get_all(
        self,
        workspace_id: UUID,
        skip: int = 0,
        limit: int = 50,
        category: str | None = None,
        is_read: bool | None = None,
    ) -> list[Notification]:
        query = self.db.query(Notification).filter(Notification.workspace_id == workspace_id)
        if category is not None:
            query = query.filter(Notification.category == category)
        if is_read is not None:
            query = query.filter(Notification.is_read == is_read)
        return query.order_by(Notification.created_at.desc()).offset(skip).limit(limit).all()

    def count_unread(self, workspace_id: UUID) -> int:
        return (
            self.db.query(Notification)
            .filter(
                Notification.workspace_id == workspace_id,
                Notification.is_read == False,  # noqa: E712
            )
            .count()
        )
