"""Pydantic schema for the data used to address customer emails."""

from uuid import UUID

from pydantic import BaseModel


class SubscriptionEmailContext(BaseModel):
    """Who to email about a subscription and how to refer to it."""

    subscription_id: UUID
    customer_name: str | None = None
    customer_email: str | None = None
    product_name: str
    workspace_name: str
    support_email: str | None = None
