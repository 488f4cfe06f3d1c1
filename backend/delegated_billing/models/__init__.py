from delegated_billing.models.customer import Customer
from delegated_billing.models.delegation import Delegation
from delegated_billing.models.dunning_attempt import DunningAttempt, DunningAttemptStatus
from delegated_billing.models.dunning_campaign import (
    DunningCampaign,
    DunningCampaignStatus,
    FinalAction,
)
from delegated_billing.models.notification import Notification
from delegated_billing.models.product import Product
from delegated_billing.models.subscription import (
    TERMINAL_STATUSES,
    BillingInterval,
    Subscription,
    SubscriptionStatus,
)
from delegated_billing.models.subscription_state_change import SubscriptionStateChange
from delegated_billing.models.workspace import Workspace

__all__ = [
    "BillingInterval",
    "Customer",
    "Delegation",
    "DunningAttempt",
    "DunningAttemptStatus",
    "DunningCampaign",
    "DunningCampaignStatus",
    "FinalAction",
    "Notification",
    "Product",
    "Subscription",
    "SubscriptionStateChange",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "Workspace",
]
