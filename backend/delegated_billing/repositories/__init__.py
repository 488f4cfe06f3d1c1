from delegated_billing.repositories.dunning_campaign_repository import DunningCampaignRepository
from delegated_billing.repositories.notification_repository import NotificationRepository
from delegated_billing.repositories.subscription_repository import SubscriptionRepository

__all__ = [
    "DunningCampaignRepository",
    "NotificationRepository",
    "SubscriptionRepository",
]
