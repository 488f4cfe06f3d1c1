from delegated_billing.schemas.email import TransactionalEmail
from delegated_billing.schemas.notification import SubscriptionEmailContext
from delegated_billing.schemas.scheduler import PassResult, RetryRunResult, StageResult

__all__ = [
    "PassResult",
    "RetryRunResult",
    "StageResult",
    "SubscriptionEmailContext",
    "TransactionalEmail",
]
