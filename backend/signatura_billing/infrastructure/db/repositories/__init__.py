"""
Repository Layer for Signatura Billing

Data access for subscriptions, their audit log, and webhook idempotency.
"""

from signatura_billing.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    usage_column,
)
from signatura_billing.infrastructure.db.repositories.webhook_transaction_repository import (
    WebhookTransactionRepository,
)


__all__ = [
    "SubscriptionRepository",
    "WebhookTransactionRepository",
    "usage_column",
]
