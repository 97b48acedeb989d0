"""
Dependency Injection Providers for the storage layer

Repositories are stateless and open a session per call, so one instance
per process is shared. The service providers in api/dependencies.py build
on these; tests replace the services rather than the repositories.
"""

from functools import lru_cache

from signatura_billing.infrastructure.db.repositories import (
    SubscriptionRepository,
    WebhookTransactionRepository,
)


@lru_cache
def get_subscription_repository() -> SubscriptionRepository:
    """Process-wide SubscriptionRepository."""
    return SubscriptionRepository()


@lru_cache
def get_webhook_transaction_repository() -> WebhookTransactionRepository:
    """Process-wide WebhookTransactionRepository."""
    return WebhookTransactionRepository()
