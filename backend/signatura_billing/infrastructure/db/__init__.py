"""Subscription store: engine/session management and repository providers."""

from signatura_billing.infrastructure.db.database import (
    close_db,
    get_session_context,
    init_db,
)
from signatura_billing.infrastructure.db.dependencies import (
    get_subscription_repository,
    get_webhook_transaction_repository,
)

__all__ = [
    "close_db",
    "get_session_context",
    "get_subscription_repository",
    "get_webhook_transaction_repository",
    "init_db",
]
