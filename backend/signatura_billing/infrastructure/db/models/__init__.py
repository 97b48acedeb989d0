"""
SQLModel ORM Models for Signatura Billing

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from signatura_billing.infrastructure.db.models.subscription import (
    ProcessedWebhookTransaction,
    SubscriptionEventModel,
    UserSubscriptionModel,
)


__all__ = [
    "UserSubscriptionModel",
    "SubscriptionEventModel",
    "ProcessedWebhookTransaction",
]
