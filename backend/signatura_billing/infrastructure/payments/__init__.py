"""
Payments Infrastructure Module

Grow payment gateway and Morning invoicing clients.
"""

from signatura_billing.infrastructure.payments.grow_adapter import (
    CallbackUrls,
    GrowAdapter,
    GrowWebhookPayload,
)
from signatura_billing.infrastructure.payments.morning_adapter import MorningAdapter

__all__ = ["CallbackUrls", "GrowAdapter", "GrowWebhookPayload", "MorningAdapter"]
