"""
Subscription Audit Events

Append-only record of every subscription state transition. Each event kind
is its own model with a typed payload; ``SubscriptionEvent`` is the closed
union over all of them, discriminated by ``type``.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from signatura_billing.domain.subscription import BillingPeriod, Tier


class _EventBase(BaseModel):
    user_id: str
    timestamp: datetime


class PaymentSuccessEvent(_EventBase):
    """A new paid relationship started (first payment)."""
    type: Literal["payment_success"] = "payment_success"
    tier: Tier
    billing_period: BillingPeriod
    transaction_code: Optional[str] = None
    recurring_id: Optional[str] = None


class RenewedEvent(_EventBase):
    type: Literal["renewed"] = "renewed"
    transaction_code: str
    previous_tier: Tier
    tier: Tier
    previous_billing_period: BillingPeriod
    billing_period: BillingPeriod
    scheduled_tier_applied: Optional[Tier] = None
    scheduled_period_applied: Optional[BillingPeriod] = None
    counters_reset: bool


class UpgradedEvent(_EventBase):
    type: Literal["upgraded"] = "upgraded"
    previous_tier: Tier
    tier: Tier
    prorated_amount: float
    remaining_days: int
    total_days: int


class DowngradeScheduledEvent(_EventBase):
    type: Literal["downgrade_scheduled"] = "downgrade_scheduled"
    current_tier: Tier
    scheduled_tier: Tier
    effective_date: datetime


class BillingPeriodChangeScheduledEvent(_EventBase):
    type: Literal["billing_period_change_scheduled"] = "billing_period_change_scheduled"
    current_billing_period: Optional[BillingPeriod] = None
    scheduled_billing_period: BillingPeriod
    effective_date: datetime


class ScheduledChangeCancelledEvent(_EventBase):
    type: Literal["scheduled_change_cancelled"] = "scheduled_change_cancelled"


class CancelledEvent(_EventBase):
    type: Literal["cancelled"] = "cancelled"
    tier: Tier
    cancellation_effective_at: datetime


class PaymentFailedEvent(_EventBase):
    type: Literal["payment_failed"] = "payment_failed"
    transaction_code: Optional[str] = None


class ExpiredEvent(_EventBase):
    type: Literal["expired"] = "expired"
    reason: Literal[
        "cancellation_effective_date_passed",
        "grace_period_exceeded",
        "period_ended_without_renewal",
    ]


SubscriptionEvent = Annotated[
    Union[
        PaymentSuccessEvent,
        RenewedEvent,
        UpgradedEvent,
        DowngradeScheduledEvent,
        BillingPeriodChangeScheduledEvent,
        ScheduledChangeCancelledEvent,
        CancelledEvent,
        PaymentFailedEvent,
        ExpiredEvent,
    ],
    Field(discriminator="type"),
]

subscription_event_adapter: TypeAdapter = TypeAdapter(SubscriptionEvent)


def event_payload(event: BaseModel) -> dict:
    """JSON-safe payload of an event without its envelope fields."""
    return event.model_dump(mode="json", exclude={"type", "user_id", "timestamp"})


def event_from_record(
    event_type: str,
    user_id: str,
    timestamp: datetime,
    payload: Optional[dict],
) -> SubscriptionEvent:
    """Rebuild the typed event from its stored envelope and payload."""
    return subscription_event_adapter.validate_python({
        **(payload or {}),
        "type": event_type,
        "user_id": user_id,
        "timestamp": timestamp,
    })
