"""
Subscription Database Models

SQLModel tables for per-user subscription state and its audit log.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp_column(nullable: bool = True, **kwargs) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable, **kwargs)


def _counter_column() -> Column:
    return Column(Integer, nullable=False, server_default=text("0"), default=0)


class UserSubscriptionModel(SQLModel, table=True):
    """
    One subscription row per user.

    ``tier`` NULL marks a tracking-only row: usage is counted but no paid
    plan has been chosen yet.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index("ix_user_subscriptions_status", "status"),
        Index("ix_user_subscriptions_tier", "tier"),
        Index(
            "ix_user_subscriptions_current_period_end",
            "current_period_end",
            postgresql_where=text("current_period_end IS NOT NULL"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    user_id: UUID = Field(sa_column=Column(PGUUID(as_uuid=True), unique=True, index=True, nullable=False))

    # Plan
    tier: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    billing_period: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    status: str = Field(default="active", sa_column=Column(String(20), nullable=False, server_default="active"))

    # Grow payment correlation
    grow_transaction_token: Optional[str] = Field(default=None)
    grow_recurring_id: Optional[str] = Field(default=None)
    grow_last_transaction_code: Optional[str] = Field(default=None)

    # Morning invoicing
    morning_customer_id: Optional[str] = Field(default=None)

    # Billing window
    current_period_start: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())
    current_period_end: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())

    # Cancellation
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())
    cancellation_effective_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())

    # Applied at next renewal
    scheduled_tier_change: Optional[str] = Field(default=None)
    scheduled_billing_period_change: Optional[str] = Field(default=None)

    # Awaiting checkout confirmation
    pending_tier: Optional[str] = Field(default=None)
    pending_billing_period: Optional[str] = Field(default=None)

    # Usage counters for the current period
    usage_applications: int = Field(default=0, sa_column=_counter_column())
    usage_cvs: int = Field(default=0, sa_column=_counter_column())
    usage_interviews: int = Field(default=0, sa_column=_counter_column())
    usage_compensation: int = Field(default=0, sa_column=_counter_column())
    usage_contracts: int = Field(default=0, sa_column=_counter_column())
    usage_ai_avatar_interviews: int = Field(default=0, sa_column=_counter_column())
    last_reset_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())

    # Timestamps
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=_timestamp_column(nullable=False, server_default=text("now()")),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=_timestamp_column(nullable=False, server_default=text("now()"), onupdate=_utcnow),
    )


class SubscriptionEventModel(SQLModel, table=True):
    """Append-only audit record of a subscription transition."""

    __tablename__ = "subscription_events"
    __table_args__ = (
        Index("ix_subscription_events_user_created", "user_id", "created_at"),
        Index("ix_subscription_events_event_type", "event_type"),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    user_id: UUID = Field(sa_column=Column(PGUUID(as_uuid=True), nullable=False))
    event_type: str = Field(sa_column=Column(String(50), nullable=False))
    tier: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    billing_period: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    amount: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(10, 2), nullable=True))
    currency: Optional[str] = Field(default=None, sa_column=Column(String(3), nullable=True))
    grow_transaction_code: Optional[str] = Field(default=None)
    event_data: Optional[dict] = Field(
        default=None,
        sa_column=Column(JSONB, default=dict),
        description="Event-specific payload",
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=_timestamp_column(nullable=False, server_default=text("now()")),
    )


class ProcessedWebhookTransaction(SQLModel, table=True):
    """Gateway transactions already applied, keyed by transaction code."""

    __tablename__ = "processed_webhook_transactions"

    transaction_key: str = Field(sa_column=Column(String(255), primary_key=True))
    event_type: str = Field(sa_column=Column(String(50), nullable=False))
    user_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    processed_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=_timestamp_column(nullable=False, server_default=text("now()"), index=True),
    )
