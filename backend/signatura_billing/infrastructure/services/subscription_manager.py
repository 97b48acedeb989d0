"""
Subscription Manager

State machine for the subscription lifecycle. Every transition validates
against the current row first and only then writes, so a rejected
operation never leaves a partial update behind.

Lifecycle rules:
- Upgrades are immediate (usage counters and period dates untouched)
- Downgrades and billing period changes wait for the next renewal
- Cancellation keeps full access until the end of the paid period
- A payment renews at most once (transaction code guard), and renewal
  resets usage at most once per period (last_reset_at guard)
- The expiration sweep only writes rows still in the state it listed
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from signatura_billing.config.settings import Settings, get_settings
from signatura_billing.domain.events import (
    BillingPeriodChangeScheduledEvent,
    CancelledEvent,
    DowngradeScheduledEvent,
    ExpiredEvent,
    PaymentFailedEvent,
    PaymentSuccessEvent,
    RenewedEvent,
    ScheduledChangeCancelledEvent,
    SubscriptionEvent,
    UpgradedEvent,
)
from signatura_billing.domain.subscription import (
    BillingPeriod,
    BillingPeriodChangeResult,
    CancelResult,
    DowngradeResult,
    ExpirationResult,
    GatewayPaymentData,
    SubscriptionStatus,
    SubscriptionUpdate,
    Tier,
    UpgradeResult,
    UsageCounters,
    UserSubscription,
    get_price,
    is_downgrade,
    is_upgrade,
    period_end,
)
from signatura_billing.infrastructure.db.repositories import SubscriptionRepository
from signatura_billing.infrastructure.exceptions import (
    InvalidTransitionError,
    NotFoundError,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calendar_days_between(later: datetime, earlier: datetime) -> int:
    """Whole calendar days from ``earlier`` to ``later`` (time of day ignored)."""
    return (later.date() - earlier.date()).days


class SubscriptionManager:
    """
    Owns every mutation of a user's subscription row.

    Args:
        repository: subscription store
        settings: grace period configuration (defaults to process settings)
        clock: source of "now", UTC-aware
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self._repository = repository
        self._settings = settings or get_settings()
        self._clock = clock or utc_now

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_subscription(self, user_id: str) -> Optional[UserSubscription]:
        """The user's subscription, or None when no row exists."""
        return await self._repository.get_by_user_id(user_id)

    async def list_events(self, user_id: str, limit: int = 50) -> list[SubscriptionEvent]:
        return await self._repository.list_events(user_id, limit=limit)

    async def _require(self, user_id: str) -> UserSubscription:
        subscription = await self._repository.get_by_user_id(user_id)
        if subscription is None:
            raise NotFoundError(
                "No subscription found for user",
                operation="get_subscription",
                table="user_subscriptions",
            )
        return subscription

    async def _emit(self, event: SubscriptionEvent) -> None:
        await self._repository.record_event(event)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def activate_subscription(
        self,
        user_id: str,
        tier: Tier,
        billing_period: BillingPeriod,
        gateway_data: Optional[GatewayPaymentData] = None,
    ) -> UserSubscription:
        """
        Start a brand-new paid period now.

        Idempotent upsert: sets the period, zeroes every usage counter and
        clears pending, scheduled and cancellation state. Gateway correlation
        fields are only overwritten when provided.
        """
        now = self._clock()
        gateway_data = gateway_data or GatewayPaymentData()

        changes = SubscriptionUpdate(
            tier=tier,
            billing_period=billing_period,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=period_end(now, billing_period),
            usage=UsageCounters(),
            last_reset_at=now,
            pending_tier=None,
            pending_billing_period=None,
            scheduled_tier_change=None,
            scheduled_billing_period_change=None,
            cancelled_at=None,
            cancellation_effective_at=None,
        )
        if gateway_data.transaction_token:
            changes.grow_transaction_token = gateway_data.transaction_token
        if gateway_data.recurring_id:
            changes.grow_recurring_id = gateway_data.recurring_id
        if gateway_data.transaction_code:
            changes.grow_last_transaction_code = gateway_data.transaction_code

        subscription = await self._repository.upsert(user_id, changes)

        await self._emit(PaymentSuccessEvent(
            user_id=user_id,
            timestamp=now,
            tier=tier,
            billing_period=billing_period,
            transaction_code=gateway_data.transaction_code,
            recurring_id=gateway_data.recurring_id,
        ))
        logger.info(f"Activated {tier.value}/{billing_period.value} subscription for user {user_id}")
        return subscription

    async def renew_subscription(
        self,
        user_id: str,
        transaction_code: str,
    ) -> Optional[UserSubscription]:
        """
        Advance to a new period after a recurring payment.

        Scheduled tier/billing period changes take effect here. Usage is
        reset only when last_reset_at is older than the new period start.

        A payment is applied at most once: when ``transaction_code`` is
        already the row's last transaction code (a redelivered webhook, or
        a retry of the activating payment) nothing is written and None is
        returned. The write itself carries the same condition, so two
        concurrent deliveries cannot both renew.
        """
        subscription = await self._require(user_id)
        if subscription.tier is None or subscription.billing_period is None:
            raise InvalidTransitionError("Subscription has no tier or billing period")

        if transaction_code and subscription.grow_last_transaction_code == transaction_code:
            logger.info(f"Transaction {transaction_code} already applied for user {user_id}, renewal skipped")
            return None

        now = self._clock()
        new_tier = subscription.scheduled_tier_change or subscription.tier
        new_period = subscription.scheduled_billing_period_change or subscription.billing_period

        # Compared against the new period start
        should_reset = subscription.last_reset_at is None or subscription.last_reset_at < now

        changes = SubscriptionUpdate(
            tier=new_tier,
            billing_period=new_period,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=period_end(now, new_period),
            grow_last_transaction_code=transaction_code,
            scheduled_tier_change=None,
            scheduled_billing_period_change=None,
        )
        if should_reset:
            changes.usage = UsageCounters()
            changes.last_reset_at = now

        renewed = await self._repository.update_guarded(
            user_id,
            changes,
            transaction_code_not=transaction_code or None,
        )
        if renewed is None:
            logger.info(f"Transaction {transaction_code} applied concurrently for user {user_id}, renewal skipped")
            return None

        await self._emit(RenewedEvent(
            user_id=user_id,
            timestamp=now,
            transaction_code=transaction_code,
            previous_tier=subscription.tier,
            tier=new_tier,
            previous_billing_period=subscription.billing_period,
            billing_period=new_period,
            scheduled_tier_applied=subscription.scheduled_tier_change,
            scheduled_period_applied=subscription.scheduled_billing_period_change,
            counters_reset=should_reset,
        ))
        logger.info(
            f"Renewed subscription for user {user_id}: {new_tier.value}/{new_period.value} "
            f"(counters reset: {should_reset})"
        )
        return renewed

    async def upgrade_subscription(self, user_id: str, new_tier: Tier) -> UpgradeResult:
        """
        Move to a higher tier immediately.

        Returns the prorated price difference for the rest of the period;
        charging it is the caller's job.
        """
        subscription = await self._require(user_id)
        if subscription.tier is None or subscription.billing_period is None:
            raise InvalidTransitionError("Subscription has no tier or billing period")
        if subscription.current_period_start is None or subscription.current_period_end is None:
            raise InvalidTransitionError("Subscription has no period dates")
        if not is_upgrade(subscription.tier, new_tier):
            raise InvalidTransitionError(
                f"{new_tier.value} is not an upgrade from {subscription.tier.value}",
                current=subscription.tier.value,
                requested=new_tier.value,
            )

        now = self._clock()
        remaining_days = calendar_days_between(subscription.current_period_end, now)
        total_days = calendar_days_between(
            subscription.current_period_end, subscription.current_period_start
        )
        price_diff = (
            get_price(new_tier, subscription.billing_period)
            - get_price(subscription.tier, subscription.billing_period)
        )

        prorated_amount = 0.0
        if total_days > 0 and remaining_days > 0:
            prorated_amount = round(price_diff / total_days * remaining_days, 2)

        # Supersedes any pending downgrade
        await self._repository.update(
            user_id,
            SubscriptionUpdate(tier=new_tier, scheduled_tier_change=None),
        )

        await self._emit(UpgradedEvent(
            user_id=user_id,
            timestamp=now,
            previous_tier=subscription.tier,
            tier=new_tier,
            prorated_amount=prorated_amount,
            remaining_days=remaining_days,
            total_days=total_days,
        ))
        logger.info(
            f"Upgraded user {user_id} from {subscription.tier.value} to {new_tier.value}, "
            f"prorated {prorated_amount:.2f}"
        )
        return UpgradeResult(prorated_amount=prorated_amount)

    async def schedule_downgrade(self, user_id: str, new_tier: Tier) -> DowngradeResult:
        """Record a lower tier to apply at the next renewal."""
        subscription = await self._require(user_id)
        if subscription.tier is None:
            raise InvalidTransitionError("Subscription has no tier")
        if subscription.current_period_end is None:
            raise InvalidTransitionError("Subscription has no period end date")
        if not is_downgrade(subscription.tier, new_tier):
            raise InvalidTransitionError(
                f"{new_tier.value} is not a downgrade from {subscription.tier.value}",
                current=subscription.tier.value,
                requested=new_tier.value,
            )

        await self._repository.update(
            user_id, SubscriptionUpdate(scheduled_tier_change=new_tier)
        )

        effective_date = subscription.current_period_end
        await self._emit(DowngradeScheduledEvent(
            user_id=user_id,
            timestamp=self._clock(),
            current_tier=subscription.tier,
            scheduled_tier=new_tier,
            effective_date=effective_date,
        ))
        logger.info(f"Scheduled downgrade to {new_tier.value} for user {user_id} at {effective_date}")
        return DowngradeResult(effective_date=effective_date)

    async def schedule_billing_period_change(
        self,
        user_id: str,
        billing_period: BillingPeriod,
    ) -> BillingPeriodChangeResult:
        """Record a new billing cadence to apply at the next renewal."""
        subscription = await self._require(user_id)
        if subscription.tier is None:
            raise InvalidTransitionError("Subscription has no tier")
        if subscription.current_period_end is None:
            raise InvalidTransitionError("Subscription has no period end date")
        if subscription.billing_period == billing_period:
            raise InvalidTransitionError(
                f"Subscription is already billed {billing_period.value}",
                current=billing_period.value,
                requested=billing_period.value,
            )

        await self._repository.update(
            user_id, SubscriptionUpdate(scheduled_billing_period_change=billing_period)
        )

        effective_date = subscription.current_period_end
        await self._emit(BillingPeriodChangeScheduledEvent(
            user_id=user_id,
            timestamp=self._clock(),
            current_billing_period=subscription.billing_period,
            scheduled_billing_period=billing_period,
            effective_date=effective_date,
        ))
        logger.info(f"Scheduled billing period {billing_period.value} for user {user_id}")
        return BillingPeriodChangeResult(effective_date=effective_date)

    async def cancel_scheduled_change(self, user_id: str) -> None:
        """Drop any pending tier or billing period change."""
        await self._repository.update(
            user_id,
            SubscriptionUpdate(
                scheduled_tier_change=None,
                scheduled_billing_period_change=None,
            ),
        )
        await self._emit(ScheduledChangeCancelledEvent(user_id=user_id, timestamp=self._clock()))
        logger.info(f"Cancelled scheduled change for user {user_id}")

    async def cancel_subscription(self, user_id: str) -> CancelResult:
        """
        Cancel at period end.

        Tier, limits and counters stay as they are until the expiration
        sweep moves the row to expired.
        """
        subscription = await self._require(user_id)
        if subscription.tier is None:
            raise InvalidTransitionError("No active subscription to cancel")
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise InvalidTransitionError(
                "Subscription is already cancelled",
                current=subscription.status.value,
                requested=SubscriptionStatus.CANCELLED.value,
            )
        if subscription.current_period_end is None:
            raise InvalidTransitionError("Subscription has no period end date")

        now = self._clock()
        effective_at = subscription.current_period_end

        await self._repository.update(
            user_id,
            SubscriptionUpdate(
                status=SubscriptionStatus.CANCELLED,
                cancelled_at=now,
                cancellation_effective_at=effective_at,
            ),
        )

        await self._emit(CancelledEvent(
            user_id=user_id,
            timestamp=now,
            tier=subscription.tier,
            cancellation_effective_at=effective_at,
        ))
        logger.info(f"Cancelled subscription for user {user_id}, effective {effective_at}")
        return CancelResult(cancellation_effective_at=effective_at)

    async def handle_payment_failure(
        self,
        user_id: str,
        transaction_code: Optional[str] = None,
    ) -> None:
        """Mark the subscription past due. Tier and usage are untouched."""
        await self._repository.update(
            user_id, SubscriptionUpdate(status=SubscriptionStatus.PAST_DUE)
        )
        await self._emit(PaymentFailedEvent(
            user_id=user_id,
            timestamp=self._clock(),
            transaction_code=transaction_code,
        ))
        logger.warning(f"Payment failed for user {user_id}, set to past_due")

    async def process_expirations(self) -> ExpirationResult:
        """
        Expire subscriptions whose paid access has run out.

        - cancelled, and cancellation_effective_at has passed
        - past_due, and current_period_end + grace period has passed
        - active with a tier, and current_period_end + grace period has
          passed without any renewal webhook

        Each write is conditional on the row still being in the state that
        was listed, so a webhook that renews or reactivates the row while
        the sweep runs is never overwritten. Only rows actually written are
        counted.
        """
        now = self._clock()
        grace = timedelta(days=self._settings.grace_period_days)
        lapsed_before = now - grace
        expired = 0

        for subscription in await self._repository.list_by_status(SubscriptionStatus.CANCELLED):
            effective_at = subscription.cancellation_effective_at
            if effective_at is not None and effective_at < now:
                if await self._expire(
                    subscription, now, "cancellation_effective_date_passed"
                ):
                    expired += 1

        for status, reason in (
            (SubscriptionStatus.PAST_DUE, "grace_period_exceeded"),
            (SubscriptionStatus.ACTIVE, "period_ended_without_renewal"),
        ):
            for subscription in await self._repository.list_by_status(status):
                if not subscription.has_tier:
                    continue
                period_ended = subscription.current_period_end
                if period_ended is not None and period_ended < lapsed_before:
                    if await self._expire(subscription, now, reason, period_ended_before=lapsed_before):
                        expired += 1

        logger.info(f"Expiration sweep expired {expired} subscriptions")
        return ExpirationResult(expired=expired)

    async def _expire(
        self,
        subscription: UserSubscription,
        now: datetime,
        reason: str,
        period_ended_before: Optional[datetime] = None,
    ) -> bool:
        user_id = subscription.user_id
        updated = await self._repository.update_guarded(
            user_id,
            SubscriptionUpdate(status=SubscriptionStatus.EXPIRED),
            expected_status=subscription.status,
            period_ended_before=period_ended_before,
        )
        if updated is None:
            logger.info(f"Subscription for user {user_id} changed during the sweep, not expired")
            return False

        await self._emit(ExpiredEvent(user_id=user_id, timestamp=now, reason=reason))
        logger.info(f"Expired subscription for user {user_id} ({reason})")
        return True

    # =========================================================================
    # Checkout & invoicing bookkeeping
    # =========================================================================

    async def mark_pending_checkout(
        self,
        user_id: str,
        tier: Tier,
        billing_period: BillingPeriod,
    ) -> None:
        """Remember the plan a checkout was started for until the gateway confirms it."""
        await self._repository.upsert(
            user_id,
            SubscriptionUpdate(pending_tier=tier, pending_billing_period=billing_period),
        )
        logger.info(f"Pending checkout {tier.value}/{billing_period.value} for user {user_id}")

    async def set_morning_customer_id(self, user_id: str, customer_id: str) -> None:
        await self._repository.update(
            user_id, SubscriptionUpdate(morning_customer_id=customer_id)
        )
