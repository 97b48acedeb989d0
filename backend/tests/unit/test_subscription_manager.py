"""
Unit tests for SubscriptionManager.

Exercises every lifecycle transition against the in-memory store with a
fixed clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, OTHER_USER_ID, USER_ID
from signatura_billing.domain.subscription import (
    BillingPeriod,
    GatewayPaymentData,
    SubscriptionStatus,
    Tier,
    UsageCounters,
)
from signatura_billing.infrastructure.exceptions import (
    InvalidTransitionError,
    NotFoundError,
)


PERIOD_START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)


def seed_active(store, **overrides):
    fields = {
        "tier": Tier.ACCELERATE,
        "billing_period": BillingPeriod.MONTHLY,
        "status": SubscriptionStatus.ACTIVE,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "last_reset_at": PERIOD_START,
        "usage": UsageCounters(applications=7, cvs=3),
    }
    fields.update(overrides)
    return store.seed(**fields)


class TestActivate:
    """First payment starts a fresh period."""

    @pytest.mark.asyncio
    async def test_creates_row_with_fresh_period(self, manager, store):
        subscription = await manager.activate_subscription(
            USER_ID,
            Tier.MOMENTUM,
            BillingPeriod.QUARTERLY,
            GatewayPaymentData(transaction_token="tok", recurring_id="rec", transaction_code="tc1"),
        )

        assert subscription.tier == Tier.MOMENTUM
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == NOW
        assert subscription.current_period_end == datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
        assert subscription.last_reset_at == NOW
        assert subscription.grow_transaction_token == "tok"
        assert subscription.grow_recurring_id == "rec"
        assert subscription.grow_last_transaction_code == "tc1"
        assert store.event_types() == ["payment_success"]

    @pytest.mark.asyncio
    async def test_clears_usage_and_stale_state(self, manager, store):
        store.seed(
            status=SubscriptionStatus.EXPIRED,
            usage=UsageCounters(applications=5),
            pending_tier=Tier.ELITE,
            pending_billing_period=BillingPeriod.YEARLY,
            scheduled_tier_change=Tier.MOMENTUM,
            cancelled_at=NOW - timedelta(days=40),
            cancellation_effective_at=NOW - timedelta(days=10),
            grow_transaction_token="old-token",
        )

        subscription = await manager.activate_subscription(USER_ID, Tier.ELITE, BillingPeriod.YEARLY)

        assert subscription.usage == UsageCounters()
        assert subscription.pending_tier is None
        assert subscription.pending_billing_period is None
        assert subscription.scheduled_tier_change is None
        assert subscription.cancelled_at is None
        assert subscription.cancellation_effective_at is None
        # Not provided, so kept
        assert subscription.grow_transaction_token == "old-token"


class TestRenew:
    """Recurring payments advance the period."""

    @pytest.mark.asyncio
    async def test_resets_usage_on_renewal(self, manager, store):
        seed_active(store)

        renewed = await manager.renew_subscription(USER_ID, "tc-renew")

        assert renewed.usage == UsageCounters()
        assert renewed.last_reset_at == NOW
        assert renewed.current_period_start == NOW
        assert renewed.current_period_end == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)
        assert renewed.grow_last_transaction_code == "tc-renew"
        assert store.events[-1].counters_reset is True

    @pytest.mark.asyncio
    async def test_skips_reset_when_already_reset_for_new_period(self, manager, store):
        # Counters were already zeroed at this instant by an earlier delivery
        seed_active(store, last_reset_at=NOW)

        renewed = await manager.renew_subscription(USER_ID, "tc-renew")

        _, changes = store.updates[-1]
        assert "usage" not in changes.changes()
        assert "last_reset_at" not in changes.changes()
        assert renewed.usage.applications == 7
        assert renewed.current_period_start == NOW
        assert store.events[-1].counters_reset is False

    @pytest.mark.asyncio
    async def test_applies_scheduled_changes(self, manager, store):
        seed_active(
            store,
            tier=Tier.ELITE,
            scheduled_tier_change=Tier.MOMENTUM,
            scheduled_billing_period_change=BillingPeriod.YEARLY,
            last_reset_at=None,
        )

        renewed = await manager.renew_subscription(USER_ID, "tc-renew")

        assert renewed.tier == Tier.MOMENTUM
        assert renewed.billing_period == BillingPeriod.YEARLY
        assert renewed.current_period_end == datetime(2027, 3, 15, 12, 0, tzinfo=timezone.utc)
        assert renewed.scheduled_tier_change is None
        assert renewed.scheduled_billing_period_change is None

        event = store.events[-1]
        assert event.previous_tier == Tier.ELITE
        assert event.scheduled_tier_applied == Tier.MOMENTUM

    @pytest.mark.asyncio
    async def test_reactivates_past_due(self, manager, store):
        seed_active(store, status=SubscriptionStatus.PAST_DUE)

        renewed = await manager.renew_subscription(USER_ID, "tc-renew")

        assert renewed.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_same_transaction_code_applies_once(self, manager, store, clock):
        seed_active(store)
        first = await manager.renew_subscription(USER_ID, "tc-1")
        store.rows[USER_ID] = store.row().model_copy(update={"usage": UsageCounters(applications=5)})
        clock.now = NOW + timedelta(minutes=10)

        again = await manager.renew_subscription(USER_ID, "tc-1")

        assert again is None
        row = store.row()
        assert row.usage.applications == 5
        assert row.current_period_start == first.current_period_start
        assert row.current_period_end == first.current_period_end
        assert store.event_types() == ["renewed"]

    @pytest.mark.asyncio
    async def test_new_transaction_code_renews_again(self, manager, store, clock):
        seed_active(store)
        await manager.renew_subscription(USER_ID, "tc-1")
        clock.now = NOW + timedelta(days=31)

        renewed = await manager.renew_subscription(USER_ID, "tc-2")

        assert renewed.current_period_start == NOW + timedelta(days=31)
        assert renewed.grow_last_transaction_code == "tc-2"
        assert store.event_types() == ["renewed", "renewed"]

    @pytest.mark.asyncio
    async def test_concurrent_delivery_of_same_code_is_skipped(self, manager, store):
        seed_active(store)
        original_get = store.get_by_user_id

        async def read_then_apply_elsewhere(user_id):
            # Another worker applies the payment after this one has read the row
            snapshot = await original_get(user_id)
            store.rows[user_id] = store.rows[user_id].model_copy(
                update={"grow_last_transaction_code": "tc-1"}
            )
            return snapshot

        store.get_by_user_id = read_then_apply_elsewhere

        renewed = await manager.renew_subscription(USER_ID, "tc-1")

        assert renewed is None
        assert store.row().usage.applications == 7
        assert store.events == []

    @pytest.mark.asyncio
    async def test_requires_row(self, manager):
        with pytest.raises(NotFoundError):
            await manager.renew_subscription(USER_ID, "tc-renew")

    @pytest.mark.asyncio
    async def test_requires_tier(self, manager, store):
        store.seed(usage=UsageCounters(cvs=1))

        with pytest.raises(InvalidTransitionError):
            await manager.renew_subscription(USER_ID, "tc-renew")


class TestUpgrade:
    """Upgrades are immediate and prorated."""

    @pytest.mark.asyncio
    async def test_prorates_remaining_days(self, manager, store, clock):
        store.seed(
            tier=Tier.MOMENTUM,
            billing_period=BillingPeriod.MONTHLY,
            current_period_start=datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc),
            current_period_end=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
            usage=UsageCounters(applications=6),
        )
        clock.now = datetime(2026, 2, 15, 12, 0, tzinfo=timezone.utc)

        result = await manager.upgrade_subscription(USER_ID, Tier.ACCELERATE)

        # (18 - 12) / 28 days * 14 days
        assert result.prorated_amount == 3.0
        row = store.row()
        assert row.tier == Tier.ACCELERATE
        assert row.usage.applications == 6
        assert row.current_period_end == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert store.event_types() == ["upgraded"]

    @pytest.mark.asyncio
    async def test_upgrade_drops_scheduled_downgrade(self, manager, store):
        seed_active(store, scheduled_tier_change=Tier.MOMENTUM)

        await manager.upgrade_subscription(USER_ID, Tier.ELITE)

        assert store.row().scheduled_tier_change is None

    @pytest.mark.asyncio
    async def test_no_charge_after_period_end(self, manager, store, clock):
        seed_active(store, tier=Tier.MOMENTUM)
        clock.now = PERIOD_END + timedelta(days=1)

        result = await manager.upgrade_subscription(USER_ID, Tier.ELITE)

        assert result.prorated_amount == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [Tier.ACCELERATE, Tier.MOMENTUM])
    async def test_rejects_non_upgrade(self, manager, store, target):
        seed_active(store)

        with pytest.raises(InvalidTransitionError, match="not an upgrade"):
            await manager.upgrade_subscription(USER_ID, target)

        assert store.updates == []
        assert store.events == []

    @pytest.mark.asyncio
    async def test_rejects_missing_dates(self, manager, store):
        seed_active(store, tier=Tier.MOMENTUM, current_period_start=None)

        with pytest.raises(InvalidTransitionError, match="period dates"):
            await manager.upgrade_subscription(USER_ID, Tier.ELITE)


class TestScheduledChanges:
    """Downgrades and billing period changes wait for renewal."""

    @pytest.mark.asyncio
    async def test_schedule_downgrade(self, manager, store):
        seed_active(store, tier=Tier.ELITE)

        result = await manager.schedule_downgrade(USER_ID, Tier.MOMENTUM)

        assert result.effective_date == PERIOD_END
        row = store.row()
        assert row.tier == Tier.ELITE
        assert row.scheduled_tier_change == Tier.MOMENTUM
        assert store.event_types() == ["downgrade_scheduled"]

    @pytest.mark.asyncio
    async def test_rejects_non_downgrade(self, manager, store):
        seed_active(store, tier=Tier.MOMENTUM)

        with pytest.raises(InvalidTransitionError, match="not a downgrade"):
            await manager.schedule_downgrade(USER_ID, Tier.ACCELERATE)

    @pytest.mark.asyncio
    async def test_schedule_billing_period_change(self, manager, store):
        seed_active(store)

        result = await manager.schedule_billing_period_change(USER_ID, BillingPeriod.YEARLY)

        assert result.effective_date == PERIOD_END
        assert store.row().scheduled_billing_period_change == BillingPeriod.YEARLY
        assert store.row().billing_period == BillingPeriod.MONTHLY

    @pytest.mark.asyncio
    async def test_rejects_same_billing_period(self, manager, store):
        seed_active(store)

        with pytest.raises(InvalidTransitionError, match="already billed monthly"):
            await manager.schedule_billing_period_change(USER_ID, BillingPeriod.MONTHLY)

    @pytest.mark.asyncio
    async def test_cancel_scheduled_change(self, manager, store):
        seed_active(
            store,
            scheduled_tier_change=Tier.MOMENTUM,
            scheduled_billing_period_change=BillingPeriod.YEARLY,
        )

        await manager.cancel_scheduled_change(USER_ID)

        assert store.row().scheduled_tier_change is None
        assert store.row().scheduled_billing_period_change is None
        assert store.event_types() == ["scheduled_change_cancelled"]


class TestCancel:
    """Cancellation keeps access until period end."""

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, manager, store):
        seed_active(store)

        result = await manager.cancel_subscription(USER_ID)

        assert result.cancellation_effective_at == PERIOD_END
        row = store.row()
        assert row.status == SubscriptionStatus.CANCELLED
        assert row.cancelled_at == NOW
        assert row.tier == Tier.ACCELERATE
        assert row.usage.applications == 7

    @pytest.mark.asyncio
    async def test_no_row(self, manager):
        with pytest.raises(NotFoundError):
            await manager.cancel_subscription(USER_ID)

    @pytest.mark.asyncio
    async def test_no_tier(self, manager, store):
        store.seed()

        with pytest.raises(InvalidTransitionError, match="No active subscription"):
            await manager.cancel_subscription(USER_ID)

    @pytest.mark.asyncio
    async def test_already_cancelled(self, manager, store):
        seed_active(store, status=SubscriptionStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError, match="already cancelled"):
            await manager.cancel_subscription(USER_ID)


class TestPaymentFailure:
    """Failed payments move the row to past due."""

    @pytest.mark.asyncio
    async def test_marks_past_due(self, manager, store):
        seed_active(store)

        await manager.handle_payment_failure(USER_ID, transaction_code="tc-failed")

        row = store.row()
        assert row.status == SubscriptionStatus.PAST_DUE
        assert row.tier == Tier.ACCELERATE
        assert row.usage.applications == 7
        assert store.events[-1].transaction_code == "tc-failed"


class TestExpirations:
    """Daily sweep expires cancelled rows and rows lapsed past the grace period."""

    @pytest.mark.asyncio
    async def test_expires_only_due_rows(self, manager, store):
        store.seed(
            user_id="cancelled-due",
            tier=Tier.MOMENTUM,
            status=SubscriptionStatus.CANCELLED,
            cancellation_effective_at=NOW - timedelta(hours=1),
        )
        store.seed(
            user_id="cancelled-future",
            tier=Tier.MOMENTUM,
            status=SubscriptionStatus.CANCELLED,
            cancellation_effective_at=NOW + timedelta(days=5),
        )
        store.seed(
            user_id="past-due-expired",
            tier=Tier.ACCELERATE,
            status=SubscriptionStatus.PAST_DUE,
            current_period_end=NOW - timedelta(days=4),
        )
        store.seed(
            user_id="past-due-in-grace",
            tier=Tier.ACCELERATE,
            status=SubscriptionStatus.PAST_DUE,
            current_period_end=NOW - timedelta(days=2),
        )
        store.seed(
            user_id=OTHER_USER_ID,
            tier=Tier.ELITE,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=NOW - timedelta(days=30),
        )
        store.seed(
            user_id="active-in-grace",
            tier=Tier.ELITE,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=NOW - timedelta(days=2),
        )
        store.seed(user_id="tracking-only", current_period_end=NOW - timedelta(days=30))

        result = await manager.process_expirations()

        assert result.expired == 3
        assert store.row("cancelled-due").status == SubscriptionStatus.EXPIRED
        assert store.row("past-due-expired").status == SubscriptionStatus.EXPIRED
        assert store.row("cancelled-future").status == SubscriptionStatus.CANCELLED
        assert store.row("past-due-in-grace").status == SubscriptionStatus.PAST_DUE
        assert store.row(OTHER_USER_ID).status == SubscriptionStatus.EXPIRED
        assert store.row("active-in-grace").status == SubscriptionStatus.ACTIVE
        assert store.row("tracking-only").status == SubscriptionStatus.ACTIVE

        reasons = sorted(event.reason for event in store.events)
        assert reasons == [
            "cancellation_effective_date_passed",
            "grace_period_exceeded",
            "period_ended_without_renewal",
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, manager):
        result = await manager.process_expirations()
        assert result.expired == 0

    @pytest.mark.asyncio
    async def test_row_renewed_during_sweep_is_not_expired(self, manager, store):
        seed_active(
            store,
            status=SubscriptionStatus.CANCELLED,
            cancellation_effective_at=NOW - timedelta(hours=1),
        )
        original_list = store.list_by_status

        async def list_then_renew(status):
            listed = await original_list(status)
            if status == SubscriptionStatus.CANCELLED:
                # Renewal webhook lands between the listing and the write
                await manager.renew_subscription(USER_ID, "tc-late")
            return listed

        store.list_by_status = list_then_renew

        result = await manager.process_expirations()

        assert result.expired == 0
        row = store.row()
        assert row.status == SubscriptionStatus.ACTIVE
        assert row.grow_last_transaction_code == "tc-late"
        assert store.event_types() == ["renewed"]

    @pytest.mark.asyncio
    async def test_lapsed_active_row_renewed_during_sweep_is_not_expired(self, manager, store):
        seed_active(store, current_period_end=NOW - timedelta(days=10))
        original_list = store.list_by_status

        async def list_then_renew(status):
            listed = await original_list(status)
            if status == SubscriptionStatus.ACTIVE:
                await manager.renew_subscription(USER_ID, "tc-late")
            return listed

        store.list_by_status = list_then_renew

        result = await manager.process_expirations()

        assert result.expired == 0
        assert store.row().status == SubscriptionStatus.ACTIVE
        assert store.row().current_period_end == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)

class TestCheckoutBookkeeping:
    """Pending checkout and invoicing customer ids."""

    @pytest.mark.asyncio
    async def test_mark_pending_checkout_creates_row(self, manager, store):
        await manager.mark_pending_checkout(USER_ID, Tier.ELITE, BillingPeriod.YEARLY)

        row = store.row()
        assert row.pending_tier == Tier.ELITE
        assert row.pending_billing_period == BillingPeriod.YEARLY
        assert row.tier is None

    @pytest.mark.asyncio
    async def test_set_morning_customer_id(self, manager, store):
        seed_active(store)

        await manager.set_morning_customer_id(USER_ID, "cust-42")

        assert store.row().morning_customer_id == "cust-42"
