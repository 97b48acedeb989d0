"""
Usage Metering Gate

Read-only limit and feature checks plus the post-create usage increment.

Every resource-creating route follows the same order:
    check_usage_limit / check_feature_access -> create -> increment_usage
and skips the increment when the create step fails.

SUBSCRIPTION_ENABLED is checked first on every check. With the kill switch
off everything is allowed and usage is still counted.
"""

import logging
from typing import Dict, Optional

from signatura_billing.config.settings import Settings, get_settings
from signatura_billing.domain.subscription import (
    UNLIMITED,
    DenialReason,
    Feature,
    FeatureCheckResult,
    Resource,
    SubscriptionStatus,
    SubscriptionStatusSummary,
    Tier,
    UsageCheckResult,
    UsageSummary,
    UserSubscription,
    get_limit,
    get_tier_config,
    has_feature,
    required_tier_for,
)
from signatura_billing.infrastructure.db.repositories import SubscriptionRepository
from signatura_billing.infrastructure.services.subscription_manager import (
    Clock,
    calendar_days_between,
    utc_now,
)


logger = logging.getLogger(__name__)


class UsageMeteringGate:
    """
    Access-control gate consumed by every metered operation.

    Args:
        repository: subscription store
        settings: kill switch and grace period (defaults to process settings)
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

    @property
    def enforcement_enabled(self) -> bool:
        return self._settings.subscription_enabled

    def _status_denial(self, subscription: UserSubscription) -> Optional[DenialReason]:
        """Expired rows and past-due rows beyond the grace window lose access."""
        if subscription.status == SubscriptionStatus.EXPIRED:
            return DenialReason.SUBSCRIPTION_EXPIRED

        if (
            subscription.status == SubscriptionStatus.PAST_DUE
            and subscription.current_period_end is not None
        ):
            days_past_due = calendar_days_between(self._clock(), subscription.current_period_end)
            if days_past_due > self._settings.grace_period_days:
                return DenialReason.PAST_DUE_GRACE_EXCEEDED

        return None

    # =========================================================================
    # Checks
    # =========================================================================

    async def check_usage_limit(
        self,
        user_id: str,
        resource: Resource,
        is_admin: bool = False,
    ) -> UsageCheckResult:
        """
        Check whether one more ``resource`` may be created this period.

        Decision order:
        1. Kill switch off -> allowed, not enforced
        2. Admin caller -> allowed, real usage reported
        3. No row / no tier -> NO_SUBSCRIPTION
        4. Expired, or past due beyond grace -> denied with that reason
        5. Unlimited tier limit -> allowed
        6. used < limit, otherwise LIMIT_EXCEEDED
        """
        if not self.enforcement_enabled:
            return UsageCheckResult(allowed=True, enforced=False, unlimited=True)

        subscription = await self._repository.get_by_user_id(user_id)
        tier = subscription.tier if subscription else None

        if is_admin:
            used = subscription.usage.get(resource) if subscription else 0
            limit = get_limit(tier, resource) if tier else None
            logger.debug(f"Admin bypass on {resource.value} for user {user_id}")
            return UsageCheckResult(
                allowed=True,
                enforced=True,
                unlimited=limit == UNLIMITED,
                used=used,
                limit=limit,
                remaining=_remaining(used, limit),
                tier=tier,
                admin_bypass=True,
            )

        if subscription is None or tier is None:
            return UsageCheckResult(
                allowed=False,
                enforced=True,
                reason=DenialReason.NO_SUBSCRIPTION,
            )

        denial = self._status_denial(subscription)
        if denial is not None:
            return UsageCheckResult(allowed=False, enforced=True, tier=tier, reason=denial)

        used = subscription.usage.get(resource)
        limit = get_limit(tier, resource)

        if limit == UNLIMITED:
            return UsageCheckResult(
                allowed=True,
                enforced=True,
                unlimited=True,
                used=used,
                limit=UNLIMITED,
                remaining=UNLIMITED,
                tier=tier,
            )

        allowed = used < limit
        return UsageCheckResult(
            allowed=allowed,
            enforced=True,
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            tier=tier,
            reason=None if allowed else DenialReason.LIMIT_EXCEEDED,
        )

    async def check_feature_access(
        self,
        user_id: str,
        feature: Feature,
        is_admin: bool = False,
    ) -> FeatureCheckResult:
        """Binary tier check, same kill switch and admin rules as usage checks."""
        if not self.enforcement_enabled:
            return FeatureCheckResult(allowed=True, enforced=False)

        subscription = await self._repository.get_by_user_id(user_id)
        tier = subscription.tier if subscription else None
        required = required_tier_for(feature)

        if is_admin:
            return FeatureCheckResult(
                allowed=True,
                enforced=True,
                tier=tier,
                required_tier=required,
                admin_bypass=True,
            )

        if subscription is None or tier is None:
            return FeatureCheckResult(
                allowed=False,
                enforced=True,
                required_tier=required,
                reason=DenialReason.NO_SUBSCRIPTION,
            )

        denial = self._status_denial(subscription)
        if denial is not None:
            return FeatureCheckResult(
                allowed=False, enforced=True, tier=tier, required_tier=required, reason=denial
            )

        if not has_feature(tier, feature):
            return FeatureCheckResult(
                allowed=False,
                enforced=True,
                tier=tier,
                required_tier=required,
                reason=DenialReason.FEATURE_NOT_INCLUDED,
            )

        return FeatureCheckResult(allowed=True, enforced=True, tier=tier, required_tier=required)

    # =========================================================================
    # Tracking
    # =========================================================================

    async def increment_usage(self, user_id: str, resource: Resource) -> int:
        """
        Count one created ``resource``. Call only after the create succeeded.

        Runs regardless of kill switch and tier; users without a row get a
        tracking-only row. Returns the new counter value.
        """
        new_count = await self._repository.increment_usage(user_id, resource)
        logger.debug(f"Usage {resource.value} for user {user_id} is now {new_count}")
        return new_count

    async def get_subscription_status(self, user_id: str) -> SubscriptionStatusSummary:
        """Full subscription picture. Real data regardless of kill switch."""
        subscription = await self._repository.get_by_user_id(user_id)
        enabled = self.enforcement_enabled

        if subscription is None:
            return SubscriptionStatusSummary(
                subscription_enabled=enabled,
                has_subscription=False,
                usage=_usage_summaries(None, None),
                can_upgrade=True,
            )

        tier = subscription.tier
        status = subscription.status
        is_active = status == SubscriptionStatus.ACTIVE
        features = None
        if tier is not None:
            config = get_tier_config(tier)
            features = {feature: feature in config.features for feature in Feature}

        return SubscriptionStatusSummary(
            subscription_enabled=enabled,
            has_subscription=tier is not None,
            tier=tier,
            billing_period=subscription.billing_period,
            status=status,
            usage=_usage_summaries(subscription, tier),
            features=features,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancelled_at=subscription.cancelled_at,
            cancellation_effective_at=subscription.cancellation_effective_at,
            scheduled_tier_change=subscription.scheduled_tier_change,
            scheduled_billing_period_change=subscription.scheduled_billing_period_change,
            is_cancelled=status == SubscriptionStatus.CANCELLED or subscription.cancelled_at is not None,
            is_past_due=status == SubscriptionStatus.PAST_DUE,
            is_expired=status == SubscriptionStatus.EXPIRED,
            can_upgrade=tier is not None and tier != Tier.ELITE and is_active,
            can_downgrade=tier is not None and tier != Tier.MOMENTUM and is_active,
        )


def _remaining(used: int, limit: Optional[int]) -> Optional[int]:
    if limit is None:
        return None
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


def _usage_summaries(
    subscription: Optional[UserSubscription],
    tier: Optional[Tier],
) -> Dict[Resource, UsageSummary]:
    """Per-resource usage. Without a tier every resource reads as unlimited."""
    summaries: Dict[Resource, UsageSummary] = {}
    for resource in Resource:
        used = subscription.usage.get(resource) if subscription else 0
        limit = get_limit(tier, resource) if tier else UNLIMITED

        if limit == UNLIMITED:
            summaries[resource] = UsageSummary(
                used=used, limit=UNLIMITED, remaining=UNLIMITED, percent_used=0, unlimited=True
            )
            continue

        summaries[resource] = UsageSummary(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percent_used=round(used / limit * 100) if limit > 0 else 0,
            unlimited=False,
        )
    return summaries
