"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, tier configuration, domain entities, and DTOs for the
subscription bounded context.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field


# Sentinel limit meaning "no cap"
UNLIMITED = -1


class Tier(str, Enum):
    """Paid subscription tiers, cheapest first."""
    MOMENTUM = "momentum"
    ACCELERATE = "accelerate"
    ELITE = "elite"


class BillingPeriod(str, Enum):
    """Billing cadence for a tier."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Resource(str, Enum):
    """Metered resources with a per-period counter."""
    APPLICATIONS = "applications"
    CVS = "cvs"
    INTERVIEWS = "interviews"
    COMPENSATION = "compensation"
    CONTRACTS = "contracts"
    AI_AVATAR_INTERVIEWS = "ai_avatar_interviews"


class Feature(str, Enum):
    """Binary, tier-gated capabilities."""
    APPLICATION_TRACKER = "application_tracker"
    TAILORED_CVS = "tailored_cvs"
    INTERVIEW_COACH = "interview_coach"
    COMPENSATION_SESSIONS = "compensation_sessions"
    CONTRACT_REVIEWS = "contract_reviews"
    AI_AVATAR_INTERVIEWS = "ai_avatar_interviews"


class DenialReason(str, Enum):
    """Why an access or usage check was refused."""
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    FEATURE_NOT_INCLUDED = "FEATURE_NOT_INCLUDED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    PAST_DUE_GRACE_EXCEEDED = "PAST_DUE_GRACE_EXCEEDED"


PERIOD_MONTHS: Dict[BillingPeriod, int] = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
    BillingPeriod.YEARLY: 12,
}


# =============================================================================
# Tier Configuration (Business Logic)
# =============================================================================

class TierConfig(BaseModel):
    """Static price, limit and feature table entry for one tier."""
    tier: Tier
    display_name: str
    prices: Dict[BillingPeriod, float]
    limits: Dict[Resource, int]
    features: FrozenSet[Feature]
    is_popular: bool = False


_ALL_FEATURES = frozenset(Feature)

TIER_CONFIGS: Dict[Tier, TierConfig] = {
    Tier.MOMENTUM: TierConfig(
        tier=Tier.MOMENTUM,
        display_name="Momentum",
        prices={
            BillingPeriod.MONTHLY: 12,
            BillingPeriod.QUARTERLY: 30,
            BillingPeriod.YEARLY: 99,
        },
        limits={
            Resource.APPLICATIONS: 8,
            Resource.CVS: 8,
            Resource.INTERVIEWS: 8,
            Resource.COMPENSATION: 8,
            Resource.CONTRACTS: 8,
            Resource.AI_AVATAR_INTERVIEWS: 0,
        },
        features=_ALL_FEATURES - {Feature.AI_AVATAR_INTERVIEWS},
    ),
    Tier.ACCELERATE: TierConfig(
        tier=Tier.ACCELERATE,
        display_name="Accelerate",
        prices={
            BillingPeriod.MONTHLY: 18,
            BillingPeriod.QUARTERLY: 45,
            BillingPeriod.YEARLY: 149,
        },
        limits={
            Resource.APPLICATIONS: 15,
            Resource.CVS: 15,
            Resource.INTERVIEWS: 15,
            Resource.COMPENSATION: 15,
            Resource.CONTRACTS: 15,
            Resource.AI_AVATAR_INTERVIEWS: 5,
        },
        features=_ALL_FEATURES,
        is_popular=True,
    ),
    Tier.ELITE: TierConfig(
        tier=Tier.ELITE,
        display_name="Elite",
        prices={
            BillingPeriod.MONTHLY: 29,
            BillingPeriod.QUARTERLY: 75,
            BillingPeriod.YEARLY: 249,
        },
        limits={
            Resource.APPLICATIONS: UNLIMITED,
            Resource.CVS: UNLIMITED,
            Resource.INTERVIEWS: UNLIMITED,
            Resource.COMPENSATION: UNLIMITED,
            Resource.CONTRACTS: UNLIMITED,
            Resource.AI_AVATAR_INTERVIEWS: 10,
        },
        features=_ALL_FEATURES,
    ),
}

# Upgrade/downgrade ordering
TIER_ORDER = [Tier.MOMENTUM, Tier.ACCELERATE, Tier.ELITE]


def _validate_tier_configs() -> None:
    """Fail at import if any tier misses a period, resource or ordering slot."""
    if set(TIER_CONFIGS) != set(Tier) or set(TIER_ORDER) != set(Tier):
        raise RuntimeError("TIER_CONFIGS and TIER_ORDER must cover every Tier")
    for config in TIER_CONFIGS.values():
        if set(config.prices) != set(BillingPeriod):
            raise RuntimeError(f"{config.tier.value}: price missing for a billing period")
        if set(config.limits) != set(Resource):
            raise RuntimeError(f"{config.tier.value}: limit missing for a resource")


_validate_tier_configs()


def get_tier_config(tier: Tier) -> TierConfig:
    """Get the static configuration for a tier."""
    return TIER_CONFIGS[tier]


def get_price(tier: Tier, billing_period: BillingPeriod) -> float:
    """List price (USD) of a tier for one billing period."""
    return TIER_CONFIGS[tier].prices[billing_period]


def get_limit(tier: Tier, resource: Resource) -> int:
    """Per-period limit of a resource. UNLIMITED means no cap."""
    return TIER_CONFIGS[tier].limits[resource]


def has_feature(tier: Tier, feature: Feature) -> bool:
    return feature in TIER_CONFIGS[tier].features


def required_tier_for(feature: Feature) -> Optional[Tier]:
    """Cheapest tier that includes a feature."""
    for tier in TIER_ORDER:
        if has_feature(tier, feature):
            return tier
    return None


def is_upgrade(current: Tier, target: Tier) -> bool:
    return TIER_ORDER.index(target) > TIER_ORDER.index(current)


def is_downgrade(current: Tier, target: Tier) -> bool:
    return TIER_ORDER.index(target) < TIER_ORDER.index(current)


def period_end(start: datetime, billing_period: BillingPeriod) -> datetime:
    """
    End of a billing period starting at ``start``.

    Calendar-aware: Jan 31 + 1 month is Feb 28/29, not Mar 3.
    """
    return start + relativedelta(months=PERIOD_MONTHS[billing_period])


def savings_percentage(tier: Tier, billing_period: BillingPeriod) -> int:
    """Discount of a longer period versus paying monthly for the same span."""
    if billing_period == BillingPeriod.MONTHLY:
        return 0
    months = PERIOD_MONTHS[billing_period]
    full_price = get_price(tier, BillingPeriod.MONTHLY) * months
    return round((full_price - get_price(tier, billing_period)) / full_price * 100)


# =============================================================================
# Domain Entities
# =============================================================================

class UsageCounters(BaseModel):
    """Per-period usage, one counter per metered resource."""
    applications: int = 0
    cvs: int = 0
    interviews: int = 0
    compensation: int = 0
    contracts: int = 0
    ai_avatar_interviews: int = 0

    def get(self, resource: Resource) -> int:
        return getattr(self, resource.value)


class GatewayPaymentData(BaseModel):
    """Opaque Grow identifiers used to reconcile webhooks with a row."""
    transaction_token: Optional[str] = None
    recurring_id: Optional[str] = None
    transaction_code: Optional[str] = None


class UserSubscription(BaseModel):
    """Core subscription domain entity. One per user."""
    id: Optional[str] = None
    user_id: str
    tier: Optional[Tier] = None
    billing_period: Optional[BillingPeriod] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_effective_at: Optional[datetime] = None
    scheduled_tier_change: Optional[Tier] = None
    scheduled_billing_period_change: Optional[BillingPeriod] = None
    pending_tier: Optional[Tier] = None
    pending_billing_period: Optional[BillingPeriod] = None
    grow_transaction_token: Optional[str] = None
    grow_recurring_id: Optional[str] = None
    grow_last_transaction_code: Optional[str] = None
    morning_customer_id: Optional[str] = None
    usage: UsageCounters = Field(default_factory=UsageCounters)
    last_reset_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_tier(self) -> bool:
        return self.tier is not None


class SubscriptionUpdate(BaseModel):
    """
    Partial update of a subscription row.

    Only fields explicitly set are written; setting a field to None clears it.
    """
    tier: Optional[Tier] = None
    billing_period: Optional[BillingPeriod] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_effective_at: Optional[datetime] = None
    scheduled_tier_change: Optional[Tier] = None
    scheduled_billing_period_change: Optional[BillingPeriod] = None
    pending_tier: Optional[Tier] = None
    pending_billing_period: Optional[BillingPeriod] = None
    grow_transaction_token: Optional[str] = None
    grow_recurring_id: Optional[str] = None
    grow_last_transaction_code: Optional[str] = None
    morning_customer_id: Optional[str] = None
    usage: Optional[UsageCounters] = None
    last_reset_at: Optional[datetime] = None

    def changes(self) -> dict:
        """Explicitly set fields only."""
        return {name: getattr(self, name) for name in self.model_fields_set}


# =============================================================================
# Operation Results
# =============================================================================

class UpgradeResult(BaseModel):
    prorated_amount: float


class DowngradeResult(BaseModel):
    effective_date: datetime


class BillingPeriodChangeResult(BaseModel):
    effective_date: datetime


class CancelResult(BaseModel):
    cancellation_effective_at: datetime


class ExpirationResult(BaseModel):
    expired: int


class UsageCheckResult(BaseModel):
    """Outcome of a metered-resource check."""
    allowed: bool
    enforced: bool
    unlimited: bool = False
    used: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    tier: Optional[Tier] = None
    reason: Optional[DenialReason] = None
    admin_bypass: bool = False


class FeatureCheckResult(BaseModel):
    """Outcome of a binary feature check."""
    allowed: bool
    enforced: bool
    tier: Optional[Tier] = None
    required_tier: Optional[Tier] = None
    reason: Optional[DenialReason] = None
    admin_bypass: bool = False


class UsageSummary(BaseModel):
    used: int
    limit: int
    remaining: int
    percent_used: int
    unlimited: bool


class SubscriptionStatusSummary(BaseModel):
    """Full subscription picture for dashboards and guards."""
    subscription_enabled: bool
    has_subscription: bool
    tier: Optional[Tier] = None
    billing_period: Optional[BillingPeriod] = None
    status: Optional[SubscriptionStatus] = None
    usage: Dict[Resource, UsageSummary]
    features: Optional[Dict[Feature, bool]] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_effective_at: Optional[datetime] = None
    scheduled_tier_change: Optional[Tier] = None
    scheduled_billing_period_change: Optional[BillingPeriod] = None
    is_cancelled: bool = False
    is_past_due: bool = False
    is_expired: bool = False
    can_upgrade: bool = False
    can_downgrade: bool = False


# =============================================================================
# Request/Response DTOs
# =============================================================================

class ResourceRequest(BaseModel):
    """Request DTO naming a metered resource."""
    resource: Resource


class FeatureRequest(BaseModel):
    """Request DTO naming a gated feature."""
    feature: Feature


class InitiateCheckoutRequest(BaseModel):
    """Request DTO for starting a recurring payment."""
    tier: Tier
    billing_period: BillingPeriod
    email: Optional[str] = Field(default=None, description="Receipt email override")
    name: Optional[str] = Field(default=None, description="Cardholder full name")


class CheckoutResponse(BaseModel):
    success: bool = True
    payment_url: str


class ChangePlanRequest(BaseModel):
    """Request DTO for upgrade, downgrade or billing period change."""
    target_tier: Tier
    target_billing_period: Optional[BillingPeriod] = None


class ChangePlanResponse(BaseModel):
    success: bool = True
    immediate: Optional[bool] = None
    prorated_amount: Optional[float] = None
    new_tier: Optional[Tier] = None
    effective_date: Optional[datetime] = None
    message: Optional[str] = None


class CancelResponse(BaseModel):
    success: bool = True
    cancellation_effective_at: datetime
    message: str


class IncrementUsageResponse(BaseModel):
    success: bool
    new_count: Optional[int] = None


class PlanPrice(BaseModel):
    billing_period: BillingPeriod
    price: float
    savings_percentage: int


class PlanInfo(BaseModel):
    tier: Tier
    display_name: str
    prices: list[PlanPrice]
    limits: Dict[Resource, int]
    features: list[Feature]
    is_popular: bool = False


class PlansResponse(BaseModel):
    currency: str = "USD"
    subscription_enabled: bool
    plans: list[PlanInfo]
