"""
Subscription API Routes

REST API endpoints for plan status, usage checks, checkout and plan changes.
Lifecycle errors are raised by the services and mapped to HTTP by the
exception handlers in main.py.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from signatura_billing.api.dependencies import (
    CurrentUserDep,
    GrowAdapterDep,
    SubscriptionManagerDep,
    UsageGateDep,
)
from signatura_billing.config.settings import get_settings
from signatura_billing.domain.subscription import (
    TIER_ORDER,
    BillingPeriod,
    CancelResponse,
    ChangePlanRequest,
    ChangePlanResponse,
    CheckoutResponse,
    FeatureCheckResult,
    FeatureRequest,
    IncrementUsageResponse,
    InitiateCheckoutRequest,
    PlanInfo,
    PlanPrice,
    PlansResponse,
    ResourceRequest,
    SubscriptionStatusSummary,
    UsageCheckResult,
    get_price,
    get_tier_config,
    is_downgrade,
    is_upgrade,
    savings_percentage,
)
from signatura_billing.infrastructure.exceptions import GatewayError, SignaturaBillingError
from signatura_billing.infrastructure.payments.grow_adapter import CallbackUrls


logger = logging.getLogger(__name__)

router = APIRouter()


def _long_date(value) -> str:
    return f"{value:%B} {value.day}, {value.year}"


# =============================================================================
# Status & Usage Endpoints
# =============================================================================

@router.get("/subscription/status", response_model=SubscriptionStatusSummary)
async def get_subscription_status(user: CurrentUserDep, gate: UsageGateDep):
    """Get the current user's plan, usage and billing dates."""
    return await gate.get_subscription_status(user.user_id)


@router.post("/subscription/check-limit", response_model=UsageCheckResult)
async def check_limit(request: ResourceRequest, user: CurrentUserDep, gate: UsageGateDep):
    """Check whether the user may create one more of a metered resource."""
    return await gate.check_usage_limit(user.user_id, request.resource, is_admin=user.is_admin)


@router.post("/subscription/check-access", response_model=FeatureCheckResult)
async def check_access(request: FeatureRequest, user: CurrentUserDep, gate: UsageGateDep):
    """Check whether the user's tier includes a feature."""
    return await gate.check_feature_access(user.user_id, request.feature, is_admin=user.is_admin)


@router.post("/subscription/increment-usage", response_model=IncrementUsageResponse)
async def increment_usage(request: ResourceRequest, user: CurrentUserDep, gate: UsageGateDep):
    """
    Count one created resource.

    Best-effort: a store failure is logged and reported as ``success=False``
    because the resource itself already exists.
    """
    try:
        new_count = await gate.increment_usage(user.user_id, request.resource)
    except SignaturaBillingError as e:
        logger.error(f"Failed to increment {request.resource.value} for user {user.user_id}: {e.message}")
        return IncrementUsageResponse(success=False)

    return IncrementUsageResponse(success=True, new_count=new_count)


@router.get("/subscription/events")
async def list_events(user: CurrentUserDep, manager: SubscriptionManagerDep, limit: int = 50):
    """Recent subscription audit events, newest first."""
    events = await manager.list_events(user.user_id, limit=min(max(limit, 1), 200))
    return {"events": events}


# =============================================================================
# Checkout Endpoints
# =============================================================================

@router.post("/subscription/initiate", response_model=CheckoutResponse)
async def initiate_checkout(
    body: InitiateCheckoutRequest,
    request: Request,
    user: CurrentUserDep,
    grow: GrowAdapterDep,
    manager: SubscriptionManagerDep,
):
    """
    Start a recurring Grow payment for a tier and billing period.

    Returns:
        CheckoutResponse with the hosted payment page URL
    """
    origin = (request.headers.get("origin") or get_settings().app_url).rstrip("/")

    result = await grow.create_recurring_payment(
        tier=body.tier,
        billing_period=body.billing_period,
        user_id=user.user_id,
        callback_urls=CallbackUrls(
            notify_url=f"{origin}/api/webhooks/grow",
            success_url=f"{origin}/dashboard/subscription?success=true",
            cancel_url=f"{origin}/dashboard/subscription?cancelled=true",
        ),
        email=body.email or user.email,
        name=body.name,
    )

    if not result.success:
        raise GatewayError(f"Failed to create payment: {result.error}", provider="grow")

    await manager.mark_pending_checkout(user.user_id, body.tier, body.billing_period)

    return CheckoutResponse(payment_url=result.payment_url)


# =============================================================================
# Plan Change Endpoints
# =============================================================================

@router.post("/subscription/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    request: ChangePlanRequest,
    user: CurrentUserDep,
    manager: SubscriptionManagerDep,
    grow: GrowAdapterDep,
):
    """
    Upgrade, downgrade or change billing period.

    - Same tier with a scheduled change: cancel the scheduled change
    - Upgrade: immediate, prorated difference charged to the stored card
    - Downgrade: scheduled for the end of the period
    - Same tier, new billing period: scheduled for the next renewal
    """
    subscription = await manager.get_subscription(user.user_id)
    if subscription is None or subscription.tier is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active subscription found",
        )

    current_tier = subscription.tier
    target_tier = request.target_tier

    if target_tier == current_tier and subscription.scheduled_tier_change:
        await manager.cancel_scheduled_change(user.user_id)
        return ChangePlanResponse(message="Scheduled change cancelled.")

    if is_upgrade(current_tier, target_tier):
        result = await manager.upgrade_subscription(user.user_id, target_tier)

        if result.prorated_amount > 0 and subscription.grow_transaction_token:
            charge = await grow.create_one_time_charge(
                amount=result.prorated_amount,
                description=f"Upgrade to {get_tier_config(target_tier).display_name}",
                user_id=user.user_id,
                transaction_token=subscription.grow_transaction_token,
            )
            if not charge.success:
                # Upgrade is already committed
                logger.error(f"Failed to charge prorated amount for user {user.user_id}: {charge.error}")
        elif result.prorated_amount > 0:
            logger.warning(f"Prorated charge needed for user {user.user_id} but no token stored")

        return ChangePlanResponse(
            immediate=True,
            prorated_amount=result.prorated_amount,
            new_tier=target_tier,
        )

    if is_downgrade(current_tier, target_tier):
        result = await manager.schedule_downgrade(user.user_id, target_tier)
        return ChangePlanResponse(
            immediate=False,
            effective_date=result.effective_date,
            message=(
                f"Your downgrade to {get_tier_config(target_tier).display_name} "
                f"will take effect on {_long_date(result.effective_date)}."
            ),
        )

    target_period = request.target_billing_period
    if target_period is not None and target_period != subscription.billing_period:
        result = await manager.schedule_billing_period_change(user.user_id, target_period)
        return ChangePlanResponse(
            immediate=False,
            effective_date=result.effective_date,
            message=f"Your billing period will change to {target_period.value} at your next renewal.",
        )

    return ChangePlanResponse(message="No changes needed. You are already on this plan.")


@router.post("/subscription/cancel", response_model=CancelResponse)
async def cancel_subscription(user: CurrentUserDep, manager: SubscriptionManagerDep):
    """Cancel at period end. Access continues until then."""
    result = await manager.cancel_subscription(user.user_id)
    return CancelResponse(
        cancellation_effective_at=result.cancellation_effective_at,
        message=(
            "Your subscription will remain active until "
            f"{_long_date(result.cancellation_effective_at)}."
        ),
    )


# =============================================================================
# Pricing Endpoints
# =============================================================================

@router.get("/subscription/plans", response_model=PlansResponse)
async def get_plans():
    """Public price and limit table."""
    plans = []
    for tier in TIER_ORDER:
        config = get_tier_config(tier)
        plans.append(PlanInfo(
            tier=tier,
            display_name=config.display_name,
            prices=[
                PlanPrice(
                    billing_period=period,
                    price=get_price(tier, period),
                    savings_percentage=savings_percentage(tier, period),
                )
                for period in BillingPeriod
            ],
            limits=config.limits,
            features=sorted(config.features, key=lambda feature: feature.value),
            is_popular=config.is_popular,
        ))

    return PlansResponse(subscription_enabled=get_settings().subscription_enabled, plans=plans)
