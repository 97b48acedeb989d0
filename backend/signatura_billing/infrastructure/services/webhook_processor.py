"""
Grow Webhook Processor

Reconciles Grow payment notifications with subscription state.

Order of operations (each step stops processing on failure):
1. Verify the shared webhook key
2. Parse the payload and require a userId
3. Skip transactions already processed (keyed by transactionCode, else transactionId)
4. Dispatch:
   - failed payment -> handle_payment_failure
   - successful payment -> approve with Grow, then activate (first payment)
     or renew (existing tier; a transaction already applied to the row
     is acknowledged as "already_applied")
5. Issue a Morning invoice (never fails the webhook)
6. Record the transaction as processed
"""

import logging
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from signatura_billing.domain.subscription import (
    BillingPeriod,
    GatewayPaymentData,
    UserSubscription,
    get_price,
    get_tier_config,
)
from signatura_billing.infrastructure.db.repositories import WebhookTransactionRepository
from signatura_billing.infrastructure.exceptions import (
    GatewayError,
    ValidationError,
    WebhookVerificationError,
)
from signatura_billing.infrastructure.payments.grow_adapter import (
    GrowAdapter,
    GrowWebhookPayload,
)
from signatura_billing.infrastructure.payments.morning_adapter import MorningAdapter
from signatura_billing.infrastructure.services.subscription_manager import (
    SubscriptionManager,
)


logger = logging.getLogger(__name__)

FAILURE_STATUSES = frozenset({"0", "failed", "failure", "declined", "error"})

PERIOD_LABELS = {
    BillingPeriod.MONTHLY: "Monthly",
    BillingPeriod.QUARTERLY: "Quarterly",
    BillingPeriod.YEARLY: "Annual",
}


class WebhookResult(BaseModel):
    success: bool = True
    status: str
    action: Optional[str] = None


def is_failure_status(status: str) -> bool:
    return status.strip().lower() in FAILURE_STATUSES


def transaction_key(payload: GrowWebhookPayload) -> Optional[str]:
    """Dedupe key for a notification, None when Grow sent neither id."""
    return payload.transaction_code or payload.transaction_id or None


class WebhookProcessor:
    """
    Glue between Grow notifications and the SubscriptionManager.

    Holds no state of its own; idempotency lives in the processed
    transactions table.
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        grow: GrowAdapter,
        transactions: WebhookTransactionRepository,
        morning: Optional[MorningAdapter] = None,
    ):
        self._manager = manager
        self._grow = grow
        self._transactions = transactions
        self._morning = morning

    async def process(self, body: Mapping[str, Any]) -> WebhookResult:
        """
        Apply one Grow notification.

        Raises:
            WebhookVerificationError: webhook key missing or wrong
            ValidationError: no userId in cField1
            GatewayError: Grow refused to approve the transaction
        """
        if not self._grow.verify_webhook(body):
            logger.error("Grow webhook rejected: invalid webhook key")
            raise WebhookVerificationError("Invalid webhook key")

        payload = self._grow.parse_webhook_payload(body)
        if not payload.user_id:
            logger.error("Grow webhook missing userId in cField1")
            raise ValidationError("Missing userId")

        key = transaction_key(payload)
        if key and await self._transactions.is_processed(key):
            logger.info(f"Grow transaction {key} already processed, skipping")
            return WebhookResult(status="already_processed")

        existing = await self._manager.get_subscription(payload.user_id)

        if is_failure_status(payload.status):
            action = await self._handle_failure(payload, existing)
        else:
            action = await self._handle_success(payload, existing)

        if key:
            await self._transactions.mark_processed(key, action, payload.user_id)

        return WebhookResult(status="processed", action=action)

    async def _handle_failure(
        self,
        payload: GrowWebhookPayload,
        existing: Optional[UserSubscription],
    ) -> str:
        if existing is None or not existing.has_tier:
            logger.warning(f"Payment failure for user {payload.user_id} without a subscription, ignored")
            return "ignored"

        await self._manager.handle_payment_failure(
            payload.user_id,
            transaction_code=payload.transaction_code or None,
        )
        return "payment_failed"

    async def _handle_success(
        self,
        payload: GrowWebhookPayload,
        existing: Optional[UserSubscription],
    ) -> str:
        approval = await self._grow.approve_transaction(
            payload.transaction_id,
            payload.transaction_token,
        )
        if not approval.success:
            logger.error(f"Failed to approve Grow transaction {payload.transaction_id}: {approval.error}")
            raise GatewayError(
                f"Failed to approve transaction: {approval.error}",
                provider="grow",
            )

        # First payment: no row yet, or a tracking-only row without a tier
        if existing is None or not existing.has_tier:
            subscription = await self._manager.activate_subscription(
                payload.user_id,
                payload.tier,
                payload.billing_period,
                GatewayPaymentData(
                    transaction_token=payload.transaction_token or None,
                    recurring_id=payload.recurring_id,
                    transaction_code=payload.transaction_code or None,
                ),
            )
            action = "activated"
        else:
            subscription = await self._manager.renew_subscription(
                payload.user_id,
                payload.transaction_code,
            )
            if subscription is None:
                # Payment already applied to the row; no second invoice
                return "already_applied"
            action = "renewed"

        await self._issue_invoice(payload, subscription)
        return action

    async def _issue_invoice(self, payload: GrowWebhookPayload, subscription: UserSubscription) -> None:
        """Best effort: invoicing problems are logged and never fail the webhook."""
        if self._morning is None:
            return
        if not payload.email:
            logger.warning(f"No email in Grow payload for user {payload.user_id}, skipping invoice")
            return

        tier = subscription.tier or payload.tier
        billing_period = subscription.billing_period or payload.billing_period
        description = (
            f"Signatura {get_tier_config(tier).display_name} - "
            f"{PERIOD_LABELS[billing_period]} Subscription"
        )

        try:
            customer = await self._morning.create_or_find_customer(
                payload.name or "Customer",
                payload.email,
            )
            if customer.customer_id != subscription.morning_customer_id:
                await self._manager.set_morning_customer_id(payload.user_id, customer.customer_id)
            await self._morning.create_invoice_receipt(
                customer.customer_id,
                description,
                get_price(tier, billing_period),
            )
        except Exception as e:
            logger.error(f"Failed to create invoice for user {payload.user_id}: {e}")
