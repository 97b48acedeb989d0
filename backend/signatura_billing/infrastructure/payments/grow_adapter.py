"""
Grow (Meshulam) Payment Gateway Adapter

Form-encoded client for the Grow payment gateway.

- Every call is a POST with application/x-www-form-urlencoded body, never JSON
- The account identifier (GROW_USER_ID) is attached to every call
- userId/tier/billingPeriod travel in cField1..3 and come back on the webhook
- Gateway failures are returned as ``success=False`` results, not raised
"""

import asyncio
import logging
import secrets
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel, Field

from signatura_billing.config.settings import Settings, get_settings
from signatura_billing.domain.subscription import (
    BillingPeriod,
    Tier,
    get_price,
)
from signatura_billing.infrastructure.exceptions import (
    ConfigurationError,
    GatewayError,
    SignaturaBillingError,
)


logger = logging.getLogger(__name__)

PROVIDER = "grow"

# Grow reports success with status == 1
GROW_SUCCESS = 1


# =============================================================================
# Results
# =============================================================================

class RecurringPaymentResult(BaseModel):
    success: bool
    payment_url: Optional[str] = None
    error: Optional[str] = None


class ChargeResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class ApproveResult(BaseModel):
    success: bool
    error: Optional[str] = None


class CallbackUrls(BaseModel):
    """Where Grow notifies the server and redirects the payer."""
    notify_url: str
    success_url: str
    cancel_url: str


class GrowWebhookPayload(BaseModel):
    """Inbound Grow notification with our passthrough fields decoded."""
    transaction_id: str = ""
    transaction_token: str = ""
    transaction_code: str = ""
    status: str = ""
    sum: float = 0
    currency: str = "ILS"
    user_id: str = ""
    tier: Tier = Tier.MOMENTUM
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    recurring_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    raw_payload: dict = Field(default_factory=dict)


def _text(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key)
    return str(value) if value is not None else ""


def _optional_text(body: Mapping[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    return str(value) if value not in (None, "") else None


def _amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _error_message(response: dict, fallback: str) -> str:
    err = response.get("err")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return fallback


class GrowAdapter:
    """
    Grow payment gateway client.

    Args:
        settings: Grow credentials, page codes, timeout and retry policy
        transport: optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings or get_settings()
        self._transport = transport

    # =========================================================================
    # Configuration
    # =========================================================================

    def _api_config(self) -> tuple[str, str]:
        missing = []
        if not self._settings.grow_api_url:
            missing.append("GROW_API_URL")
        if not self._settings.grow_user_id:
            missing.append("GROW_USER_ID")
        if missing:
            raise ConfigurationError(
                f"{', '.join(missing)} environment variable is not set",
                missing_keys=missing,
            )
        return self._settings.grow_api_url.rstrip("/"), self._settings.grow_user_id

    def _page_code(self, tier: Tier, billing_period: BillingPeriod) -> str:
        page_code = self._settings.grow_page_code(tier.value, billing_period.value)
        if not page_code:
            env_var = f"GROW_PAGE_CODE_{tier.value.upper()}_{billing_period.value.upper()}"
            raise ConfigurationError(
                f"{env_var} environment variable is not set",
                missing_keys=[env_var],
            )
        return page_code

    # =========================================================================
    # Transport
    # =========================================================================

    async def _retry_with_backoff(self, operation_name: str, url: str, form: dict) -> httpx.Response:
        """POST with exponential backoff on connection errors, timeouts and 5xx."""
        max_retries = max(1, self._settings.max_retries)
        last_error: Optional[Exception] = None

        async with httpx.AsyncClient(
            timeout=self._settings.http_timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(max_retries):
                try:
                    response = await client.post(url, data=form)
                    if response.status_code < 500:
                        return response
                    last_error = GatewayError(
                        f"Grow API error: {response.status_code}",
                        provider=PROVIDER,
                        status_code=response.status_code,
                    )
                except httpx.TransportError as e:
                    last_error = e

                if attempt + 1 < max_retries:
                    delay = min(
                        self._settings.retry_base_delay * (2 ** attempt),
                        self._settings.retry_max_delay,
                    )
                    logger.warning(
                        f"{operation_name} transient error. Attempt {attempt + 1}/{max_retries}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)

        if isinstance(last_error, GatewayError):
            raise last_error
        raise GatewayError(
            f"Grow API unreachable: {last_error}",
            provider=PROVIDER,
            original_error=last_error,
        )

    async def api_call(self, endpoint: str, form_fields: dict) -> dict:
        """
        Form-encoded POST to ``{GROW_API_URL}{endpoint}``.

        Raises:
            ConfigurationError: API URL or account id missing (no request made)
            GatewayError: non-2xx response, unreachable host, or non-JSON body
        """
        api_url, account_id = self._api_config()
        form = {**form_fields, "userId": account_id}

        response = await self._retry_with_backoff(endpoint, f"{api_url}{endpoint}", form)
        if response.status_code >= 400:
            raise GatewayError(
                f"Grow API error: {response.status_code} {response.reason_phrase}",
                provider=PROVIDER,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError("Grow API returned a non-JSON body", provider=PROVIDER, original_error=e)
        if not isinstance(data, dict):
            raise GatewayError("Grow API returned an unexpected body", provider=PROVIDER)
        return data

    # =========================================================================
    # Payments
    # =========================================================================

    async def create_recurring_payment(
        self,
        tier: Tier,
        billing_period: BillingPeriod,
        user_id: str,
        callback_urls: CallbackUrls,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> RecurringPaymentResult:
        """
        Open a hosted recurring payment page for a tier/billing period.

        Returns:
            RecurringPaymentResult with the redirect URL on success
        """
        try:
            form = {
                "pageCode": self._page_code(tier, billing_period),
                "sum": str(get_price(tier, billing_period)),
                "paymentNum": "0",  # recurring
                "cField1": user_id,
                "cField2": tier.value,
                "cField3": billing_period.value,
                "notifyUrl": callback_urls.notify_url,
                "successUrl": callback_urls.success_url,
                "cancelUrl": callback_urls.cancel_url,
            }
            if email:
                form["email"] = email
            if name:
                form["fullName"] = name

            response = await self.api_call("/createPaymentProcess", form)
        except SignaturaBillingError as e:
            logger.error(f"Failed to create Grow payment for user {user_id}: {e.message}")
            return RecurringPaymentResult(success=False, error=e.message)

        data = response.get("data")
        if response.get("status") == GROW_SUCCESS and isinstance(data, dict) and data.get("url"):
            logger.info(f"Created Grow payment page {tier.value}/{billing_period.value} for user {user_id}")
            return RecurringPaymentResult(success=True, payment_url=str(data["url"]))

        error = _error_message(response, "Unknown error creating payment")
        logger.warning(f"Grow rejected payment creation for user {user_id}: {error}")
        return RecurringPaymentResult(success=False, error=error)

    async def create_one_time_charge(
        self,
        amount: float,
        description: str,
        user_id: str,
        transaction_token: str,
    ) -> ChargeResult:
        """Charge a stored card token, used for upgrade proration."""
        form = {
            "transactionToken": transaction_token,
            "sum": str(amount),
            "description": description,
            "cField1": user_id,
        }
        try:
            response = await self.api_call("/chargeToken", form)
        except SignaturaBillingError as e:
            logger.error(f"Failed to charge token for user {user_id}: {e.message}")
            return ChargeResult(success=False, error=e.message)

        if response.get("status") == GROW_SUCCESS:
            data = response.get("data") or {}
            transaction_id = data.get("transactionId") if isinstance(data, dict) else None
            logger.info(f"Charged {amount:.2f} for user {user_id}")
            return ChargeResult(
                success=True,
                transaction_id=str(transaction_id) if transaction_id is not None else None,
            )

        return ChargeResult(
            success=False,
            error=_error_message(response, "Unknown error charging token"),
        )

    async def approve_transaction(self, transaction_id: str, transaction_token: str) -> ApproveResult:
        """Finalize a transaction Grow left pending."""
        form = {
            "transactionId": transaction_id,
            "transactionToken": transaction_token,
        }
        try:
            response = await self.api_call("/approveTransaction", form)
        except SignaturaBillingError as e:
            logger.error(f"Failed to approve transaction {transaction_id}: {e.message}")
            return ApproveResult(success=False, error=e.message)

        if response.get("status") == GROW_SUCCESS:
            return ApproveResult(success=True)

        return ApproveResult(
            success=False,
            error=_error_message(response, "Unknown error approving transaction"),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, body: Mapping[str, Any]) -> bool:
        """
        Check the shared webhook key in constant time.

        Must run before anything on the payload is acted on.
        """
        expected_key = self._settings.grow_webhook_key
        if not expected_key:
            logger.warning("GROW_WEBHOOK_KEY is not set - rejecting webhook")
            return False

        received_key = body.get("webhookKey")
        if not received_key:
            return False

        return secrets.compare_digest(
            str(received_key).encode("utf-8"),
            expected_key.encode("utf-8"),
        )

    @staticmethod
    def parse_webhook_payload(body: Mapping[str, Any]) -> GrowWebhookPayload:
        """
        Extract a typed payload. Never raises on missing or malformed fields.

        Unknown tier/billing period strings fall back to momentum/monthly.
        """
        try:
            tier = Tier(body.get("cField2") or Tier.MOMENTUM.value)
        except ValueError:
            tier = Tier.MOMENTUM
        try:
            billing_period = BillingPeriod(body.get("cField3") or BillingPeriod.MONTHLY.value)
        except ValueError:
            billing_period = BillingPeriod.MONTHLY

        return GrowWebhookPayload(
            transaction_id=_text(body, "transactionId"),
            transaction_token=_text(body, "transactionToken"),
            transaction_code=_text(body, "transactionCode"),
            status=_text(body, "status"),
            sum=_amount(body.get("sum")),
            currency=_optional_text(body, "currency") or "ILS",
            user_id=_text(body, "cField1"),
            tier=tier,
            billing_period=billing_period,
            recurring_id=_optional_text(body, "recurringId"),
            email=_optional_text(body, "email"),
            name=_optional_text(body, "fullName"),
            raw_payload=dict(body),
        )
