"""
Morning (Green Invoice) Adapter

JSON client for issuing invoices through the Morning API. All amounts are USD.

Authentication exchanges the API key/secret for a bearer token at
/account/token. Tokens last about an hour, the adapter reuses one for
50 minutes.
"""

import logging
import time
from datetime import date
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel

from signatura_billing.config.settings import Settings, get_settings
from signatura_billing.infrastructure.exceptions import (
    ConfigurationError,
    GatewayError,
)


logger = logging.getLogger(__name__)

PROVIDER = "morning"

TOKEN_TTL_SECONDS = 50 * 60

# Morning document types
INVOICE_RECEIPT = 305

SUBSCRIPTION_CATALOG_NUM = "SUB-001"
PAYMENT_TYPE_CREDIT_CARD = 3


class MorningCustomer(BaseModel):
    customer_id: str
    is_new: bool


class MorningDocument(BaseModel):
    document_id: str
    document_url: Optional[str] = None


class MorningAdapter:
    """
    Morning invoicing client.

    Args:
        settings: Morning credentials and HTTP timeout
        transport: optional httpx transport (tests pass ``httpx.MockTransport``)
        monotonic: time source for token expiry
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings or get_settings()
        self._transport = transport
        self._monotonic = monotonic
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def clear_token_cache(self) -> None:
        """Forget the cached token so the next call authenticates again."""
        self._token = None
        self._token_expires_at = 0.0

    def _config(self) -> tuple[str, str, str]:
        values = {
            "MORNING_API_URL": self._settings.morning_api_url,
            "MORNING_API_KEY": self._settings.morning_api_key,
            "MORNING_API_SECRET": self._settings.morning_api_secret,
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ConfigurationError(
                f"{', '.join(missing)} environment variable is not set",
                missing_keys=missing,
            )
        return (
            self._settings.morning_api_url.rstrip("/"),
            self._settings.morning_api_key,
            self._settings.morning_api_secret,
        )

    async def _post(self, url: str, body: dict, token: Optional[str] = None) -> dict:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=body, headers=headers)
        except httpx.TransportError as e:
            raise GatewayError(f"Morning API unreachable: {e}", provider=PROVIDER, original_error=e)

        if response.is_error:
            raise GatewayError(
                f"Morning API error: {response.status_code} {response.reason_phrase}",
                provider=PROVIDER,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Morning API returned a non-JSON body", provider=PROVIDER, original_error=e)

    async def authenticate(self) -> str:
        """Bearer token, cached for 50 minutes."""
        if self._token and self._monotonic() < self._token_expires_at:
            return self._token

        api_url, api_key, api_secret = self._config()
        data = await self._post(f"{api_url}/account/token", {"id": api_key, "secret": api_secret})

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise GatewayError("Morning auth response missing token", provider=PROVIDER)

        self._token = token
        self._token_expires_at = self._monotonic() + TOKEN_TTL_SECONDS
        return token

    async def api_call(self, endpoint: str, body: dict) -> Any:
        """Authenticated POST. A 401 drops the cached token and retries once."""
        api_url, _, _ = self._config()
        token = await self.authenticate()
        try:
            return await self._post(f"{api_url}{endpoint}", body, token=token)
        except GatewayError as e:
            if e.details.get("status_code") != 401:
                raise
            logger.warning(f"Morning rejected cached token on {endpoint}, re-authenticating")
            self.clear_token_cache()
            token = await self.authenticate()
            return await self._post(f"{api_url}{endpoint}", body, token=token)

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_or_find_customer(self, name: str, email: str) -> MorningCustomer:
        """Reuse the customer registered under ``email``, or create one."""
        search = await self.api_call("/clients/search", {"email": email})
        items = search.get("items") if isinstance(search, dict) else None
        if items:
            return MorningCustomer(customer_id=str(items[0]["id"]), is_new=False)

        created = await self.api_call("/clients", {
            "name": name,
            "emails": [email],
            "active": True,
        })
        logger.info(f"Created Morning customer {created['id']}")
        return MorningCustomer(customer_id=str(created["id"]), is_new=True)

    # =========================================================================
    # Documents
    # =========================================================================

    async def _create_document(
        self,
        document_type: int,
        customer_id: str,
        description: str,
        amount: float,
    ) -> MorningDocument:
        result = await self.api_call("/documents", {
            "type": document_type,
            "client": {"id": customer_id},
            "currency": "USD",
            "lang": "en",
            "income": [
                {
                    "catalogNum": SUBSCRIPTION_CATALOG_NUM,
                    "description": description,
                    "quantity": 1,
                    "price": amount,
                    "currency": "USD",
                    "vatType": 0,  # no VAT for foreign customers
                }
            ],
            "payment": [
                {
                    "type": PAYMENT_TYPE_CREDIT_CARD,
                    "date": date.today().isoformat(),
                    "price": amount,
                    "currency": "USD",
                }
            ],
        })
        return MorningDocument(document_id=str(result["id"]), document_url=result.get("url"))

    async def create_invoice_receipt(
        self,
        customer_id: str,
        description: str,
        amount: float,
    ) -> MorningDocument:
        """Tax invoice receipt for a subscription payment."""
        document = await self._create_document(INVOICE_RECEIPT, customer_id, description, amount)
        logger.info(f"Issued invoice receipt {document.document_id} for customer {customer_id}")
        return document
