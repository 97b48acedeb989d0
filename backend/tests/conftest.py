"""
Test configuration and fixtures for Signatura Billing.

Provides in-memory store doubles, a controllable clock, and a TestClient
wired to them through FastAPI dependency overrides.
"""

from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from signatura_billing.api.dependencies import (
    AuthenticatedUser,
    get_current_user,
    get_grow_adapter,
    get_subscription_manager,
    get_usage_gate,
    get_webhook_processor,
)
from signatura_billing.config.settings import Settings, get_settings
from signatura_billing.domain.subscription import (
    Resource,
    SubscriptionStatus,
    SubscriptionUpdate,
    UserSubscription,
)
from signatura_billing.infrastructure.exceptions import NotFoundError
from signatura_billing.infrastructure.payments.grow_adapter import (
    ApproveResult,
    ChargeResult,
    GrowAdapter,
    RecurringPaymentResult,
)
from signatura_billing.infrastructure.services.subscription_manager import SubscriptionManager
from signatura_billing.infrastructure.services.usage_metering import UsageMeteringGate
from signatura_billing.infrastructure.services.webhook_processor import WebhookProcessor


USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Doubles
# =============================================================================

class MutableClock:
    """Callable clock tests can move around."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class InMemorySubscriptionStore:
    """Dict-backed stand-in for SubscriptionRepository."""

    def __init__(self):
        self.rows: dict[str, UserSubscription] = {}
        self.events: list = []
        self.updates: list[tuple[str, SubscriptionUpdate]] = []

    def seed(self, **fields) -> UserSubscription:
        fields.setdefault("user_id", USER_ID)
        subscription = UserSubscription(**fields)
        self.rows[subscription.user_id] = subscription
        return subscription

    def row(self, user_id: str = USER_ID) -> Optional[UserSubscription]:
        return self.rows.get(user_id)

    def event_types(self) -> list[str]:
        return [event.type for event in self.events]

    async def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        row = self.rows.get(user_id)
        return row.model_copy(deep=True) if row else None

    async def list_by_status(self, status: SubscriptionStatus) -> list[UserSubscription]:
        return [row.model_copy(deep=True) for row in self.rows.values() if row.status == status]

    async def upsert(self, user_id: str, changes: SubscriptionUpdate) -> UserSubscription:
        self.updates.append((user_id, changes))
        row = self.rows.get(user_id) or UserSubscription(user_id=user_id)
        self.rows[user_id] = row.model_copy(update=changes.changes(), deep=True)
        return self.rows[user_id].model_copy(deep=True)

    async def update(self, user_id: str, changes: SubscriptionUpdate) -> UserSubscription:
        if user_id not in self.rows:
            raise NotFoundError(f"No subscription found for user {user_id}")
        self.updates.append((user_id, changes))
        self.rows[user_id] = self.rows[user_id].model_copy(update=changes.changes(), deep=True)
        return self.rows[user_id].model_copy(deep=True)

    async def update_guarded(
        self,
        user_id: str,
        changes: SubscriptionUpdate,
        expected_status: Optional[SubscriptionStatus] = None,
        period_ended_before: Optional[datetime] = None,
        transaction_code_not: Optional[str] = None,
    ) -> Optional[UserSubscription]:
        row = self.rows.get(user_id)
        if row is None:
            return None
        if expected_status is not None and row.status != expected_status:
            return None
        if period_ended_before is not None and not (
            row.current_period_end is not None and row.current_period_end < period_ended_before
        ):
            return None
        if transaction_code_not is not None and row.grow_last_transaction_code == transaction_code_not:
            return None
        return await self.update(user_id, changes)

    async def increment_usage(self, user_id: str, resource: Resource) -> int:
        row = self.rows.get(user_id) or UserSubscription(user_id=user_id)
        new_count = row.usage.get(resource) + 1
        usage = row.usage.model_copy(update={resource.value: new_count})
        self.rows[user_id] = row.model_copy(update={"usage": usage})
        return new_count

    async def record_event(self, event) -> None:
        self.events.append(event)

    async def list_events(self, user_id: str, limit: int = 50) -> list:
        return [event for event in reversed(self.events) if event.user_id == user_id][:limit]


class InMemoryWebhookTransactions:
    """Dict-backed stand-in for WebhookTransactionRepository."""

    def __init__(self):
        self.processed: dict[str, str] = {}

    async def is_processed(self, transaction_key: str) -> bool:
        return transaction_key in self.processed

    async def mark_processed(
        self,
        transaction_key: str,
        event_type: str,
        user_id: Optional[str] = None,
    ) -> None:
        self.processed.setdefault(transaction_key, event_type)


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment and any .env file."""
    values = {
        "subscription_enabled": True,
        "grace_period_days": 3,
        "grow_api_url": "https://grow.test/api/light/server/1.0",
        "grow_user_id": "grow-account",
        "grow_webhook_key": "whk_secret_123",
        "grow_page_code_momentum_monthly": "pc-momentum-monthly",
        "grow_page_code_accelerate_monthly": "pc-accelerate-monthly",
        "grow_page_code_elite_yearly": "pc-elite-yearly",
        "morning_api_url": "https://morning.test/api/v1",
        "morning_api_key": "morning-key",
        "morning_api_secret": "morning-secret",
        "cron_secret": "cron-secret",
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(NOW)


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def transactions() -> InMemoryWebhookTransactions:
    return InMemoryWebhookTransactions()


@pytest.fixture
def manager(store, settings, clock) -> SubscriptionManager:
    return SubscriptionManager(store, settings=settings, clock=clock)


@pytest.fixture
def gate(store, settings, clock) -> UsageMeteringGate:
    return UsageMeteringGate(store, settings=settings, clock=clock)


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application, overrides cleared afterwards."""
    from signatura_billing.main import app
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
def current_user() -> AuthenticatedUser:
    return AuthenticatedUser(user_id=USER_ID, email="dana@example.com")


@pytest.fixture
def mock_grow(settings) -> GrowAdapter:
    """Real verification and parsing, mocked outbound calls."""
    adapter = GrowAdapter(settings=settings)
    adapter.create_recurring_payment = AsyncMock(
        return_value=RecurringPaymentResult(success=True, payment_url="https://pay.test/p/1")
    )
    adapter.create_one_time_charge = AsyncMock(
        return_value=ChargeResult(success=True, transaction_id="ch-1")
    )
    adapter.approve_transaction = AsyncMock(return_value=ApproveResult(success=True))
    return adapter


@pytest.fixture
def api(app, client, settings, current_user, manager, gate, mock_grow, transactions) -> TestClient:
    """TestClient with every billing dependency wired to in-memory services."""
    processor = WebhookProcessor(manager=manager, grow=mock_grow, transactions=transactions)

    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_subscription_manager] = lambda: manager
    app.dependency_overrides[get_usage_gate] = lambda: gate
    app.dependency_overrides[get_grow_adapter] = lambda: mock_grow
    app.dependency_overrides[get_webhook_processor] = lambda: processor
    app.dependency_overrides[get_settings] = lambda: settings
    return client
