"""
Subscription Repository

Data access layer for subscription rows and the subscription audit log.
No business rules live here: the repository only reads, writes and maps
between the snake_case table columns and the domain models.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
from uuid import uuid4, UUID

from sqlmodel import select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from signatura_billing.domain.events import (
    SubscriptionEvent,
    event_from_record,
    event_payload,
)
from signatura_billing.domain.subscription import (
    BillingPeriod,
    Resource,
    SubscriptionStatus,
    SubscriptionUpdate,
    Tier,
    UsageCounters,
    UserSubscription,
)
from signatura_billing.infrastructure.db.database import get_session_context
from signatura_billing.infrastructure.db.models.subscription import (
    SubscriptionEventModel,
    UserSubscriptionModel,
)
from signatura_billing.infrastructure.exceptions import (
    DatabaseError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

TABLE = UserSubscriptionModel.__tablename__


def usage_column(resource: Resource) -> str:
    """Table column holding the counter for a resource."""
    return f"usage_{resource.value}"


def _user_uuid(user_id: str) -> UUID:
    try:
        return UUID(user_id) if isinstance(user_id, str) else user_id
    except ValueError as e:
        raise ValidationError(f"Invalid user id: {user_id}", original_error=e)


def _enum_value(value):
    return value.value if value is not None else None


class SubscriptionRepository:
    """
    Repository for subscription data access.

    Every method opens its own session so the repository can be shared
    by long-lived services.
    """

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Session that reports driver failures as DatabaseError."""
        try:
            async with get_session_context() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Subscription store {operation} failed: {e}")
            raise DatabaseError(
                f"Failed to {operation.replace('_', ' ')}",
                operation=operation,
                table=TABLE,
                original_error=e,
            )

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        """
        Get subscription by user ID.

        Returns:
            UserSubscription domain model, or None when the user has no row
        """
        user_uuid = _user_uuid(user_id)
        async with self._session("get_subscription") as session:
            statement = select(UserSubscriptionModel).where(
                UserSubscriptionModel.user_id == user_uuid
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()

            if model:
                return self._to_domain(model)

            return None

    async def list_by_status(self, status: SubscriptionStatus) -> list[UserSubscription]:
        """All subscriptions currently in ``status``."""
        async with self._session("list_subscriptions") as session:
            statement = select(UserSubscriptionModel).where(
                UserSubscriptionModel.status == status.value
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert(self, user_id: str, changes: SubscriptionUpdate) -> UserSubscription:
        """
        Create or update the subscription row for a user.

        Uses PostgreSQL upsert for atomicity. Only fields set on ``changes``
        are written to an existing row.
        """
        user_uuid = _user_uuid(user_id)
        now = datetime.now(timezone.utc)
        values = self._to_columns(changes)

        async with self._session("upsert_subscription") as session:
            stmt = pg_insert(UserSubscriptionModel).values(
                id=uuid4(),
                user_id=user_uuid,
                created_at=now,
                updated_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id"],
                set_={**values, "updated_at": now},
            )
            await session.execute(stmt)

            logger.info(f"Upserted subscription for user {user_id}: {sorted(values)}")
            return await self._fetch(session, user_uuid)

    async def update(self, user_id: str, changes: SubscriptionUpdate) -> UserSubscription:
        """
        Apply a partial update to an existing subscription.

        Raises:
            NotFoundError: the user has no subscription row
        """
        user_uuid = _user_uuid(user_id)
        values = self._to_columns(changes)
        values["updated_at"] = datetime.now(timezone.utc)

        async with self._session("update_subscription") as session:
            stmt = (
                sa_update(UserSubscriptionModel)
                .where(UserSubscriptionModel.user_id == user_uuid)
                .values(**values)
            )
            result = await session.execute(stmt)

            if result.rowcount == 0:
                raise NotFoundError(
                    f"No subscription found for user {user_id}",
                    operation="update_subscription",
                    table=TABLE,
                )

            return await self._fetch(session, user_uuid)

    async def update_guarded(
        self,
        user_id: str,
        changes: SubscriptionUpdate,
        expected_status: Optional[SubscriptionStatus] = None,
        period_ended_before: Optional[datetime] = None,
        transaction_code_not: Optional[str] = None,
    ) -> Optional[UserSubscription]:
        """
        Partial update applied only while the row still matches what the
        caller read.

        Args:
            expected_status: row status must still equal this
            period_ended_before: current_period_end must still be earlier
            transaction_code_not: grow_last_transaction_code must differ

        Returns None when no row matched, i.e. a concurrent writer already
        moved the row on.
        """
        user_uuid = _user_uuid(user_id)
        values = self._to_columns(changes)
        values["updated_at"] = datetime.now(timezone.utc)

        conditions = [UserSubscriptionModel.user_id == user_uuid]
        if expected_status is not None:
            conditions.append(UserSubscriptionModel.status == expected_status.value)
        if period_ended_before is not None:
            conditions.append(UserSubscriptionModel.current_period_end < period_ended_before)
        if transaction_code_not is not None:
            conditions.append(
                UserSubscriptionModel.grow_last_transaction_code.is_distinct_from(transaction_code_not)
            )

        async with self._session("update_subscription_guarded") as session:
            stmt = sa_update(UserSubscriptionModel).where(*conditions).values(**values)
            result = await session.execute(stmt)

            if result.rowcount == 0:
                logger.info(f"Guarded update for user {user_id} matched no row, skipped")
                return None

            return await self._fetch(session, user_uuid)

    async def increment_usage(self, user_id: str, resource: Resource) -> int:
        """
        Atomically add one to a usage counter and return the new value.

        A user without a row gets a tracking-only row (no tier) with the
        counter at 1.
        """
        user_uuid = _user_uuid(user_id)
        column_name = usage_column(resource)
        column = UserSubscriptionModel.__table__.c[column_name]
        now = datetime.now(timezone.utc)

        async with self._session("increment_usage") as session:
            stmt = pg_insert(UserSubscriptionModel).values(
                id=uuid4(),
                user_id=user_uuid,
                status=SubscriptionStatus.ACTIVE.value,
                created_at=now,
                updated_at=now,
                **{column_name: 1},
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id"],
                set_={column_name: column + 1, "updated_at": now},
            ).returning(column)

            result = await session.execute(stmt)
            new_count = result.scalar_one()

            logger.debug(f"Usage {resource.value} for user {user_id} is now {new_count}")
            return new_count

    # =========================================================================
    # Audit Log
    # =========================================================================

    async def record_event(self, event: SubscriptionEvent) -> None:
        """Append an event to the audit log."""
        async with self._session("record_event") as session:
            session.add(SubscriptionEventModel(
                id=uuid4(),
                user_id=_user_uuid(event.user_id),
                event_type=event.type,
                tier=_enum_value(getattr(event, "tier", None)),
                billing_period=_enum_value(getattr(event, "billing_period", None)),
                amount=getattr(event, "prorated_amount", None),
                currency="USD" if getattr(event, "prorated_amount", None) else None,
                grow_transaction_code=getattr(event, "transaction_code", None),
                event_data=event_payload(event),
                created_at=event.timestamp,
            ))

    async def list_events(self, user_id: str, limit: int = 50) -> list[SubscriptionEvent]:
        """Most recent events for a user, newest first."""
        user_uuid = _user_uuid(user_id)
        async with self._session("list_events") as session:
            statement = (
                select(SubscriptionEventModel)
                .where(SubscriptionEventModel.user_id == user_uuid)
                .order_by(SubscriptionEventModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(statement)
            return [
                event_from_record(row.event_type, str(row.user_id), row.created_at, row.event_data)
                for row in result.scalars().all()
            ]

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    async def _fetch(self, session: AsyncSession, user_uuid: UUID) -> UserSubscription:
        statement = select(UserSubscriptionModel).where(
            UserSubscriptionModel.user_id == user_uuid
        ).execution_options(populate_existing=True)
        result = await session.execute(statement)
        return self._to_domain(result.scalar_one())

    def _to_domain(self, model: UserSubscriptionModel) -> UserSubscription:
        """Convert database model to domain entity."""
        return UserSubscription(
            id=str(model.id),
            user_id=str(model.user_id),
            tier=Tier(model.tier) if model.tier else None,
            billing_period=BillingPeriod(model.billing_period) if model.billing_period else None,
            status=SubscriptionStatus(model.status),
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            cancelled_at=model.cancelled_at,
            cancellation_effective_at=model.cancellation_effective_at,
            scheduled_tier_change=Tier(model.scheduled_tier_change) if model.scheduled_tier_change else None,
            scheduled_billing_period_change=(
                BillingPeriod(model.scheduled_billing_period_change)
                if model.scheduled_billing_period_change else None
            ),
            pending_tier=Tier(model.pending_tier) if model.pending_tier else None,
            pending_billing_period=(
                BillingPeriod(model.pending_billing_period)
                if model.pending_billing_period else None
            ),
            grow_transaction_token=model.grow_transaction_token,
            grow_recurring_id=model.grow_recurring_id,
            grow_last_transaction_code=model.grow_last_transaction_code,
            morning_customer_id=model.morning_customer_id,
            usage=UsageCounters(**{
                resource.value: getattr(model, usage_column(resource)) or 0
                for resource in Resource
            }),
            last_reset_at=model.last_reset_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_columns(self, changes: SubscriptionUpdate) -> dict:
        """Flatten a partial domain update into table column values."""
        values = {}
        for name, value in changes.changes().items():
            if name == "usage":
                counters = value or UsageCounters()
                for resource in Resource:
                    values[usage_column(resource)] = counters.get(resource)
            elif hasattr(value, "value"):
                values[name] = value.value
            else:
                values[name] = value
        return values
