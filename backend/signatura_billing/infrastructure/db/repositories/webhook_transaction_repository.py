"""
Webhook Transaction Repository

DB-backed idempotency for payment webhooks (survives restarts).
"""

import logging
from typing import Optional

from sqlmodel import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from signatura_billing.infrastructure.db.database import get_session_context
from signatura_billing.infrastructure.db.models.subscription import (
    ProcessedWebhookTransaction,
)


logger = logging.getLogger(__name__)


class WebhookTransactionRepository:
    """Tracks which gateway transactions have already been applied."""

    async def is_processed(self, transaction_key: str) -> bool:
        """Check if a webhook transaction has already been processed."""
        async with get_session_context() as session:
            result = await session.execute(
                select(ProcessedWebhookTransaction.transaction_key).where(
                    ProcessedWebhookTransaction.transaction_key == transaction_key
                )
            )
            return result.scalar_one_or_none() is not None

    async def mark_processed(
        self,
        transaction_key: str,
        event_type: str,
        user_id: Optional[str] = None,
    ) -> None:
        """Record a processed webhook transaction. Re-marking is a no-op."""
        async with get_session_context() as session:
            stmt = pg_insert(ProcessedWebhookTransaction).values(
                transaction_key=transaction_key,
                event_type=event_type,
                user_id=user_id,
            ).on_conflict_do_nothing(index_elements=["transaction_key"])
            await session.execute(stmt)

        logger.debug(f"Marked webhook transaction {transaction_key} as {event_type}")
