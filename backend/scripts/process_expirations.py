"""
Process Expirations Script

Runs the subscription expiration sweep once, outside the HTTP cron route.
Expires cancelled subscriptions past their effective date and past-due
subscriptions beyond the grace period.

Usage:
    cd backend
    python scripts/process_expirations.py [--force]

--force runs the sweep even while SUBSCRIPTION_ENABLED is off.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from signatura_billing.config.settings import settings
from signatura_billing.infrastructure.db.database import close_db
from signatura_billing.infrastructure.db.repositories import SubscriptionRepository
from signatura_billing.infrastructure.services.subscription_manager import SubscriptionManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def process_expirations(force: bool = False) -> int:
    """Run one sweep and return the number of expired subscriptions."""
    if not settings.subscription_enabled and not force:
        logger.info("SUBSCRIPTION_ENABLED is off, nothing to do (use --force to override)")
        return 0

    manager = SubscriptionManager(SubscriptionRepository())
    try:
        result = await manager.process_expirations()
    finally:
        await close_db()

    logger.info(f"Expired {result.expired} subscriptions")
    return result.expired


if __name__ == "__main__":
    asyncio.run(process_expirations(force="--force" in sys.argv[1:]))
