"""
Scheduled Job Routes

Daily expiration sweep, called by the scheduler with
``Authorization: Bearer <CRON_SECRET>``.
"""

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from signatura_billing.api.dependencies import SubscriptionManagerDep
from signatura_billing.config.settings import Settings, get_settings


logger = logging.getLogger(__name__)

router = APIRouter()


class CronResult(BaseModel):
    skipped: bool = False
    reason: Optional[str] = None
    expired: Optional[int] = None
    execution_time_ms: Optional[int] = None
    timestamp: datetime


def verify_cron_secret(authorization: Optional[str], settings: Settings) -> bool:
    """Constant-time check of the bearer secret. Denies when none is configured."""
    if not settings.cron_secret:
        logger.error("CRON_SECRET not configured")
        return False
    if not authorization:
        return False
    return secrets.compare_digest(
        authorization.encode("utf-8"),
        f"Bearer {settings.cron_secret}".encode("utf-8"),
    )


@router.get("/cron/process-subscriptions", response_model=CronResult)
async def process_subscriptions(
    manager: SubscriptionManagerDep,
    settings: Annotated[Settings, Depends(get_settings)],
    authorization: Annotated[Optional[str], Header()] = None,
):
    """
    Expire cancelled subscriptions past their effective date and past-due
    subscriptions beyond the grace period.

    Skipped while SUBSCRIPTION_ENABLED is off.
    """
    started = time.perf_counter()
    timestamp = datetime.now(timezone.utc)

    if not verify_cron_secret(authorization, settings):
        logger.error("Unauthorized cron access attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    if not settings.subscription_enabled:
        logger.info("Subscription enforcement disabled, skipping expiration sweep")
        return CronResult(skipped=True, reason="enforcement disabled", timestamp=timestamp)

    result = await manager.process_expirations()

    return CronResult(
        expired=result.expired,
        execution_time_ms=round((time.perf_counter() - started) * 1000),
        timestamp=timestamp,
    )
