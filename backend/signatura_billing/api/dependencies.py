"""
API Dependencies

Caller authentication and the billing service providers used by the routes.

Bearer tokens are Supabase access tokens. They are verified against the
project's JWKS (ES256) first and, when that fails, against the shared HS256
secret. Claims are never read from an unverified token.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from signatura_billing.config.settings import get_settings
from signatura_billing.domain.subscription import (
    DenialReason,
    Feature,
    FeatureCheckResult,
    Resource,
    UsageCheckResult,
)
from signatura_billing.infrastructure.db.dependencies import (
    get_subscription_repository,
    get_webhook_transaction_repository,
)
from signatura_billing.infrastructure.payments.grow_adapter import GrowAdapter
from signatura_billing.infrastructure.payments.morning_adapter import MorningAdapter
from signatura_billing.infrastructure.services.subscription_manager import SubscriptionManager
from signatura_billing.infrastructure.services.usage_metering import UsageMeteringGate
from signatura_billing.infrastructure.services.webhook_processor import WebhookProcessor


logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

TOKEN_AUDIENCE = "authenticated"
REQUIRED_CLAIMS = ["exp", "sub", "iss"]

_signing_keys: Optional[PyJWKClient] = None


class AuthenticatedUser(BaseModel):
    """Caller identity taken from verified JWT claims."""
    user_id: str
    email: Optional[str] = None
    is_admin: bool = False


# =============================================================================
# Token Verification
# =============================================================================

def _jwks_client() -> PyJWKClient:
    global _signing_keys
    if _signing_keys is None:
        base = get_settings().supabase_url
        _signing_keys = PyJWKClient(f"{base}/auth/v1/.well-known/jwks.json", cache_keys=True)
    return _signing_keys


def _verify(token: str, key, algorithm: str, issuer: str) -> dict:
    return jwt.decode(
        token,
        key,
        algorithms=[algorithm],
        issuer=issuer,
        audience=TOKEN_AUDIENCE,
        options={"require": REQUIRED_CLAIMS},
    )


def _decode_with_jwks(token: str, issuer: str) -> dict:
    """ES256 against the key named in the token header."""
    signing_key = _jwks_client().get_signing_key_from_jwt(token)
    return _verify(token, signing_key.key, "ES256", issuer)


def _unauthorized(detail: str, **kwargs) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, **kwargs)


def _verified_claims(token: str) -> dict:
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"

    if settings.supabase_url:
        try:
            return _decode_with_jwks(token, issuer)
        except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as e:
            logger.debug(f"JWKS verification failed, falling back to shared secret: {e}")

    if settings.supabase_jwt_secret:
        try:
            return _verify(token, settings.supabase_jwt_secret, "HS256", issuer)
        except jwt.ExpiredSignatureError:
            raise _unauthorized("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected bearer token: {e}")

    raise _unauthorized("Invalid or unverifiable token")


def _is_admin(claims: dict) -> bool:
    app_metadata = claims.get("app_metadata") or {}
    return app_metadata.get("role") == "admin" or claims.get("is_admin") is True


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthenticatedUser:
    """
    Authenticate the caller from the ``Authorization: Bearer`` header.

    The admin flag is read from ``app_metadata.role`` or a top-level
    ``is_admin`` claim. ``user_metadata`` is user-editable and never trusted.

    Raises:
        HTTPException 401: token missing, expired, invalid, or without ``sub``.
    """
    if not credentials:
        raise _unauthorized("Missing authorization token", headers={"WWW-Authenticate": "Bearer"})

    claims = _verified_claims(credentials.credentials)

    subject = claims.get("sub")
    if not subject:
        raise _unauthorized("Invalid token: missing user ID")

    return AuthenticatedUser(
        user_id=subject,
        email=claims.get("email"),
        is_admin=_is_admin(claims),
    )


# =============================================================================
# Service Providers
# Constructed once per process; tests swap them via app.dependency_overrides.
# =============================================================================

@lru_cache
def get_grow_adapter() -> GrowAdapter:
    return GrowAdapter()


@lru_cache
def get_morning_adapter() -> MorningAdapter:
    return MorningAdapter()


@lru_cache
def get_subscription_manager() -> SubscriptionManager:
    return SubscriptionManager(get_subscription_repository())


@lru_cache
def get_usage_gate() -> UsageMeteringGate:
    return UsageMeteringGate(get_subscription_repository())


@lru_cache
def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(
        manager=get_subscription_manager(),
        grow=get_grow_adapter(),
        transactions=get_webhook_transaction_repository(),
        morning=get_morning_adapter(),
    )


CurrentUserDep = Annotated[AuthenticatedUser, Depends(get_current_user)]
GrowAdapterDep = Annotated[GrowAdapter, Depends(get_grow_adapter)]
SubscriptionManagerDep = Annotated[SubscriptionManager, Depends(get_subscription_manager)]
UsageGateDep = Annotated[UsageMeteringGate, Depends(get_usage_gate)]
WebhookProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]


# =============================================================================
# Usage Gate Guards
# For resource-creating routes: check here, create, then increment_usage.
# =============================================================================

def _denial_status(reason: Optional[DenialReason]) -> int:
    if reason == DenialReason.NO_SUBSCRIPTION:
        return status.HTTP_402_PAYMENT_REQUIRED
    return status.HTTP_403_FORBIDDEN


async def ensure_usage_allowed(
    gate: UsageMeteringGate,
    user: AuthenticatedUser,
    resource: Resource,
) -> UsageCheckResult:
    """
    Raise unless ``user`` may create one more ``resource``.

    Contract for the resource-creating routes of consuming services (call
    it before creating, then ``gate.increment_usage`` after). This service
    exposes no such route itself.

    Raises:
        HTTPException 402: no subscription
        HTTPException 403: limit reached, expired, or past due beyond grace
    """
    result = await gate.check_usage_limit(user.user_id, resource, is_admin=user.is_admin)
    if not result.allowed:
        raise HTTPException(
            status_code=_denial_status(result.reason),
            detail={
                "error": "Usage limit reached" if result.reason == DenialReason.LIMIT_EXCEEDED
                else "Subscription required",
                "reason": result.reason.value if result.reason else None,
                "used": result.used,
                "limit": result.limit,
            },
        )
    return result


async def ensure_feature_allowed(
    gate: UsageMeteringGate,
    user: AuthenticatedUser,
    feature: Feature,
) -> FeatureCheckResult:
    """
    Raise 402 (no subscription) or 403 (not in tier) unless ``feature`` is available.

    Guard for feature-gated routes of consuming services; no route here
    uses it.
    """
    result = await gate.check_feature_access(user.user_id, feature, is_admin=user.is_admin)
    if not result.allowed:
        raise HTTPException(
            status_code=_denial_status(result.reason),
            detail={
                "error": "Feature not available",
                "reason": result.reason.value if result.reason else None,
                "required_tier": result.required_tier.value if result.required_tier else None,
            },
        )
    return result
