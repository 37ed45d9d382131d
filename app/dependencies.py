"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.entitlements import user_has_premium_access
from app.core.errors import AuthenticationError, ErrorCodes, ForbiddenError
from app.core.security import user_id_from_token
from app.db.session import get_db
from app.models.user import User, UserRole
from app.services.cache import SyncWindow, get_redis
from app.services.event_log import WebhookLogStore
from app.services.reconciliation import ReconciliationService
from app.services.signature import SignatureVerifier
from app.services.subscription_machine import SubscriptionStateMachine
from app.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


# =============================================================================
# User resolution
# =============================================================================

async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DBSession,
) -> User:
    """
    Get current authenticated user.

    Raises 401 if not authenticated, the token is invalid, or the user no
    longer exists.
    """
    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_TOKEN_EXPIRED,
            message="Not authenticated",
        )

    user_id = user_id_from_token(credentials.credentials)
    user = await db.get(User, user_id) if user_id is not None else None

    if user is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_TOKEN_EXPIRED,
            message="Invalid or expired token",
        )

    return user


async def get_admin_user(
    user: Annotated[User, Depends(get_current_user)],
) -> User:
    if user.role != UserRole.ADMIN.value:
        logger.warning("Non-admin user=%s attempted an admin operation", user.user_id)
        raise ForbiddenError(code=ErrorCodes.FORBIDDEN, message="Admin access required")
    return user


async def get_premium_user(
    user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Gate for premium-only endpoints."""
    if not user_has_premium_access(user):
        raise ForbiddenError(
            code=ErrorCodes.FEATURE_LOCKED,
            message="Premium subscription required",
        )
    return user


# Type aliases for authenticated user dependencies
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(get_admin_user)]
PremiumUser = Annotated[User, Depends(get_premium_user)]


# =============================================================================
# Services
# =============================================================================

async def get_optional_redis() -> Optional[Redis]:
    """Redis client, or None when Redis is unreachable."""
    try:
        return await get_redis()
    except Exception as e:
        logger.warning("Redis unavailable: %s", e)
        return None


def get_state_machine(db: DBSession) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(
        db,
        founder_discount_percent=settings.FOUNDER_DISCOUNT_PERCENT,
    )


StateMachine = Annotated[SubscriptionStateMachine, Depends(get_state_machine)]


def get_webhook_processor(
    db: DBSession,
    machine: StateMachine,
) -> WebhookProcessor:
    return WebhookProcessor(
        db,
        source=settings.WEBHOOK_SOURCE,
        verifier=SignatureVerifier(
            settings.REVENUECAT_WEBHOOK_SECRET,
            is_production=settings.is_production,
        ),
        machine=machine,
        timeout_seconds=settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
    )


def get_reconciliation_service(
    db: DBSession,
    machine: StateMachine,
    redis_client: Annotated[Optional[Redis], Depends(get_optional_redis)],
) -> ReconciliationService:
    return ReconciliationService(
        db,
        machine,
        WebhookLogStore(db),
        SyncWindow(redis_client, settings.SYNC_DEDUP_WINDOW_SECONDS),
        source=settings.WEBHOOK_SOURCE,
        entitlement_id=settings.PREMIUM_ENTITLEMENT_ID,
    )


def get_log_store(db: DBSession) -> WebhookLogStore:
    return WebhookLogStore(db)


Processor = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
Reconciler = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
LogStore = Annotated[WebhookLogStore, Depends(get_log_store)]
