"""
Admin API Endpoints
===================

Webhook log inspection and replay, the subscription listing, and founder
(beta) access grants.
All endpoints require ``role == admin``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy import select

from app.core.entitlements import user_has_premium_access
from app.core.errors import ErrorCodes, NotFoundError
from app.dependencies import AdminUser, DBSession, LogStore, Processor
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.models.webhook_log import WebhookLogStatus
from app.schemas.billing import (
    AdminSubscriptionListResponse,
    GrantBetaRequest,
    MessageResponse,
    WebhookLogListResponse,
    WebhookLogResponse,
    WebhookResponse,
)
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/webhook-logs",
    response_model=WebhookLogListResponse,
)
async def list_webhook_logs(
    admin: AdminUser,
    store: LogStore,
    source: Optional[str] = Query(default=None, max_length=50),
    status: Optional[WebhookLogStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List webhook log entries, newest first."""
    entries = await store.list(source=source, status=status, limit=limit, offset=offset)
    return WebhookLogListResponse(data=[entry.to_dict() for entry in entries])


@router.get(
    "/webhook-logs/{log_id}",
    response_model=WebhookLogResponse,
)
async def get_webhook_log(
    log_id: int,
    admin: AdminUser,
    store: LogStore,
):
    """Get one webhook log entry including its payload."""
    entry = await store.get(log_id)
    if entry is None:
        raise NotFoundError(message=f"Webhook log {log_id} not found")
    return WebhookLogResponse(data=entry.to_dict(include_payload=True))


@router.post(
    "/webhook-logs/{log_id}/replay",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
)
async def replay_webhook_log(
    log_id: int,
    admin: AdminUser,
    processor: Processor,
):
    """
    Re-run a ``received`` or ``failed`` entry through the state machine.

    Returns 409 for entries in any other status.
    """
    logger.info("Admin user=%s replaying webhook log=%s", admin.user_id, log_id)
    return await processor.replay(log_id)


@router.get(
    "/subscriptions",
    response_model=AdminSubscriptionListResponse,
)
async def list_subscriptions(
    admin: AdminUser,
    db: DBSession,
    status: Optional[SubscriptionStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """
    List accounts with their subscription, newest account first.

    Users without a subscription are included with ``subscription: null``
    unless a ``status`` filter is given.
    """
    stmt = select(User, Subscription).outerjoin(
        Subscription, Subscription.user_id == User.user_id
    )
    if status is not None:
        stmt = stmt.where(Subscription.status == status)
    stmt = stmt.order_by(User.user_id.desc()).limit(limit).offset(offset)

    result = await db.execute(stmt)
    return AdminSubscriptionListResponse(
        data=[
            {
                "user": {
                    "userId": user.user_id,
                    "email": user.email,
                    "role": user.role,
                    "subscriptionStatus": user.subscription_status,
                    "isBetaUser": user.is_beta_user,
                    "hasPremiumAccess": user_has_premium_access(user),
                },
                "subscription": subscription.to_dict() if subscription else None,
            }
            for user, subscription in result.all()
        ]
    )


@router.post(
    "/beta-users/grant-access",
    response_model=MessageResponse,
)
async def grant_beta_access(
    grant: GrantBetaRequest,
    admin: AdminUser,
    db: DBSession,
):
    """Give a user permanent founder access."""
    user = await db.get(User, grant.user_id)
    if user is None:
        raise NotFoundError(
            code=ErrorCodes.USER_NOT_FOUND,
            message=f"User {grant.user_id} not found",
        )

    if not user.is_beta_user:
        user.is_beta_user = True
        user.beta_start_date = utc_now()
        await db.commit()
        logger.info("Admin user=%s granted beta access to user=%s", admin.user_id, user.user_id)

    return MessageResponse(message=f"Beta access granted to user {user.user_id}")
