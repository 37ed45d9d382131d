"""
Subscription API Endpoints
==========================

Entitlement status, client-triggered sync and subscription history.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials

from app.core.entitlements import user_has_premium_access
from app.core.errors import AppException, AuthenticationError, ErrorCodes, ValidationError
from app.core.result import Err
from app.core.security import user_id_from_token
from app.dependencies import CurrentUser, DBSession, Reconciler, StateMachine, security
from app.models.user import User
from app.schemas.billing import (
    EntitlementStatusResponse,
    HistoryResponse,
    SyncRequest,
    SyncResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/status",
    response_model=EntitlementStatusResponse,
    response_model_exclude_none=True,
)
async def get_entitlement_status(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DBSession,
    machine: StateMachine,
):
    """
    Get the caller's entitlement.

    Lapsed subscriptions are closed out on read. Any internal failure
    degrades to ``{"role": "free"}`` so access gates fail closed.
    """
    user_id = user_id_from_token(credentials.credentials) if credentials else None
    if user_id is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_TOKEN_EXPIRED,
            message="Invalid or expired token",
        )

    try:
        user = await db.get(User, user_id)
        if user is None:
            logger.warning("Entitlement read for unknown user=%s", user_id)
            return EntitlementStatusResponse()

        subscription = await machine.refresh_lapsed_access(user)
        await db.commit()

        return EntitlementStatusResponse(
            role=user.role,
            subscription_status=user.subscription_status,
            subscription=subscription.to_dict() if subscription else None,
            is_beta_user=user.is_beta_user,
            has_premium_access=user_has_premium_access(user),
        )
    except Exception:
        logger.exception("Entitlement read failed for user=%s, reporting free", user_id)
        try:
            await db.rollback()
        except Exception as e:
            logger.warning("Rollback after failed entitlement read failed: %s", e)
        return EntitlementStatusResponse()


@router.post(
    "/sync",
    response_model=SyncResponse,
)
async def sync_subscription(
    sync_data: SyncRequest,
    current_user: CurrentUser,
    reconciler: Reconciler,
):
    """
    Sync the subscription from the purchase SDK's entitlement snapshot.

    Called by the app right after an on-device purchase completes. A
    snapshot without an active premium entitlement is a client error and
    changes nothing.
    """
    user_id = current_user.user_id

    try:
        result = await reconciler.sync(user_id, sync_data)
    except Exception:
        logger.exception("Subscription sync failed for user=%s", user_id)
        raise AppException(
            status_code=500,
            code=ErrorCodes.INTERNAL_ERROR,
            message="Subscription sync failed",
        )

    if isinstance(result, Err):
        raise ValidationError(
            result.reason,
            code=result.code or ErrorCodes.SUB_NO_ACTIVE_ENTITLEMENT,
        )

    outcome = result.value
    return SyncResponse(
        subscription=outcome.subscription.to_dict(),
        role=outcome.role,
    )


@router.get(
    "/history",
    response_model=HistoryResponse,
)
async def get_subscription_history(
    current_user: CurrentUser,
    machine: StateMachine,
):
    """Get the caller's subscription ledger, newest first."""
    history = await machine.list_history(current_user.user_id)
    return HistoryResponse(data=[entry.to_dict() for entry in history])
