"""
Features API Endpoints
======================

Premium access checks for the app's content gates.
"""

from fastapi import APIRouter, Query

from app.core.entitlements import user_has_premium_access
from app.dependencies import CurrentUser, PremiumUser

router = APIRouter()


@router.get("/check")
async def check_feature_access(
    current_user: CurrentUser,
    feature: str = Query(
        ...,
        min_length=1,
        max_length=100,
        description="Premium feature to check",
    ),
) -> dict:
    """
    Check if the user may use a premium feature.
    """
    has_access = user_has_premium_access(current_user)

    data = {
        "feature": feature,
        "hasAccess": has_access,
        "role": current_user.role,
    }
    if not has_access:
        data["reason"] = "This feature requires a premium subscription"

    return {"success": True, "data": data}


@router.get("/premium")
async def premium_gate(current_user: PremiumUser) -> dict:
    """Succeeds only for users with premium access (403 otherwise)."""
    return {
        "success": True,
        "data": {"userId": current_user.user_id, "hasAccess": True},
    }
