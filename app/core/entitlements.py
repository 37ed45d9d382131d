"""
Entitlements
============

The single rule that decides whether a user gets premium features.

Every access-gated read path goes through ``has_premium_access``; nothing
else in the codebase should compare roles or statuses to grant access.
"""

from typing import Any

# Roles that carry premium access on their own
_PREMIUM_ROLES = frozenset({"admin", "legacy", "premium"})

# Denormalized user.subscription_status values that still grant access
_PREMIUM_STATUSES = frozenset({"premium", "trial"})


def _normalize(value: Any) -> str:
    """Lower-cased string form of a role/status, '' for anything unusable."""
    if value is None:
        return ""
    value = getattr(value, "value", value)
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def has_premium_access(
    role: Any = None,
    subscription_status: Any = None,
    is_beta_user: Any = None,
) -> bool:
    """
    Decide premium access from the user's entitlement columns.

    Total over its inputs: unknown or missing values fall through to False.
    """
    if _normalize(role) in _PREMIUM_ROLES:
        return True
    if is_beta_user is True:
        return True
    return _normalize(subscription_status) in _PREMIUM_STATUSES


def user_has_premium_access(user: Any) -> bool:
    """``has_premium_access`` applied to a user-like object (or None)."""
    if user is None:
        return False
    return has_premium_access(
        getattr(user, "role", None),
        getattr(user, "subscription_status", None),
        getattr(user, "is_beta_user", None),
    )
