"""
Entitlement Derivation Tests
============================

``has_premium_access`` must be total and grant access exactly for
premium roles, the founder flag, or a premium/trial status.
"""

import itertools
from types import SimpleNamespace

import pytest

from app.core.entitlements import has_premium_access, user_has_premium_access
from app.models.user import AccessStatus, UserRole

ROLES = [None, "free", "premium", "legacy", "admin"]
STATUSES = [None, "free", "trial", "premium"]
BETA_FLAGS = [True, False, None]


def _expected(role, status, is_beta_user) -> bool:
    return (
        role in ("admin", "legacy", "premium")
        or is_beta_user is True
        or status in ("trial", "premium")
    )


class TestHasPremiumAccess:
    """Exhaustive grid over the documented input domain."""

    @pytest.mark.parametrize(
        "role,status,is_beta_user",
        list(itertools.product(ROLES, STATUSES, BETA_FLAGS)),
    )
    def test_matches_rule(self, role, status, is_beta_user):
        """Never raises and agrees with the access rule."""
        assert has_premium_access(role, status, is_beta_user) is _expected(
            role, status, is_beta_user
        )

    def test_no_arguments_is_free(self):
        assert has_premium_access() is False

    def test_accepts_enum_members(self):
        """Enum values behave like their string values."""
        assert has_premium_access(UserRole.ADMIN) is True
        assert has_premium_access(UserRole.FREE, AccessStatus.TRIAL) is True
        assert has_premium_access(UserRole.FREE, AccessStatus.FREE) is False

    @pytest.mark.parametrize("junk", [42, 3.5, ["admin"], {"role": "admin"}, object()])
    def test_unusable_values_fall_through(self, junk):
        """Non-string inputs are treated as absent, not as errors."""
        assert has_premium_access(junk, junk, junk) is False

    def test_beta_flag_requires_true(self):
        """Only a real True grants founder access."""
        assert has_premium_access("free", "free", "yes") is False
        assert has_premium_access("free", "free", 1) is False


class TestUserHasPremiumAccess:
    """The user-object wrapper."""

    def test_none_user(self):
        assert user_has_premium_access(None) is False

    def test_reads_user_attributes(self):
        user = SimpleNamespace(role="free", subscription_status="free", is_beta_user=True)
        assert user_has_premium_access(user) is True

    def test_missing_attributes(self):
        assert user_has_premium_access(SimpleNamespace()) is False
