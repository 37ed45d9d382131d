"""
User Model
==========

SQLAlchemy model for user accounts.

The account service owns this table; the billing core only reads it and
updates the entitlement columns (``role``, ``subscription_status``,
``is_beta_user``).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class UserRole(str, Enum):
    """Account roles relevant to content access."""
    FREE = "free"
    PREMIUM = "premium"
    ADMIN = "admin"
    LEGACY = "legacy"


class AccessStatus(str, Enum):
    """Denormalized entitlement cache stored on the user row."""
    FREE = "free"
    TRIAL = "trial"
    PREMIUM = "premium"


class User(Base, TimestampMixin):
    """
    User account model.
    """

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Entitlement fields
    role: Mapped[str] = mapped_column(
        String(20),
        default=UserRole.FREE.value,
        nullable=False,
    )
    subscription_status: Mapped[str] = mapped_column(
        String(20),
        default=AccessStatus.FREE.value,
        nullable=False,
    )
    is_beta_user: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    beta_start_date: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, role={self.role})>"
