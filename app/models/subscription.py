"""
Subscription Models
===================

SQLAlchemy models for the subscription record and its audit ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, UTCDateTime
from app.utils.helpers import utc_now


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class PlanType(str, Enum):
    """Billing plan tiers."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


class HistoryAction(str, Enum):
    """Ledger actions, one per state transition."""
    CREATED = "created"
    RENEWED = "renewed"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Subscription(Base, TimestampMixin):
    """
    Subscription model.

    One row per user with a billing relationship. Rows are never deleted;
    they move between statuses as provider events arrive.
    """

    __tablename__ = "subscriptions"

    subscription_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    plan_type: Mapped[PlanType] = mapped_column(
        SQLEnum(
            PlanType,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(
            SubscriptionStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    # Period boundaries
    current_period_start: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    trial_start: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Provider-side subscription / transaction id
    external_ref: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    founder_discount: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    discount_percent: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Provider timestamp of the last applied webhook event
    last_event_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("idx_subscription_status_period_end", "status", "current_period_end"),
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_subscriptions_discount_percent",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, plan={self.plan_type}, "
            f"status={self.status})>"
        )

    @property
    def access_ends_at(self) -> Optional[datetime]:
        """The instant paid (or trial) access runs out."""
        if self.status == SubscriptionStatus.TRIAL and self.trial_end is not None:
            return self.trial_end
        return self.current_period_end

    def to_dict(self) -> dict:
        return {
            "subscriptionId": self.subscription_id,
            "userId": self.user_id,
            "planType": self.plan_type.value,
            "status": self.status.value,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "trialStart": _iso(self.trial_start),
            "trialEnd": _iso(self.trial_end),
            "canceledAt": _iso(self.canceled_at),
            "externalRef": self.external_ref,
            "founderDiscount": self.founder_discount,
            "discountPercent": self.discount_percent,
        }


class SubscriptionHistory(Base):
    """
    Subscription history model.

    Append-only audit trail: rows are inserted once and never updated.
    """

    __tablename__ = "subscription_history"

    history_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    subscription_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
    )

    action: Mapped[HistoryAction] = mapped_column(
        SQLEnum(
            HistoryAction,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    from_plan: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_plan: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    effective_date: Mapped[datetime] = mapped_column(nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_sub_history_subscription", "subscription_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(subscription_id={self.subscription_id}, "
            f"action={self.action})>"
        )

    def to_dict(self) -> dict:
        return {
            "historyId": self.history_id,
            "subscriptionId": self.subscription_id,
            "action": self.action.value,
            "fromPlan": self.from_plan,
            "toPlan": self.to_plan,
            "effectiveDate": _iso(self.effective_date),
            "notes": self.notes,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
