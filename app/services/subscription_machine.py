"""
Subscription State Machine
==========================

Applies canonical billing events to a user's subscription row.

States: ``trial``, ``active``, ``canceled``, ``past_due`` (plus "no row").

- purchase / renewal / un-cancel -> ``active`` (``trial`` while a trial window
  is open); the role becomes premium.
- cancellation -> ``canceled``; access runs until ``current_period_end`` and
  the role is only downgraded once that instant has passed.
- expiration -> ``past_due``; the role is downgraded immediately.

Every transition appends exactly one ``SubscriptionHistory`` row. The
machine never commits; the caller owns the transaction so the subscription
change, its history row and the webhook log status land atomically.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import UserNotFoundError
from app.models.subscription import (
    HistoryAction,
    PlanType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.models.user import AccessStatus, User, UserRole
from app.schemas.billing import (
    ActivationEvent,
    CancellationEvent,
    CanonicalEvent,
    EventKind,
    ExpirationEvent,
)
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

MIN_PERIOD = timedelta(days=1)

PLAN_DURATIONS = {
    PlanType.MONTHLY: relativedelta(months=1),
    PlanType.YEARLY: relativedelta(years=1),
}

# Roles the billing state never changes
PROTECTED_ROLES = frozenset({UserRole.ADMIN.value, UserRole.LEGACY.value})

STALE_EVENT_NOTE = "stale event ignored"


# =============================================================================
# Period helpers
# =============================================================================

def plan_type_for_product(product_id: Optional[str]) -> PlanType:
    """Yearly for ``*yearly*`` / ``*annual*`` products, monthly otherwise."""
    pid = (product_id or "").lower()
    if "yearly" in pid or "annual" in pid:
        return PlanType.YEARLY
    return PlanType.MONTHLY


def canonical_period_end(start: datetime, plan_type: PlanType) -> datetime:
    """``start`` plus one calendar month or year."""
    return start + PLAN_DURATIONS[plan_type]


def resolve_period_end(
    start: datetime,
    end: Optional[datetime],
    plan_type: PlanType,
) -> datetime:
    """
    Accept a provider period end only if it is at least a day after start.

    Anything else (missing, zero-length, inverted, sub-day) is replaced by the
    plan's canonical duration anchored at ``start``.
    """
    if end is not None and end - start >= MIN_PERIOD:
        return end

    if end is not None:
        logger.warning(
            "Discarding period end %s for start %s; using %s duration",
            end.isoformat(),
            start.isoformat(),
            plan_type.value,
        )
    return canonical_period_end(start, plan_type)


# =============================================================================
# State machine
# =============================================================================

@dataclass
class TransitionResult:
    """What applying one event did."""

    user: Optional[User]
    subscription: Optional[Subscription]
    action: Optional[HistoryAction] = None
    applied: bool = True
    note: Optional[str] = None

    @property
    def subscription_id(self) -> Optional[int]:
        return self.subscription.subscription_id if self.subscription else None


class SubscriptionStateMachine:
    """Read-modify-write of one user's subscription per canonical event."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        founder_discount_percent: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.founder_discount_percent = founder_discount_percent
        self.clock = clock

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id, populate_existing=True)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def get_subscription(self, user_id: int) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_history(self, user_id: int) -> list[SubscriptionHistory]:
        """Ledger rows for the user's subscription, newest first."""
        stmt = (
            select(SubscriptionHistory)
            .join(
                Subscription,
                Subscription.subscription_id == SubscriptionHistory.subscription_id,
            )
            .where(Subscription.user_id == user_id)
            .order_by(
                SubscriptionHistory.created_at.desc(),
                SubscriptionHistory.history_id.desc(),
            )
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def apply(
        self,
        event: CanonicalEvent,
        note: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply a canonical event.

        Args:
            event: Normalized event.
            note: History note; defaults to one naming the event type.

        Raises:
            UserNotFoundError: the event's user does not exist
        """
        if event.kind == EventKind.UNKNOWN:
            return TransitionResult(
                user=None,
                subscription=None,
                applied=False,
                note=f"Event type {event.event_type} not applied",
            )

        note = note or f"Webhook event: {event.event_type}"
        user = await self.get_user(event.user_id)
        existing = await self.get_subscription(user.user_id)

        if self._is_stale(event, existing):
            logger.info(
                "Ignoring stale %s for user=%s (event at %s, last applied %s)",
                event.event_type,
                user.user_id,
                event.event_timestamp.isoformat(),
                existing.last_event_at.isoformat(),
            )
            return TransitionResult(
                user=user,
                subscription=existing,
                applied=False,
                note=STALE_EVENT_NOTE,
            )

        if isinstance(event, ActivationEvent):
            return await self._activate(event, user, existing, note)
        if isinstance(event, CancellationEvent):
            return await self._cancel(event, user, existing, note)
        if isinstance(event, ExpirationEvent):
            return await self._expire(event, user, existing, note)

        raise TypeError(f"Unhandled event kind: {event.kind}")

    @staticmethod
    def _is_stale(event: CanonicalEvent, existing: Optional[Subscription]) -> bool:
        return (
            existing is not None
            and event.event_timestamp is not None
            and existing.last_event_at is not None
            and event.event_timestamp < existing.last_event_at
        )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _activate(
        self,
        event: ActivationEvent,
        user: User,
        existing: Optional[Subscription],
        note: str,
    ) -> TransitionResult:
        now = self.clock()
        plan_type = plan_type_for_product(event.product_id)
        period_start = event.period_start or now
        period_end = resolve_period_end(period_start, event.period_end, plan_type)

        trial_open = (
            event.trial_end is not None
            and event.trial_start is not None
            and now < event.trial_end
        )
        status = SubscriptionStatus.TRIAL if trial_open else SubscriptionStatus.ACTIVE

        external_ref = event.external_ref or (existing.external_ref if existing else None)
        last_event_at = self._latest(event.event_timestamp, existing)

        if existing is not None and self._unchanged(
            existing,
            status=status,
            plan_type=plan_type,
            period_start=period_start,
            period_end=period_end,
            event=event,
            external_ref=external_ref,
        ):
            self._grant_role(user, status)
            await self.db.flush()
            logger.info(
                "%s for user=%s changes nothing; no transition recorded",
                event.event_type,
                user.user_id,
            )
            return TransitionResult(
                user=user,
                subscription=existing,
                applied=False,
                note="Subscription already up to date",
            )

        previous_plan = existing.plan_type.value if existing else None
        founder = existing is None and bool(user.is_beta_user)
        values = {
            "user_id": user.user_id,
            "plan_type": plan_type,
            "status": status,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "trial_start": event.trial_start,
            "trial_end": event.trial_end,
            "canceled_at": None,
            "external_ref": external_ref,
            "last_event_at": last_event_at,
            "founder_discount": founder,
            "discount_percent": self.founder_discount_percent if founder else 0,
            "created_at": now,
            "updated_at": now,
        }
        subscription = await self._upsert(values)

        if existing is None or event.kind == EventKind.PURCHASE:
            action = HistoryAction.CREATED
        else:
            action = HistoryAction.RENEWED

        self._record(
            subscription,
            action,
            from_plan=previous_plan,
            to_plan=plan_type.value,
            effective_date=period_start,
            note=note,
        )
        self._grant_role(user, status)
        await self.db.flush()

        logger.info(
            "Subscription %s for user=%s: %s %s until %s",
            action.value,
            user.user_id,
            status.value,
            plan_type.value,
            period_end.isoformat(),
        )
        return TransitionResult(user=user, subscription=subscription, action=action)

    async def _cancel(
        self,
        event: CancellationEvent,
        user: User,
        existing: Optional[Subscription],
        note: str,
    ) -> TransitionResult:
        now = self.clock()

        if existing is None:
            logger.warning("Cancellation for user=%s without a subscription", user.user_id)
            return TransitionResult(
                user=user,
                subscription=None,
                applied=False,
                note="No subscription to cancel",
            )

        if existing.status == SubscriptionStatus.CANCELED:
            self._revoke_if_elapsed(user, existing, now)
            await self.db.flush()
            return TransitionResult(
                user=user,
                subscription=existing,
                applied=False,
                note="Subscription already canceled",
            )

        if event.period_start is not None and event.period_end is not None:
            existing.current_period_start = event.period_start
            existing.current_period_end = resolve_period_end(
                event.period_start, event.period_end, existing.plan_type
            )

        existing.status = SubscriptionStatus.CANCELED
        existing.canceled_at = event.canceled_at or now
        existing.last_event_at = self._latest(event.event_timestamp, existing)
        existing.updated_at = now

        self._record(
            existing,
            HistoryAction.CANCELED,
            from_plan=existing.plan_type.value,
            to_plan=existing.plan_type.value,
            effective_date=existing.canceled_at,
            note=note,
        )
        revoked = self._revoke_if_elapsed(user, existing, now)
        await self.db.flush()

        logger.info(
            "Subscription canceled for user=%s, access until=%s%s",
            user.user_id,
            existing.current_period_end,
            " (already elapsed, downgraded)" if revoked else "",
        )
        return TransitionResult(
            user=user,
            subscription=existing,
            action=HistoryAction.CANCELED,
        )

    async def _expire(
        self,
        event: ExpirationEvent,
        user: User,
        existing: Optional[Subscription],
        note: str,
    ) -> TransitionResult:
        now = self.clock()
        action: Optional[HistoryAction] = None

        if existing is not None and existing.status != SubscriptionStatus.PAST_DUE:
            existing.status = SubscriptionStatus.PAST_DUE
            existing.last_event_at = self._latest(event.event_timestamp, existing)
            existing.updated_at = now
            action = HistoryAction.EXPIRED
            self._record(
                existing,
                action,
                from_plan=existing.plan_type.value,
                to_plan=None,
                effective_date=now,
                note=note,
            )

        self._revoke_role(user)
        await self.db.flush()

        logger.info(
            "Subscription expired for user=%s, role=%s",
            user.user_id,
            user.role,
        )
        return TransitionResult(
            user=user,
            subscription=existing,
            action=action,
            applied=action is not None,
            note=None if action else "Subscription already expired",
        )

    # -------------------------------------------------------------------------
    # Lapse check
    # -------------------------------------------------------------------------

    async def refresh_lapsed_access(self, user: User) -> Optional[Subscription]:
        """
        Close out subscriptions whose access boundary has passed.

        An ``active``/``trial`` row past its end becomes ``canceled`` with an
        ``expired`` history row; a premium user whose access has elapsed is
        downgraded. This completes the deferred downgrade of cancellations.
        """
        subscription = await self.get_subscription(user.user_id)
        if subscription is None:
            return None

        now = self.clock()
        ends_at = subscription.access_ends_at
        if ends_at is None or ends_at >= now:
            return subscription

        if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = now
            subscription.updated_at = now
            self._record(
                subscription,
                HistoryAction.EXPIRED,
                from_plan=subscription.plan_type.value,
                to_plan=None,
                effective_date=now,
                note="Period elapsed",
            )
            logger.info(
                "Subscription %s for user=%s lapsed at %s",
                subscription.subscription_id,
                user.user_id,
                ends_at.isoformat(),
            )

        if user.role == UserRole.PREMIUM.value:
            self._revoke_role(user)

        await self.db.flush()
        return subscription

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _upsert(self, values: dict) -> Subscription:
        """Insert or update the user's row atomically, keyed by ``user_id``."""
        if self.db.get_bind().dialect.name == "sqlite":
            stmt = sqlite_insert(Subscription)
        else:
            stmt = pg_insert(Subscription)

        stmt = stmt.values(**values)
        update_columns = (
            "plan_type",
            "status",
            "current_period_start",
            "current_period_end",
            "trial_start",
            "trial_end",
            "canceled_at",
            "external_ref",
            "last_event_at",
            "updated_at",
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={column: stmt.excluded[column] for column in update_columns},
        )
        await self.db.execute(stmt)

        subscription = await self.get_subscription(values["user_id"])
        if subscription is None:
            raise RuntimeError(f"Upsert left no subscription for user {values['user_id']}")
        return subscription

    def _record(
        self,
        subscription: Subscription,
        action: HistoryAction,
        *,
        from_plan: Optional[str],
        to_plan: Optional[str],
        effective_date: datetime,
        note: str,
    ) -> SubscriptionHistory:
        history = SubscriptionHistory(
            subscription_id=subscription.subscription_id,
            action=action,
            from_plan=from_plan,
            to_plan=to_plan,
            effective_date=effective_date,
            notes=note,
            created_at=self.clock(),
        )
        self.db.add(history)
        return history

    @staticmethod
    def _unchanged(
        existing: Subscription,
        *,
        status: SubscriptionStatus,
        plan_type: PlanType,
        period_start: datetime,
        period_end: datetime,
        event: ActivationEvent,
        external_ref: Optional[str],
    ) -> bool:
        return (
            existing.status == status
            and existing.plan_type == plan_type
            and existing.current_period_start == period_start
            and existing.current_period_end == period_end
            and existing.trial_start == event.trial_start
            and existing.trial_end == event.trial_end
            and existing.canceled_at is None
            and existing.external_ref == external_ref
        )

    @staticmethod
    def _latest(
        event_timestamp: Optional[datetime],
        existing: Optional[Subscription],
    ) -> Optional[datetime]:
        previous = existing.last_event_at if existing else None
        if event_timestamp is None:
            return previous
        if previous is None:
            return event_timestamp
        return max(event_timestamp, previous)

    @staticmethod
    def _grant_role(user: User, status: SubscriptionStatus) -> None:
        if user.role not in PROTECTED_ROLES:
            user.role = UserRole.PREMIUM.value
        if status == SubscriptionStatus.TRIAL:
            user.subscription_status = AccessStatus.TRIAL.value
        else:
            user.subscription_status = AccessStatus.PREMIUM.value

    @staticmethod
    def _revoke_role(user: User) -> None:
        if user.role not in PROTECTED_ROLES:
            user.role = UserRole.FREE.value
        user.subscription_status = AccessStatus.FREE.value

    def _revoke_if_elapsed(
        self,
        user: User,
        subscription: Subscription,
        now: datetime,
    ) -> bool:
        ends_at = subscription.current_period_end
        if ends_at is not None and ends_at >= now:
            return False
        self._revoke_role(user)
        return True
