"""
Reconciliation Service
======================

Client-triggered subscription sync, called right after an on-device purchase
so access does not wait for the provider's webhook.

The client's entitlement snapshot is turned into a synthetic activation
event and fed through the same state machine as webhooks; every call is
recorded in the webhook log (``event_id`` NULL, type ``Subscription Sync``).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ErrorCodes
from app.core.result import Err, Ok, Result
from app.models.subscription import Subscription
from app.models.webhook_log import WebhookLogStatus
from app.schemas.billing import ActivationEvent, EventKind, SyncRequest
from app.services.cache import SyncWindow
from app.services.event_log import WebhookLogStore
from app.services.subscription_machine import SubscriptionStateMachine
from app.utils.helpers import LATEST_PERIOD_START, coerce_datetime, utc_now

logger = logging.getLogger(__name__)

SYNC_EVENT_TYPE = "Subscription Sync"
SYNC_NOTE = "manual sync"
TRIAL_PERIOD_TYPE = "TRIAL"


@dataclass
class SyncOutcome:
    subscription: Subscription
    role: str
    log_id: int


def _first_product(active_subscriptions: Any) -> Optional[str]:
    if isinstance(active_subscriptions, dict):
        active_subscriptions = list(active_subscriptions.keys())
    if isinstance(active_subscriptions, list):
        for product in active_subscriptions:
            if isinstance(product, str) and product:
                return product
    return None


def build_sync_event(
    user_id: int,
    request: SyncRequest,
    *,
    entitlement_id: str,
    has_subscription: bool,
    now: datetime,
    current_period_start: Optional[datetime] = None,
) -> Result[ActivationEvent]:
    """
    Synthesize an activation event from a client entitlement snapshot.

    Returns ``Err`` when the snapshot has no active entry for
    ``entitlement_id`` or its purchase date is out of range; the caller
    decides how to surface that.

    Without purchase dates the stored ``current_period_start`` is kept, so
    repeated syncs of the same snapshot derive the same period.
    """
    entitlement = request.entitlements.active.get(entitlement_id)
    if entitlement is None or entitlement.is_active is False:
        return Err("No active entitlement", code=ErrorCodes.SUB_NO_ACTIVE_ENTITLEMENT)

    period_start = (
        coerce_datetime(entitlement.latest_purchase_date)
        or coerce_datetime(entitlement.purchase_date)
        or current_period_start
        or now
    )
    if period_start > LATEST_PERIOD_START:
        return Err("Purchase date out of range", code=ErrorCodes.VALIDATION_ERROR)
    period_end = coerce_datetime(entitlement.expiration_date)

    is_trial = (
        (entitlement.period_type or "").upper() == TRIAL_PERIOD_TYPE
        and period_end is not None
        and period_end > now
    )

    event = ActivationEvent(
        kind=EventKind.RENEWAL if has_subscription else EventKind.PURCHASE,
        event_type="SUBSCRIPTION_SYNC",
        user_id=user_id,
        product_id=(
            entitlement.product_identifier
            or _first_product(request.active_subscriptions)
        ),
        period_start=period_start,
        period_end=period_end,
        trial_start=period_start if is_trial else None,
        trial_end=period_end if is_trial else None,
        external_ref=(
            entitlement.transaction_identifier
            or entitlement.original_transaction_identifier
        ),
    )
    return Ok(event)


class ReconciliationService:
    """Applies client entitlement snapshots to the local subscription state."""

    def __init__(
        self,
        db: AsyncSession,
        machine: SubscriptionStateMachine,
        log_store: WebhookLogStore,
        window: SyncWindow,
        *,
        source: str,
        entitlement_id: str,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.machine = machine
        self.log_store = log_store
        self.window = window
        self.source = source
        self.entitlement_id = entitlement_id
        self.clock = clock

    async def sync(self, user_id: int, request: SyncRequest) -> Result[SyncOutcome]:
        """
        Reconcile one user's subscription with their client snapshot.

        Returns:
            ``Ok(SyncOutcome)`` after a successful apply, ``Err`` when the
            snapshot shows no active entitlement (no mutation happened).

        Raises:
            Any processing failure, after the log entry was marked ``failed``.
        """
        log_id, reused_status = await self._open_log_entry(user_id, request)

        existing = await self.machine.get_subscription(user_id)
        built = build_sync_event(
            user_id,
            request,
            entitlement_id=self.entitlement_id,
            has_subscription=existing is not None,
            now=self.clock(),
            current_period_start=existing.current_period_start if existing else None,
        )

        if isinstance(built, Err):
            await self._finish_log_entry(
                log_id,
                reused_status,
                user_id,
                request,
                WebhookLogStatus.INVALID,
                error_message=built.reason,
            )
            logger.info("Sync for user=%s: %s", user_id, built.reason)
            return built

        try:
            result = await self.machine.apply(built.value, note=SYNC_NOTE)
            log_id = await self._finish_log_entry(
                log_id,
                reused_status,
                user_id,
                request,
                WebhookLogStatus.PROCESSED,
                error_message=None if result.applied else result.note,
                subscription_id=result.subscription_id,
            )
        except Exception as e:
            await self.db.rollback()
            logger.exception("Sync failed for user=%s (log=%s)", user_id, log_id)
            await self._finish_log_entry(
                log_id,
                reused_status,
                user_id,
                request,
                WebhookLogStatus.FAILED,
                error_message=str(e)[:1000] or type(e).__name__,
            )
            raise

        logger.info(
            "Sync for user=%s applied=%s subscription=%s role=%s",
            user_id,
            result.applied,
            result.subscription_id,
            result.user.role,
        )
        return Ok(SyncOutcome(result.subscription, result.user.role, log_id))

    async def _open_log_entry(
        self,
        user_id: int,
        request: SyncRequest,
    ) -> tuple[int, Optional[WebhookLogStatus]]:
        """
        Reuse the log row of a sync within the window, or create one.

        Returns the row id and, for a reused row, the status it had.
        """
        log_id = await self.window.current_log_id(user_id)
        if log_id is not None:
            entry = await self.log_store.get(log_id)
            if entry is not None:
                logger.info("Sync for user=%s reuses log=%s", user_id, log_id)
                return log_id, entry.status

        entry = await self.log_store.add(
            source=self.source,
            event_id=None,
            event_type=SYNC_EVENT_TYPE,
            payload=request.model_dump(mode="json", by_alias=True),
            user_id=user_id,
        )
        log_id = entry.log_id
        await self.db.commit()
        await self.window.open(user_id, log_id)
        return log_id, None

    async def _finish_log_entry(
        self,
        log_id: int,
        reused_status: Optional[WebhookLogStatus],
        user_id: int,
        request: SyncRequest,
        status: WebhookLogStatus,
        *,
        error_message: Optional[str] = None,
        subscription_id: Optional[int] = None,
    ) -> int:
        """
        Record the sync outcome and commit; returns the row that holds it.

        A reused row that already carries a different final outcome is left
        alone and the outcome goes to a fresh row.
        """
        if reused_status in (None, WebhookLogStatus.RECEIVED, status):
            await self.log_store.update_status(
                log_id,
                status,
                error_message=error_message,
                subscription_id=subscription_id,
                user_id=user_id,
            )
            await self.db.commit()
            return log_id

        entry = await self.log_store.add(
            source=self.source,
            event_id=None,
            event_type=SYNC_EVENT_TYPE,
            payload=request.model_dump(mode="json", by_alias=True),
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            error_message=error_message,
        )
        await self.db.commit()
        await self.window.open(user_id, entry.log_id)
        return entry.log_id
