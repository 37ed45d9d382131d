"""
Reconciliation Tests
====================

Client entitlement snapshots -> synthetic activation events -> state machine.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import ErrorCodes
from app.core.result import Err, Ok
from app.models.subscription import SubscriptionStatus
from app.models.webhook_log import WebhookLogStatus
from app.schemas.billing import EventKind, SyncRequest
from app.services.cache import SyncWindow
from app.services.event_log import WebhookLogStore
from app.services.reconciliation import (
    SYNC_EVENT_TYPE,
    ReconciliationService,
    build_sync_event,
)
from app.services.subscription_machine import SubscriptionStateMachine
from tests.factories import create_user

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
ENTITLEMENT = "premium"


def snapshot(**entitlement) -> SyncRequest:
    entitlement.setdefault("isActive", True)
    entitlement.setdefault("productIdentifier", "premium_monthly")
    entitlement.setdefault("latestPurchaseDate", "2026-03-01T08:00:00Z")
    entitlement.setdefault("expirationDate", "2026-04-01T08:00:00Z")
    return SyncRequest.model_validate(
        {"entitlements": {"active": {ENTITLEMENT: entitlement}}}
    )


def build(request: SyncRequest, has_subscription: bool = False):
    return build_sync_event(
        7,
        request,
        entitlement_id=ENTITLEMENT,
        has_subscription=has_subscription,
        now=NOW,
    )


class TestBuildSyncEvent:
    """Snapshot -> ActivationEvent."""

    def test_active_entitlement(self):
        built = build(snapshot(transactionIdentifier="tx_1"))

        assert isinstance(built, Ok)
        event = built.value
        assert event.kind == EventKind.PURCHASE
        assert event.user_id == 7
        assert event.product_id == "premium_monthly"
        assert event.period_start == datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        assert event.period_end == datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc)
        assert event.trial_start is None
        assert event.external_ref == "tx_1"

    def test_existing_subscription_is_a_renewal(self):
        assert build(snapshot(), has_subscription=True).value.kind == EventKind.RENEWAL

    def test_missing_entitlement(self):
        built = build(SyncRequest())

        assert isinstance(built, Err)
        assert built.is_ok is False
        assert built.reason == "No active entitlement"
        assert built.code == ErrorCodes.SUB_NO_ACTIVE_ENTITLEMENT

    def test_inactive_entitlement(self):
        assert isinstance(build(snapshot(isActive=False)), Err)

    def test_trial_period(self):
        event = build(snapshot(periodType="TRIAL")).value

        assert event.trial_start == event.period_start
        assert event.trial_end == event.period_end

    def test_finished_trial_is_not_a_trial(self):
        event = build(snapshot(periodType="trial", expirationDate="2026-02-01T00:00:00Z")).value

        assert event.trial_end is None

    def test_fallbacks(self):
        """Purchase date, epoch millis, the active product list, original tx."""
        request = SyncRequest.model_validate({
            "entitlements": {
                "active": {
                    ENTITLEMENT: {
                        "isActive": True,
                        "purchaseDate": 1772352000000,
                        "originalTransactionIdentifier": "otx_1",
                    }
                }
            },
            "activeSubscriptions": ["premium_yearly"],
        })
        event = build(request).value

        assert event.period_start == datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        assert event.period_end is None
        assert event.product_id == "premium_yearly"
        assert event.external_ref == "otx_1"

    def test_no_dates_uses_now(self):
        event = build(snapshot(latestPurchaseDate=None, purchaseDate="garbage")).value

        assert event.period_start == NOW

    def test_no_dates_keeps_stored_period_start(self):
        stored = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)
        event = build_sync_event(
            7,
            snapshot(latestPurchaseDate=None),
            entitlement_id=ENTITLEMENT,
            has_subscription=True,
            now=NOW,
            current_period_start=stored,
        ).value

        assert event.period_start == stored

    def test_purchase_date_out_of_range(self):
        built = build(snapshot(latestPurchaseDate="9999-12-31T23:00:00Z"))

        assert isinstance(built, Err)
        assert built.code == ErrorCodes.VALIDATION_ERROR


class TestReconciliationService:
    """The sync use case against SQLite."""

    def _service(self, db_session, window=None) -> ReconciliationService:
        return ReconciliationService(
            db_session,
            SubscriptionStateMachine(db_session, clock=lambda: NOW),
            WebhookLogStore(db_session),
            window or SyncWindow(None, ttl_seconds=5),
            source="revenuecat",
            entitlement_id=ENTITLEMENT,
            clock=lambda: NOW,
        )

    @pytest.mark.asyncio
    async def test_sync_activates_and_logs(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        service = self._service(db_session)

        outcome = await service.sync(user_id, snapshot())

        assert isinstance(outcome, Ok)
        assert outcome.value.role == "premium"
        assert outcome.value.subscription.status == SubscriptionStatus.ACTIVE

        entry = await WebhookLogStore(db_session).get(outcome.value.log_id)
        assert entry.event_id is None
        assert entry.event_type == SYNC_EVENT_TYPE
        assert entry.status == WebhookLogStatus.PROCESSED
        assert entry.subscription_id == outcome.value.subscription.subscription_id
        assert entry.payload["entitlements"]["active"][ENTITLEMENT]["isActive"] is True

    @pytest.mark.asyncio
    async def test_no_entitlement_marks_log_invalid(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        service = self._service(db_session)

        outcome = await service.sync(user_id, SyncRequest())

        assert isinstance(outcome, Err)
        entries = await WebhookLogStore(db_session).list()
        assert len(entries) == 1
        assert entries[0].status == WebhookLogStatus.INVALID
        assert entries[0].error_message == "No active entitlement"
        assert await service.machine.get_subscription(user_id) is None

    @pytest.mark.asyncio
    async def test_calls_within_window_share_a_log_row(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        service = self._service(db_session, SyncWindow(redis_client, ttl_seconds=5))

        first = await service.sync(user_id, snapshot())
        redis_client.setex.assert_awaited_once_with(
            f"sync:{user_id}", 5, str(first.value.log_id)
        )

        redis_client.get.return_value = str(first.value.log_id)
        second = await service.sync(user_id, snapshot())

        assert second.value.log_id == first.value.log_id
        assert len(await WebhookLogStore(db_session).list()) == 1

    @pytest.mark.asyncio
    async def test_redis_failure_is_not_an_error(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        redis_client = AsyncMock()
        redis_client.get.side_effect = RedisConnectionError("down")
        redis_client.setex.side_effect = RedisConnectionError("down")
        service = self._service(db_session, SyncWindow(redis_client, ttl_seconds=5))

        assert isinstance(await service.sync(user_id, snapshot()), Ok)
        assert isinstance(await service.sync(user_id, snapshot()), Ok)
        assert len(await WebhookLogStore(db_session).list()) == 2

    @pytest.mark.asyncio
    async def test_failure_marks_log_failed_and_reraises(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        service = self._service(db_session)

        with patch.object(
            SubscriptionStateMachine,
            "apply",
            new=AsyncMock(side_effect=RuntimeError("db gone")),
        ):
            with pytest.raises(RuntimeError):
                await service.sync(user_id, snapshot())

        entries = await WebhookLogStore(db_session).list()
        assert entries[0].status == WebhookLogStatus.FAILED
        assert entries[0].error_message == "db gone"

    @pytest.mark.asyncio
    async def test_repeat_sync_is_a_no_op(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        service = self._service(db_session)

        await service.sync(user_id, snapshot(transactionIdentifier="tx_1"))
        second = await service.sync(user_id, snapshot(transactionIdentifier="tx_1"))

        assert second.value.role == "premium"
        history = await service.machine.list_history(user_id)
        assert len(history) == 1
        assert history[0].notes == "manual sync"

    @pytest.mark.asyncio
    async def test_dateless_snapshot_does_not_renew_again(self, db_session, session_factory):
        user_id = await create_user(session_factory)
        service = self._service(db_session)
        request = snapshot(latestPurchaseDate=None, transactionIdentifier="tx_1")

        await service.sync(user_id, request)
        later = NOW + timedelta(hours=1)
        service.clock = lambda: later
        service.machine.clock = lambda: later
        second = await service.sync(user_id, request)

        assert second.value.subscription.current_period_start == NOW
        assert len(await service.machine.list_history(user_id)) == 1

    @pytest.mark.asyncio
    async def test_window_keeps_a_final_outcome(self, db_session, session_factory):
        """A later rejected call within the window gets its own row."""
        user_id = await create_user(session_factory)
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        service = self._service(db_session, SyncWindow(redis_client, ttl_seconds=5))

        first = await service.sync(user_id, snapshot())
        redis_client.get.return_value = str(first.value.log_id)
        second = await service.sync(user_id, SyncRequest())

        assert isinstance(second, Err)
        entries = await WebhookLogStore(db_session).list()
        assert [e.status for e in entries] == [
            WebhookLogStatus.INVALID,
            WebhookLogStatus.PROCESSED,
        ]
        assert entries[1].log_id == first.value.log_id
        redis_client.setex.assert_awaited_with(f"sync:{user_id}", 5, str(entries[0].log_id))
