"""
Event Normalizer Tests
======================

Provider payloads -> canonical events.
"""

from datetime import datetime, timezone

import pytest

from app.core.errors import InvalidEventError
from app.schemas.billing import (
    ActivationEvent,
    CancellationEvent,
    EventKind,
    ExpirationEvent,
    UnknownEvent,
)
from app.services.event_normalizer import (
    MAX_USER_ID,
    claimed_user_id,
    event_type_of,
    normalize_event,
    parse_user_id,
    unwrap_event,
)

START_MS = 1767225600000  # 2026-01-01T00:00:00Z
END_MS = 1769904000000  # 2026-02-01T00:00:00Z


def _event(**fields):
    event = {"type": "INITIAL_PURCHASE", "app_user_id": "42"}
    event.update(fields)
    return event


class TestUnwrap:
    """Wrapped and bare payloads."""

    def test_wrapped(self):
        assert unwrap_event({"event": {"type": "RENEWAL"}}) == {"type": "RENEWAL"}

    def test_bare(self):
        payload = {"type": "RENEWAL", "app_user_id": "1"}
        assert unwrap_event(payload) is payload

    def test_non_object_event_key_is_ignored(self):
        payload = {"event": "RENEWAL", "type": "EXPIRATION"}
        assert unwrap_event(payload) is payload

    @pytest.mark.parametrize("payload", [[], "x", 1, None])
    def test_rejects_non_objects(self, payload):
        with pytest.raises(InvalidEventError):
            unwrap_event(payload)

    def test_event_type_defaults_to_unknown(self):
        assert event_type_of({}) == "UNKNOWN"
        assert event_type_of({"type": "  "}) == "UNKNOWN"
        assert event_type_of({"type": "renewal"}) == "RENEWAL"


class TestParseUserId:
    """The owning user id is the one hard requirement."""

    @pytest.mark.parametrize("value,expected", [("42", 42), (" 7 ", 7), (42, 42)])
    def test_valid(self, value, expected):
        assert parse_user_id(value) == expected

    @pytest.mark.parametrize(
        "value",
        [None, "", "abc", "-5", "0", "4.2", "١٢", True, str(MAX_USER_ID + 1), "$RCAnonymousID:abc"],
    )
    def test_invalid(self, value):
        with pytest.raises(InvalidEventError) as exc_info:
            parse_user_id(value)
        assert exc_info.value.field == "app_user_id"

    def test_claimed_user_id_never_raises(self):
        assert claimed_user_id({"app_user_id": "x"}) is None
        assert claimed_user_id({"app_user_id": "9"}) == 9


class TestNormalizeEvent:
    """Mapping onto the tagged union."""

    @pytest.mark.parametrize(
        "event_type,kind",
        [
            ("INITIAL_PURCHASE", EventKind.PURCHASE),
            ("NON_RENEWING_PURCHASE", EventKind.PURCHASE),
            ("RENEWAL", EventKind.RENEWAL),
            ("SUBSCRIPTION_RENEWED", EventKind.RENEWAL),
            ("UNCANCELLATION", EventKind.UNCANCELLATION),
            ("SUBSCRIPTION_UNCANCELLED", EventKind.UNCANCELLATION),
        ],
    )
    def test_activation_aliases(self, event_type, kind):
        event = normalize_event({"event": _event(type=event_type)})
        assert isinstance(event, ActivationEvent)
        assert event.kind == kind

    def test_cancellation_and_expiration(self):
        assert isinstance(
            normalize_event(_event(type="SUBSCRIPTION_CANCELLED")), CancellationEvent
        )
        assert isinstance(normalize_event(_event(type="EXPIRATION")), ExpirationEvent)

    def test_unknown_type_keeps_raw_payload(self):
        raw = _event(type="BILLING_ISSUE", extra="kept")
        event = normalize_event({"event": raw})
        assert isinstance(event, UnknownEvent)
        assert event.kind == EventKind.UNKNOWN
        assert event.event_type == "BILLING_ISSUE"
        assert event.raw["extra"] == "kept"

    def test_full_field_mapping(self):
        event = normalize_event({
            "event": _event(
                product_id="premium_yearly",
                period_start_ms=START_MS,
                period_end_ms=END_MS,
                trial_start_ms=START_MS,
                trial_end_ms=END_MS,
                cancellation_date_ms=END_MS,
                subscription_id="sub_123",
                event_timestamp_ms=START_MS,
            )
        })
        assert event.user_id == 42
        assert event.product_id == "premium_yearly"
        assert event.period_start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert event.period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert event.trial_start == event.period_start
        assert event.trial_end == event.period_end
        assert event.canceled_at == event.period_end
        assert event.external_ref == "sub_123"
        assert event.event_timestamp == event.period_start

    def test_alternate_period_field_names(self):
        event = normalize_event(
            _event(purchased_at_ms=START_MS, expiration_at_ms=END_MS, transaction_id="tx_9")
        )
        assert event.period_start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert event.period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert event.external_ref == "tx_9"

    @pytest.mark.parametrize("bad", ["soon", None, -1, 0, {"ms": 1}, True, "NaN"])
    def test_malformed_dates_become_none(self, bad):
        event = normalize_event(_event(period_start_ms=bad, period_end_ms=bad))
        assert event.period_start is None
        assert event.period_end is None

    @pytest.mark.parametrize("huge", [10**400, "1" * 400, 1e308])
    def test_oversized_epoch_values_become_none(self, huge):
        event = normalize_event(
            _event(trial_start_ms=huge, trial_end_ms=huge, event_timestamp_ms=huge)
        )
        assert event.trial_start is None
        assert event.trial_end is None
        assert event.event_timestamp is None

    @pytest.mark.parametrize("key", ["period_start_ms", "purchased_at_ms"])
    def test_period_start_without_room_for_a_period(self, key):
        # 9999-12-31T23:59:59Z
        with pytest.raises(InvalidEventError) as exc:
            normalize_event(_event(**{key: 253402300799000}))
        assert exc.value.field == "period_start_ms"

    def test_latest_usable_period_start(self):
        # 9998-12-31T00:00:00Z plus one year still fits
        event = normalize_event(_event(period_start_ms=253370678400000))
        assert event.period_start == datetime(9998, 12, 31, tzinfo=timezone.utc)

    def test_missing_user_id_is_invalid(self):
        with pytest.raises(InvalidEventError):
            normalize_event({"event": {"type": "RENEWAL"}})

    def test_events_are_immutable(self):
        event = normalize_event(_event())
        with pytest.raises(Exception):
            event.user_id = 7
