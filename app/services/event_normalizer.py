"""
Event Normalizer
================

Maps RevenueCat webhook payloads onto canonical billing events.

Payloads arrive either wrapped (``{"api_version": "1.0", "event": {...}}``)
or as the bare event object. Date fields are optional and may be malformed;
they become ``None`` instead of raising. The owning user id is the one hard
requirement, since no subscription can be mutated without it. A period start
so late that no plan period fits after it is rejected as well.
"""

import logging
from typing import Any, Optional

from app.core.errors import InvalidEventError
from app.schemas.billing import (
    ActivationEvent,
    CancellationEvent,
    CanonicalEvent,
    EventKind,
    ExpirationEvent,
    UnknownEvent,
)
from app.utils.helpers import LATEST_PERIOD_START, coerce_datetime

logger = logging.getLogger(__name__)

UNKNOWN_EVENT_TYPE = "UNKNOWN"

# users.user_id is a 32-bit integer column
MAX_USER_ID = 2**31 - 1

# Provider event type -> canonical kind
EVENT_KIND_MAP: dict[str, EventKind] = {
    "INITIAL_PURCHASE": EventKind.PURCHASE,
    "NON_RENEWING_PURCHASE": EventKind.PURCHASE,
    "RENEWAL": EventKind.RENEWAL,
    "SUBSCRIPTION_RENEWED": EventKind.RENEWAL,
    "UNCANCELLATION": EventKind.UNCANCELLATION,
    "SUBSCRIPTION_UNCANCELLED": EventKind.UNCANCELLATION,
    "CANCELLATION": EventKind.CANCELLATION,
    "SUBSCRIPTION_CANCELLED": EventKind.CANCELLATION,
    "EXPIRATION": EventKind.EXPIRATION,
    "SUBSCRIPTION_EXPIRED": EventKind.EXPIRATION,
}


def unwrap_event(payload: Any) -> dict[str, Any]:
    """Return the event object from a wrapped or bare payload."""
    if not isinstance(payload, dict):
        raise InvalidEventError("Webhook body must be a JSON object")

    event = payload.get("event")
    if isinstance(event, dict):
        return event
    return payload


def event_type_of(event: dict[str, Any]) -> str:
    """Raw provider event type, ``UNKNOWN`` when missing."""
    event_type = event.get("type")
    if isinstance(event_type, str) and event_type.strip():
        return event_type.strip().upper()
    return UNKNOWN_EVENT_TYPE


def parse_user_id(value: Any) -> int:
    """
    Parse the provider's ``app_user_id`` as a positive integer.

    Raises:
        InvalidEventError: missing, non-numeric or non-positive id
    """
    if value is None or isinstance(value, bool):
        raise InvalidEventError("Missing app user id in webhook payload", field="app_user_id")

    text = str(value).strip()
    if not (text.isascii() and text.isdigit()):
        raise InvalidEventError("Invalid app user id", field="app_user_id")

    user_id = int(text)
    if user_id <= 0 or user_id > MAX_USER_ID:
        raise InvalidEventError("Invalid app user id", field="app_user_id")
    return user_id


def claimed_user_id(event: dict[str, Any]) -> Optional[int]:
    """User id for logging purposes; None when it does not parse."""
    try:
        return parse_user_id(event.get("app_user_id"))
    except InvalidEventError:
        return None


def _first_present(event: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = event.get(key)
        if value is not None and value != "":
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def normalize_event(payload: Any) -> CanonicalEvent:
    """
    Convert a webhook payload into a canonical event.

    Unknown event types come back as ``UnknownEvent`` carrying the raw event.

    Raises:
        InvalidEventError: the body is not an object, the user id is invalid
            or the period start leaves no room for a plan period
    """
    event = unwrap_event(payload)
    event_type = event_type_of(event)
    user_id = parse_user_id(event.get("app_user_id"))

    period_start = coerce_datetime(
        _first_present(event, "period_start_ms", "purchased_at_ms")
    )
    if period_start is not None and period_start > LATEST_PERIOD_START:
        raise InvalidEventError("Period start out of range", field="period_start_ms")

    fields = dict(
        event_type=event_type,
        user_id=user_id,
        product_id=_optional_str(event.get("product_id")),
        period_start=period_start,
        period_end=coerce_datetime(
            _first_present(event, "period_end_ms", "expiration_at_ms")
        ),
        trial_start=coerce_datetime(event.get("trial_start_ms")),
        trial_end=coerce_datetime(event.get("trial_end_ms")),
        canceled_at=coerce_datetime(event.get("cancellation_date_ms")),
        external_ref=_optional_str(
            _first_present(
                event,
                "subscription_id",
                "store_transaction_id",
                "transaction_id",
                "original_transaction_id",
            )
        ),
        event_timestamp=coerce_datetime(event.get("event_timestamp_ms")),
    )

    kind = EVENT_KIND_MAP.get(event_type)
    if kind is None:
        logger.info("Unknown webhook event type %s for user=%s", event_type, user_id)
        return UnknownEvent(raw=event, **fields)
    if kind == EventKind.CANCELLATION:
        return CancellationEvent(**fields)
    if kind == EventKind.EXPIRATION:
        return ExpirationEvent(**fields)
    return ActivationEvent(kind=kind, **fields)
