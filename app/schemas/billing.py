"""
Billing Schemas
===============

Canonical billing events and the request/response shapes of the billing
endpoints.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ─── Canonical Events ────────────────────────────────────────────────────────


class EventKind(str, Enum):
    """Provider-agnostic billing occurrences."""

    PURCHASE = "purchase"
    RENEWAL = "renewal"
    UNCANCELLATION = "uncancellation"
    CANCELLATION = "cancellation"
    EXPIRATION = "expiration"
    UNKNOWN = "unknown"


class _CanonicalEvent(BaseModel):
    """Fields shared by every canonical event."""

    model_config = ConfigDict(frozen=True)

    event_type: str = Field(description="Raw provider event type")
    user_id: int = Field(gt=0)
    product_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    external_ref: Optional[str] = None
    event_timestamp: Optional[datetime] = None


class ActivationEvent(_CanonicalEvent):
    """Purchase, renewal or un-cancel: access should be (re)granted."""

    kind: Literal[
        EventKind.PURCHASE,
        EventKind.RENEWAL,
        EventKind.UNCANCELLATION,
    ]


class CancellationEvent(_CanonicalEvent):
    """The user turned off auto-renew; access runs to the period end."""

    kind: Literal[EventKind.CANCELLATION] = EventKind.CANCELLATION


class ExpirationEvent(_CanonicalEvent):
    """The provider confirmed the paid period is over."""

    kind: Literal[EventKind.EXPIRATION] = EventKind.EXPIRATION


class UnknownEvent(_CanonicalEvent):
    """Anything else; logged but never applied."""

    kind: Literal[EventKind.UNKNOWN] = EventKind.UNKNOWN
    raw: dict[str, Any] = Field(default_factory=dict)


CanonicalEvent = Union[ActivationEvent, CancellationEvent, ExpirationEvent, UnknownEvent]


# ─── Reconciliation (client snapshot) ────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class EntitlementInfo(_CamelModel):
    """One entry of the purchase SDK's ``entitlements.active`` map."""

    identifier: Optional[str] = None
    is_active: Optional[bool] = None
    product_identifier: Optional[str] = None
    period_type: Optional[str] = None
    purchase_date: Optional[Union[str, int, float]] = None
    latest_purchase_date: Optional[Union[str, int, float]] = None
    expiration_date: Optional[Union[str, int, float]] = None
    transaction_identifier: Optional[str] = None
    original_transaction_identifier: Optional[str] = None


class EntitlementsSnapshot(_CamelModel):
    active: dict[str, EntitlementInfo] = Field(default_factory=dict)


class SyncRequest(_CamelModel):
    """Body of the reconciliation call made right after an on-device purchase."""

    entitlements: EntitlementsSnapshot = Field(default_factory=EntitlementsSnapshot)
    active_subscriptions: Optional[Union[list[str], dict[str, Any]]] = None


# ─── Responses ───────────────────────────────────────────────────────────────


class _CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookResponse(_CamelResponse):
    """Acknowledgement returned to the billing provider."""

    success: bool = True
    message: Optional[str] = None
    event_id: Optional[str] = None
    user_id: Optional[int] = None
    event_type: Optional[str] = None
    subscription_id: Optional[int] = None


class SyncResponse(_CamelResponse):
    success: bool = True
    subscription: dict[str, Any]
    role: str


class EntitlementStatusResponse(_CamelResponse):
    """Entitlement read model; degrades to ``{"role": "free"}``."""

    role: str = "free"
    subscription_status: Optional[str] = None
    subscription: Optional[dict[str, Any]] = None
    is_beta_user: Optional[bool] = None
    has_premium_access: Optional[bool] = None


class HistoryResponse(_CamelResponse):
    success: bool = True
    data: list[dict[str, Any]]


class WebhookLogListResponse(_CamelResponse):
    success: bool = True
    data: list[dict[str, Any]]


class WebhookLogResponse(_CamelResponse):
    success: bool = True
    data: dict[str, Any]


class AdminSubscriptionListResponse(_CamelResponse):
    success: bool = True
    data: list[dict[str, Any]]


class GrantBetaRequest(_CamelModel):
    user_id: int = Field(gt=0)


class MessageResponse(_CamelResponse):
    success: bool = True
    message: str
