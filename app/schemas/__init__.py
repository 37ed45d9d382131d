"""
Pydantic Schemas
================

Canonical events and request/response schemas for API validation.
"""

from app.schemas.billing import (
    ActivationEvent,
    CancellationEvent,
    CanonicalEvent,
    EventKind,
    ExpirationEvent,
    SyncRequest,
    UnknownEvent,
)

__all__ = [
    "ActivationEvent",
    "CancellationEvent",
    "CanonicalEvent",
    "EventKind",
    "ExpirationEvent",
    "SyncRequest",
    "UnknownEvent",
]
