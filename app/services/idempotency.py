"""
Idempotency Guard
=================

Decides whether an inbound event should be processed, skipped or retried,
based on the Event Log Store's record of ``(source, event_id)``.

Event ids come from the provider when it sends one. Otherwise a content hash
over the identifying fields is used, so two deliveries of the same logical
event always map to the same id.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from app.models.webhook_log import WebhookLogEntry, WebhookLogStatus
from app.services.event_log import WebhookLogStore

logger = logging.getLogger(__name__)

EVENT_ID_KEYS = ("id", "event_id", "eventId")

# Fields that identify one logical provider event
FINGERPRINT_KEYS = (
    "type",
    "app_user_id",
    "subscription_id",
    "store_transaction_id",
    "transaction_id",
    "period_start_ms",
)


def derive_event_id(event: dict[str, Any]) -> str:
    """
    Stable id for a provider event.

    Uses the provider's own id when present, otherwise the first 32 hex
    characters of a SHA-256 over the identifying fields.
    """
    for key in EVENT_ID_KEYS:
        value = event.get(key)
        if value is not None and not isinstance(value, (dict, list, bool)):
            text = str(value).strip()
            if text:
                return text[:255]

    fingerprint = {key: event.get(key) for key in FINGERPRINT_KEYS}
    digest = hashlib.sha256(
        json.dumps(fingerprint, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return digest[:32]


class Action(str, Enum):
    PROCESS = "process"
    SKIP = "skip"
    RETRY = "retry"


@dataclass(frozen=True)
class Disposition:
    """Outcome of the idempotency check for one event id."""

    action: Action
    entry: Optional[WebhookLogEntry] = None
    reason: Optional[str] = None

    @classmethod
    def process(cls) -> "Disposition":
        return cls(Action.PROCESS)

    @classmethod
    def skip(cls, entry: WebhookLogEntry, reason: str) -> "Disposition":
        return cls(Action.SKIP, entry, reason)

    @classmethod
    def retry(cls, entry: WebhookLogEntry) -> "Disposition":
        return cls(Action.RETRY, entry)


SKIP_REASONS = {
    WebhookLogStatus.PROCESSED: "Event already processed",
    WebhookLogStatus.DUPLICATE: "Duplicate event detected",
    WebhookLogStatus.INVALID: "Event previously rejected",
}


class IdempotencyGuard:
    """At-most-once processing per ``(source, event_id)``."""

    def __init__(self, store: WebhookLogStore):
        self.store = store

    @staticmethod
    def disposition_for(entry: Optional[WebhookLogEntry]) -> Disposition:
        if entry is None:
            return Disposition.process()

        reason = SKIP_REASONS.get(entry.status)
        if reason is not None:
            return Disposition.skip(entry, reason)

        # received and failed are retryable; the claim refuses in-flight entries
        return Disposition.retry(entry)

    async def check(self, source: str, event_id: str) -> Disposition:
        entry = await self.store.get_by_event_id(source, event_id)
        disposition = self.disposition_for(entry)

        if disposition.action != Action.PROCESS:
            logger.info(
                "Event %s/%s seen before (status=%s, attempts=%s): %s",
                source,
                event_id,
                entry.status.value,
                entry.attempts,
                disposition.action.value,
            )
        return disposition
