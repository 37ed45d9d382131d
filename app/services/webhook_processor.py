"""
Webhook Processor
=================

Runs one inbound billing webhook through the pipeline:

    signature -> parse -> normalize -> idempotency guard -> state machine

Outcomes map onto HTTP semantics the provider understands:
- processed, duplicate, already processed -> 200 (stop retrying)
- invalid signature -> 401, malformed payload -> 400
- processing failure -> 500 (retry later)

Every outcome past signature verification leaves the log entry in a final
status before the response is produced.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCodes,
    InvalidEventError,
    NotFoundError,
    ProcessingError,
    UserNotFoundError,
    ValidationError,
)
from app.models.webhook_log import WebhookLogEntry, WebhookLogStatus
from app.schemas.billing import CanonicalEvent, WebhookResponse
from app.services.event_log import RETRYABLE_STATUSES, WebhookLogStore, is_in_flight
from app.services.event_normalizer import (
    UNKNOWN_EVENT_TYPE,
    claimed_user_id,
    event_type_of,
    normalize_event,
    unwrap_event,
)
from app.services.idempotency import Action, IdempotencyGuard, derive_event_id
from app.services.signature import SignatureVerifier
from app.services.subscription_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

INVALID_SIGNATURE_MESSAGE = "Invalid webhook signature"


class WebhookProcessor:
    """Effectively-once processing of provider webhooks."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        source: str,
        verifier: SignatureVerifier,
        machine: SubscriptionStateMachine,
        timeout_seconds: float = 25,
    ):
        self.db = db
        self.source = source
        self.verifier = verifier
        self.machine = machine
        self.timeout_seconds = timeout_seconds
        self.store = WebhookLogStore(db)
        self.guard = IdempotencyGuard(self.store)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def handle(self, body: bytes, credential: Optional[str]) -> WebhookResponse:
        """
        Process one webhook delivery.

        Raises:
            AuthenticationError: credential mismatch (401)
            ValidationError: malformed payload (400)
            ProcessingError: retry-worthy failure (500)
        """
        if not self.verifier.verify(credential):
            await self._reject_signature(body)
            raise AuthenticationError(
                code=ErrorCodes.WEBHOOK_INVALID_SIGNATURE,
                message=INVALID_SIGNATURE_MESSAGE,
            )

        payload = self._parse_body(body)
        if payload is None:
            await self._record_invalid(
                {"raw": body.decode("utf-8", errors="replace")[:10000]},
                event_id=None,
                event_type=UNKNOWN_EVENT_TYPE,
                user_id=None,
                message="Malformed JSON body",
            )
            raise ValidationError(
                "Malformed JSON body",
                code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
            )

        try:
            raw_event = unwrap_event(payload)
        except InvalidEventError as e:
            await self._record_invalid(
                {"body": payload},
                event_id=None,
                event_type=UNKNOWN_EVENT_TYPE,
                user_id=None,
                message=str(e),
            )
            raise ValidationError(str(e), code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD)

        event_id = derive_event_id(raw_event)
        event_type = event_type_of(raw_event)
        user_id = claimed_user_id(raw_event)

        try:
            event = normalize_event(payload)
        except InvalidEventError as e:
            await self._record_invalid(
                payload,
                event_id=event_id,
                event_type=event_type,
                user_id=user_id,
                message=str(e),
            )
            raise ValidationError(
                str(e),
                field=e.field,
                code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
            )

        ack = WebhookResponse(
            event_id=event_id,
            event_type=event_type,
            user_id=event.user_id,
        )

        disposition = await self.guard.check(self.source, event_id)

        if disposition.action == Action.SKIP:
            return ack.model_copy(
                update={
                    "message": disposition.reason,
                    "subscription_id": disposition.entry.subscription_id,
                }
            )

        if disposition.action == Action.RETRY:
            entry = disposition.entry
            logger.info(
                "Retrying webhook %s (log=%s, status=%s)",
                event_id,
                entry.log_id,
                entry.status.value,
            )
        else:
            entry = await self._insert_received(payload, event_id, event_type, event.user_id)
            if entry is None:
                existing = await self.store.get_by_event_id(self.source, event_id)
                already = existing is not None and existing.status == WebhookLogStatus.PROCESSED
                return ack.model_copy(
                    update={
                        "message": (
                            "Event already processed" if already else "Duplicate event detected"
                        ),
                        "subscription_id": existing.subscription_id if existing else None,
                    }
                )

        return await self._process(entry.log_id, entry.attempts, event, ack)

    async def replay(self, log_id: int) -> WebhookResponse:
        """
        Re-run a stored ``received``/``failed`` entry from its payload.

        Raises:
            NotFoundError: no such entry
            ConflictError: the entry is not retryable or still in flight (409)
            ValidationError: the stored payload no longer normalizes
            ProcessingError: the retry failed again
        """
        entry = await self.store.get(log_id)
        if entry is None:
            raise NotFoundError(message=f"Webhook log {log_id} not found")
        if entry.status not in RETRYABLE_STATUSES or entry.event_id is None:
            raise ConflictError(
                code=ErrorCodes.WEBHOOK_NOT_REPLAYABLE,
                message=f"Webhook log {log_id} has status {entry.status.value}",
            )
        if is_in_flight(entry, self.timeout_seconds):
            raise ConflictError(
                code=ErrorCodes.WEBHOOK_NOT_REPLAYABLE,
                message=f"Webhook log {log_id} is being processed",
            )

        try:
            event = normalize_event(entry.payload)
        except InvalidEventError as e:
            await self.store.update_status(log_id, WebhookLogStatus.INVALID, error_message=str(e))
            await self.db.commit()
            raise ValidationError(str(e), field=e.field, code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD)

        ack = WebhookResponse(
            event_id=entry.event_id,
            event_type=entry.event_type,
            user_id=event.user_id,
        )
        logger.info("Replaying webhook log=%s event=%s", log_id, entry.event_id)
        return await self._process(log_id, entry.attempts, event, ack)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def _process(
        self,
        log_id: int,
        seen_attempts: int,
        event: CanonicalEvent,
        ack: WebhookResponse,
    ) -> WebhookResponse:
        if not await self.store.claim(
            log_id,
            seen_attempts,
            lease_seconds=self.timeout_seconds,
        ):
            await self.db.rollback()
            logger.info("Webhook %s claimed by a concurrent attempt", ack.event_id)
            return ack.model_copy(update={"message": "Duplicate event detected"})
        await self.db.commit()

        try:
            return await asyncio.wait_for(
                self._apply(log_id, event, ack),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._fail(log_id, ack, f"Processing timed out after {self.timeout_seconds}s")
        except UserNotFoundError as e:
            # The account row may be created later; the provider will redeliver
            await self._fail(log_id, ack, str(e))
            raise ProcessingError(message=str(e), code=ErrorCodes.USER_NOT_FOUND)
        except Exception as e:
            logger.exception(
                "Webhook processing failed: event=%s type=%s user=%s",
                ack.event_id,
                ack.event_type,
                ack.user_id,
            )
            await self._fail(log_id, ack, str(e)[:1000] or type(e).__name__)

        raise ProcessingError()

    async def _apply(
        self,
        log_id: int,
        event: CanonicalEvent,
        ack: WebhookResponse,
    ) -> WebhookResponse:
        result = await self.machine.apply(event)

        await self.store.update_status(
            log_id,
            WebhookLogStatus.PROCESSED,
            error_message=None if result.applied else result.note,
            subscription_id=result.subscription_id,
            user_id=event.user_id,
        )
        await self.db.commit()

        logger.info(
            "Webhook processed: event=%s type=%s user=%s subscription=%s applied=%s",
            ack.event_id,
            ack.event_type,
            ack.user_id,
            result.subscription_id,
            result.applied,
        )
        return ack.model_copy(
            update={
                "message": "Webhook processed" if result.applied else result.note,
                "subscription_id": result.subscription_id,
            }
        )

    async def _fail(self, log_id: int, ack: WebhookResponse, message: str) -> None:
        await self.db.rollback()
        await self.store.update_status(
            log_id,
            WebhookLogStatus.FAILED,
            error_message=message,
            user_id=ack.user_id,
        )
        await self.db.commit()
        logger.error(
            "Webhook failed: event=%s type=%s user=%s: %s",
            ack.event_id,
            ack.event_type,
            ack.user_id,
            message,
        )

    # -------------------------------------------------------------------------
    # Log helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_body(body: bytes) -> Optional[Any]:
        try:
            return json.loads(body)
        except (UnicodeDecodeError, ValueError):
            return None

    async def _insert_received(
        self,
        payload: dict[str, Any],
        event_id: str,
        event_type: str,
        user_id: int,
    ) -> Optional[WebhookLogEntry]:
        """Insert the ``received`` entry; None when another delivery won the race."""
        try:
            entry = await self.store.add(
                source=self.source,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                user_id=user_id,
            )
            await self.db.commit()
            return entry
        except IntegrityError:
            await self.db.rollback()
            logger.info("Webhook %s inserted concurrently; treating as duplicate", event_id)
            return None

    async def _reject_signature(self, body: bytes) -> None:
        payload = self._parse_body(body)
        event_type = UNKNOWN_EVENT_TYPE
        user_id = None
        if isinstance(payload, dict):
            raw_event = unwrap_event(payload)
            event_type = event_type_of(raw_event)
            user_id = claimed_user_id(raw_event)
        else:
            payload = {"raw": body.decode("utf-8", errors="replace")[:10000]}

        logger.warning(
            "Rejected webhook with invalid signature: type=%s claimed_user=%s",
            event_type,
            user_id,
        )
        # No event id: an unauthenticated caller must not occupy an id slot
        await self._record_invalid(
            payload,
            event_id=None,
            event_type=event_type,
            user_id=user_id,
            message=INVALID_SIGNATURE_MESSAGE,
        )

    async def _record_invalid(
        self,
        payload: dict[str, Any],
        *,
        event_id: Optional[str],
        event_type: str,
        user_id: Optional[int],
        message: str,
    ) -> None:
        """
        Leave an ``invalid`` trace of a rejected delivery.

        A retryable entry for the same id is finalized as invalid; a final one
        is left untouched.
        """
        existing = await self.store.get_by_event_id(self.source, event_id)
        if existing is not None:
            if existing.status in RETRYABLE_STATUSES:
                await self.store.update_status(
                    existing.log_id,
                    WebhookLogStatus.INVALID,
                    error_message=message,
                )
                await self.db.commit()
            return

        try:
            await self.store.add(
                source=self.source,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                user_id=user_id,
                status=WebhookLogStatus.INVALID,
                error_message=message,
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Invalid webhook %s was logged concurrently", event_id)

        logger.info(
            "Webhook invalid: event=%s type=%s user=%s: %s",
            event_id or "no-event-id",
            event_type,
            user_id,
            message,
        )
