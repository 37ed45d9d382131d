"""
Event Log Store
===============

Persistence for ``WebhookLogEntry`` rows.

The store only stages changes on the session; callers own commit and
rollback. Status updates go through UPDATE statements keyed by id so they
remain safe after the session has been rolled back.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook_log import WebhookLogEntry, WebhookLogStatus
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (WebhookLogStatus.RECEIVED, WebhookLogStatus.FAILED)

DEFAULT_LEASE_SECONDS = 25.0


def lease_cutoff(lease_seconds: float, now: Optional[datetime] = None) -> datetime:
    """Claims made before this instant have lapsed."""
    return (now or utc_now()) - timedelta(seconds=lease_seconds)


def is_in_flight(entry: WebhookLogEntry, lease_seconds: float) -> bool:
    """Whether an attempt on ``entry`` may still be running."""
    return (
        entry.status == WebhookLogStatus.RECEIVED
        and entry.claimed_at is not None
        and entry.claimed_at >= lease_cutoff(lease_seconds)
    )


class WebhookLogStore:
    """Event Log Store backed by the ``webhook_logs`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, log_id: int) -> Optional[WebhookLogEntry]:
        return await self.db.get(WebhookLogEntry, log_id, populate_existing=True)

    async def get_by_event_id(
        self,
        source: str,
        event_id: Optional[str],
    ) -> Optional[WebhookLogEntry]:
        """Find the entry for ``(source, event_id)``; None without an id."""
        if not event_id:
            return None

        stmt = (
            select(WebhookLogEntry)
            .where(
                WebhookLogEntry.source == source,
                WebhookLogEntry.event_id == event_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def add(
        self,
        *,
        source: str,
        event_id: Optional[str],
        event_type: str,
        payload: dict[str, Any],
        user_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
        status: WebhookLogStatus = WebhookLogStatus.RECEIVED,
        error_message: Optional[str] = None,
    ) -> WebhookLogEntry:
        """
        Stage a new entry and flush it.

        Raises:
            sqlalchemy.exc.IntegrityError: ``(source, event_id)`` already exists
        """
        entry = WebhookLogEntry(
            source=source,
            event_id=event_id,
            event_type=event_type[:100],
            payload=payload,
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            error_message=error_message,
            attempts=0,
            created_at=utc_now(),
            processed_at=None if status == WebhookLogStatus.RECEIVED else utc_now(),
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "Webhook log created: id=%s source=%s event_id=%s type=%s status=%s",
            entry.log_id,
            source,
            event_id or "no-event-id",
            event_type,
            status.value,
        )
        return entry

    async def claim(
        self,
        log_id: int,
        seen_attempts: int,
        *,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> bool:
        """
        Compare-and-set claim of an entry for (re)processing.

        Succeeds only if nobody else bumped ``attempts`` since it was read and
        the entry is still retryable. Exactly one concurrent claimant wins.
        A ``received`` entry claimed less than ``lease_seconds`` ago belongs
        to an attempt still in flight and is refused.
        """
        now = utc_now()
        stmt = (
            update(WebhookLogEntry)
            .where(
                WebhookLogEntry.log_id == log_id,
                WebhookLogEntry.attempts == seen_attempts,
                or_(
                    WebhookLogEntry.status == WebhookLogStatus.FAILED,
                    and_(
                        WebhookLogEntry.status == WebhookLogStatus.RECEIVED,
                        or_(
                            WebhookLogEntry.claimed_at.is_(None),
                            WebhookLogEntry.claimed_at < lease_cutoff(lease_seconds, now),
                        ),
                    ),
                ),
            )
            .values(
                attempts=seen_attempts + 1,
                status=WebhookLogStatus.RECEIVED,
                error_message=None,
                claimed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def update_status(
        self,
        log_id: int,
        status: WebhookLogStatus,
        *,
        error_message: Optional[str] = None,
        subscription_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> None:
        """Record the outcome of an attempt on an existing entry."""
        values: dict[str, Any] = {
            "status": status,
            "error_message": error_message,
            "processed_at": utc_now(),
        }
        if subscription_id is not None:
            values["subscription_id"] = subscription_id
        if user_id is not None:
            values["user_id"] = user_id

        stmt = (
            update(WebhookLogEntry)
            .where(WebhookLogEntry.log_id == log_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)

    async def list(
        self,
        *,
        source: Optional[str] = None,
        status: Optional[WebhookLogStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookLogEntry]:
        """Entries newest first, optionally filtered."""
        stmt = select(WebhookLogEntry)
        if source:
            stmt = stmt.where(WebhookLogEntry.source == source)
        if status is not None:
            stmt = stmt.where(WebhookLogEntry.status == status)
        stmt = (
            stmt.order_by(
                WebhookLogEntry.created_at.desc(),
                WebhookLogEntry.log_id.desc(),
            )
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
