"""
Webhook Log Model
=================

Durable record of every inbound billing event and its processing outcome.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, UTCDateTime
from app.utils.helpers import utc_now


class WebhookLogStatus(str, Enum):
    """Processing outcome of a log entry."""
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    INVALID = "invalid"
    DUPLICATE = "duplicate"


class WebhookLogEntry(Base):
    """
    One row per inbound event attempt.

    ``(source, event_id)`` is unique whenever ``event_id`` is set; entries
    without an id (invalid signatures, reconciliation calls) are unconstrained.
    """

    __tablename__ = "webhook_logs"

    log_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    source: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )

    # Claimed user id, kept even when no such user exists
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )
    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("subscriptions.subscription_id"),
        nullable=True,
    )

    status: Mapped[WebhookLogStatus] = mapped_column(
        SQLEnum(
            WebhookLogStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=WebhookLogStatus.RECEIVED,
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Start of the current attempt; a received entry is leased until this
    # plus the processing timeout
    claimed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index(
            "webhook_logs_source_event_id_unique",
            "source",
            "event_id",
            unique=True,
            postgresql_where=text("event_id IS NOT NULL"),
            sqlite_where=text("event_id IS NOT NULL"),
        ),
        Index("idx_webhook_logs_source_created", "source", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookLogEntry(source={self.source}, event_id={self.event_id}, "
            f"status={self.status})>"
        )

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            "id": self.log_id,
            "source": self.source,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "userId": self.user_id,
            "subscriptionId": self.subscription_id,
            "status": self.status.value,
            "errorMessage": self.error_message,
            "attempts": self.attempts,
            "claimedAt": self.claimed_at.isoformat() if self.claimed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }
        if include_payload:
            data["payload"] = self.payload
        return data
