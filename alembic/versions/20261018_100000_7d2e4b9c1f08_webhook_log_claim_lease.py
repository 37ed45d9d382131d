"""Webhook log claim lease

Adds webhook_logs.claimed_at. A received entry whose attempt started less
than the processing timeout ago is still in flight and cannot be claimed by
a redelivery.

Revision ID: 7d2e4b9c1f08
Revises: c3f1a9e2b7d4
Create Date: 2026-10-18 10:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "7d2e4b9c1f08"
down_revision: Union[str, None] = "c3f1a9e2b7d4"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "webhook_logs",
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("webhook_logs", "claimed_at")
