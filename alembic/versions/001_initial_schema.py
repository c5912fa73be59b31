"""initial schema - baseline for all FleetParts tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates organizations, users, suppliers (+ auxiliary emails), vehicles,
parts, quote requests (+ items, supplier thread links), email threads
(+ messages, attachments, gateway responses), orders (+ items) and the
activity log from the ORM models.
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from SQLAlchemy models (checkfirst, idempotent)."""
    from fleetparts.models import Base

    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE, dev/test only."""
    from fleetparts.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
