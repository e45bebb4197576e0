"""Baseline schema

Revision ID: 0001_baseline
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op

from botdesk.models import Base

revision = "0001_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
