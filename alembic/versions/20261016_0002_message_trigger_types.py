"""Add outside_hours and unassigned automation triggers

Revision ID: 20261016_0002
Revises: 20261016_0001
Create Date: 2026-10-16
"""
from alembic import op


revision = "20261016_0002"
down_revision = "20261016_0001"
branch_labels = None
depends_on = None

_NEW_TRIGGERS = ("outside_hours", "unassigned")


def upgrade():
    # SQLite stores the enum as plain VARCHAR
    if op.get_bind().dialect.name != "postgresql":
        return
    with op.get_context().autocommit_block():
        for value in _NEW_TRIGGERS:
            op.execute(f"ALTER TYPE triggertype ADD VALUE IF NOT EXISTS '{value}'")


def downgrade():
    # Enum values cannot be dropped in PostgreSQL
    pass
