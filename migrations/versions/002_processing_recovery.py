"""Index payments left in processing so the retry sweep can recover them.

Revision ID: 002_processing_recovery
Revises: 001_initial_schema
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_processing_recovery"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None

_SQL_FILE = (
    Path(__file__).resolve().parent.parent / "sql" / "002_processing_recovery.sql"
)


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text())


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_payments_processing_since")
