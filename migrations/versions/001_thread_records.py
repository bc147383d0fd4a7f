"""Thread records table (SQL-only).

Revision ID: 001_thread_records
Revises:
Create Date: 2026-10-16
"""

from __future__ import annotations

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_thread_records"
down_revision = None
branch_labels = None
depends_on = None


UPGRADE_SQL = """
CREATE TABLE IF NOT EXISTS thread_records (
    chat_address        TEXT PRIMARY KEY,
    case_id             TEXT NULL,
    last_inbound_anchor TEXT NULL,
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT thread_records_chat_address_canonical
        CHECK (chat_address ~ '^whatsapp:\\+[0-9]{6,}$')
);

CREATE INDEX IF NOT EXISTS idx_thread_records_updated_at
    ON thread_records (updated_at);
"""


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(UPGRADE_SQL)


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql("DROP TABLE IF EXISTS thread_records")
