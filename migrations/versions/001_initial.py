"""Initial schema for the nursery report record store.

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the records table: one JSON blob per (tenant, key)."""

    op.execute('''CREATE TABLE IF NOT EXISTS records (
                    tenant_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (tenant_id, key)
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_records_tenant ON records(tenant_id)')


def downgrade() -> None:
    """Drop the records table (destructive)."""
    op.execute('DROP INDEX IF EXISTS idx_records_tenant')
    op.execute('DROP TABLE IF EXISTS records CASCADE')
