"""CRM sync record tables: candidates, clients, vacancies, todos.

Revision ID: 001_crm_sync_tables
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_crm_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RECORD_TABLES = ("candidates", "clients", "vacancies", "todos")


def upgrade() -> None:
    for table in RECORD_TABLES:
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("external_id", sa.String(64), nullable=True),
            sa.Column("natural_key", sa.String(320), nullable=True),
            sa.Column("data", sa.JSON(), nullable=False),
            sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index(f"uq_{table}_external_id", table, ["external_id"], unique=True)
        op.create_index(f"ix_{table}_natural_key", table, ["natural_key"])


def downgrade() -> None:
    for table in reversed(RECORD_TABLES):
        op.drop_index(f"ix_{table}_natural_key", table_name=table)
        op.drop_index(f"uq_{table}_external_id", table_name=table)
        op.drop_table(table)
