"""reject UPDATE/DELETE on the append-only tables

Revision ID: 9f3c2d81e5a0
Revises: 4a1e0c9b7d22
Create Date: 2026-01-26 09:40:02.553871

Postgres only; other backends rely on the ORM flush guard.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9f3c2d81e5a0"
down_revision: Union[str, Sequence[str], None] = "4a1e0c9b7d22"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

APPEND_ONLY_TABLES = ("timeline_event", "consent_snapshot", "audit_event", "provenance")


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(sa.text(
        """
        CREATE OR REPLACE FUNCTION reject_append_only_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% on % is not allowed: table is append-only', TG_OP, TG_TABLE_NAME
                USING ERRCODE = 'restrict_violation';
        END;
        $$ LANGUAGE plpgsql;
        """
    ))
    for table in APPEND_ONLY_TABLES:
        op.execute(sa.text(
            f'CREATE TRIGGER {table}_append_only BEFORE UPDATE OR DELETE ON "{table}" '
            f"FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
        ))


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for table in APPEND_ONLY_TABLES:
        op.execute(sa.text(f'DROP TRIGGER IF EXISTS {table}_append_only ON "{table}"'))
    op.execute(sa.text("DROP FUNCTION IF EXISTS reject_append_only_change()"))
