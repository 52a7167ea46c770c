"""Activity entries hash chain.

Revision ID: 0001_activity_entries
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision: str = "0001_activity_entries"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


_PG_GUARD = """
CREATE OR REPLACE FUNCTION activity_entries_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'activity_entries is append-only';
END;
$$ LANGUAGE plpgsql
"""


def upgrade() -> None:
    op.create_table(
        "activity_entries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("sequence_number", sa.BigInteger, nullable=False),
        sa.Column("actor_id", sa.String(36), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("target", sa.JSON, nullable=False),
        sa.Column("related_targets", sa.JSON, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("signature", sa.String(64), nullable=True),
        sa.UniqueConstraint("entry_hash", name="uq_activity_entries_entry_hash"),
    )
    op.create_index(
        "ix_activity_entries_sequence_number",
        "activity_entries",
        ["sequence_number"],
        unique=True,
    )
    op.create_index("ix_activity_entries_actor_id", "activity_entries", ["actor_id"])
    op.create_index("ix_activity_entries_action", "activity_entries", ["action"])
    op.create_index("ix_activity_entries_created_at", "activity_entries", ["created_at"])

    # Refuse UPDATE and DELETE below the ORM as well
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        op.execute(_PG_GUARD)
        op.execute(
            "CREATE TRIGGER activity_entries_append_only "
            "BEFORE UPDATE OR DELETE ON activity_entries "
            "FOR EACH ROW EXECUTE FUNCTION activity_entries_append_only()"
        )
    elif dialect == "sqlite":
        for operation in ("UPDATE", "DELETE"):
            op.execute(
                f"CREATE TRIGGER activity_entries_no_{operation.lower()} "
                f"BEFORE {operation} ON activity_entries "
                "BEGIN SELECT RAISE(ABORT, 'activity_entries is append-only'); END"
            )


def downgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS activity_entries_append_only ON activity_entries")
        op.execute("DROP FUNCTION IF EXISTS activity_entries_append_only()")
    elif dialect == "sqlite":
        op.execute("DROP TRIGGER IF EXISTS activity_entries_no_update")
        op.execute("DROP TRIGGER IF EXISTS activity_entries_no_delete")
    op.drop_table("activity_entries")
