"""init queue schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ---------- queue entries ----------
    # status stays VARCHAR: legacy rows may hold values outside the vocabulary,
    # the trigger from 0002 corrects them on write
    op.create_table(
        "queue_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("token_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="waiting"),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_queue_entries_status", "queue_entries", ["status"], unique=False)
    op.create_index("ix_queue_entries_token_number", "queue_entries", ["token_number"], unique=False)

    # ---------- append-only event ledger ----------
    op.create_table(
        "queue_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("previous_status", sa.String(32), nullable=False),
        sa.Column("new_status", sa.String(32), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("processing_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_queue_events_entry_id", "queue_events", ["entry_id"], unique=False)
    op.create_index("ix_queue_events_actor_id", "queue_events", ["actor_id"], unique=False)
    op.create_index(
        "ix_queue_events_event_type_created_at", "queue_events", ["event_type", "created_at"], unique=False
    )
    op.create_index("ix_queue_events_processing_end_at", "queue_events", ["processing_end_at"], unique=False)

    # ---------- hourly processing aggregates ----------
    op.create_table(
        "processing_stats",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stat_date", sa.Date(), nullable=False),
        sa.Column("stat_hour", sa.Integer(), nullable=False),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("min_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("max_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("stat_date", "stat_hour", name="uq_processing_stats_date_hour"),
    )


def downgrade() -> None:
    op.drop_table("processing_stats")

    op.drop_index("ix_queue_events_processing_end_at", table_name="queue_events")
    op.drop_index("ix_queue_events_event_type_created_at", table_name="queue_events")
    op.drop_index("ix_queue_events_actor_id", table_name="queue_events")
    op.drop_index("ix_queue_events_entry_id", table_name="queue_events")
    op.drop_table("queue_events")

    op.drop_index("ix_queue_entries_token_number", table_name="queue_entries")
    op.drop_index("ix_queue_entries_status", table_name="queue_entries")
    op.drop_table("queue_entries")
