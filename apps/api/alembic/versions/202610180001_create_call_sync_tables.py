"""create call sync tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "call_pending_attempt",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.String(length=128), nullable=False),
        sa.Column("dialed_number", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_call_pending_attempt_number_started",
        "call_pending_attempt",
        ["dialed_number", "started_at"],
        unique=False,
    )

    op.create_table(
        "call_processed_link",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider_call_id", sa.String(length=128), nullable=False),
        sa.Column("attempt_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_call_id", name="uq_call_processed_link_provider_call_id"),
    )
    op.create_index("ix_call_processed_link_attempt", "call_processed_link", ["attempt_id"], unique=False)

    op.create_table(
        "call_session",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("attempt_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.String(length=128), nullable=True),
        sa.Column("openphone_call_id", sa.String(length=128), nullable=True),
        sa.Column("direction", sa.String(length=16), nullable=False, server_default="outbound"),
        sa.Column("from_number", sa.String(length=32), nullable=True),
        sa.Column("to_number", sa.String(length=32), nullable=True),
        sa.Column("duration_sec", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("transcript_text", sa.Text(), nullable=True),
        sa.Column("summary_text", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="initiated"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("openphone_call_id", name="uq_call_session_openphone_call_id"),
    )
    op.create_index("ix_call_session_attempt", "call_session", ["attempt_id"], unique=False)

    op.create_table(
        "call_webhook_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("provider_event_id", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("call_id", sa.String(length=128), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_call_webhook_event_call_type",
        "call_webhook_event",
        ["call_id", "event_type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_call_webhook_event_call_type", table_name="call_webhook_event")
    op.drop_table("call_webhook_event")
    op.drop_index("ix_call_session_attempt", table_name="call_session")
    op.drop_table("call_session")
    op.drop_index("ix_call_processed_link_attempt", table_name="call_processed_link")
    op.drop_table("call_processed_link")
    op.drop_index("ix_call_pending_attempt_number_started", table_name="call_pending_attempt")
    op.drop_table("call_pending_attempt")
