"""initial receipts schema

Revision ID: 0001_receipts
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_receipts"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "vfd_receipts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("receipt_number", sa.String(), nullable=False),
        sa.Column("receipt_url", sa.String(), nullable=True),
        sa.Column("provider_response", postgresql.JSONB(), nullable=True),
        sa.Column("receipt_type", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("model_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("synced_to_archive_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("receipt_number", name="uq_vfd_receipts_receipt_number"),
    )
    op.create_index("ix_vfd_receipts_subject", "vfd_receipts", ["model_id", "model_type"])
    op.create_index("ix_vfd_receipts_receipt_type", "vfd_receipts", ["receipt_type"])
    op.create_index("ix_vfd_receipts_status", "vfd_receipts", ["status"])
    op.create_index("ix_vfd_receipts_synced_to_archive_at", "vfd_receipts", ["synced_to_archive_at"])
    op.create_index("ix_vfd_receipts_created_at", "vfd_receipts", ["created_at"])
    # One live receipt per subject and receipt type.
    op.create_index(
        "uq_vfd_receipts_subject_type",
        "vfd_receipts",
        ["model_type", "model_id", "receipt_type"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "inbox_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("consumed_by_service", sa.String(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "consumed_by_service"),
        sa.UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),
    )

    op.create_table(
        "background_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("unique_key", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("backoff_seconds", postgresql.JSONB(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_background_jobs_kind", "background_jobs", ["kind"])
    op.create_index("ix_background_jobs_status_available_at", "background_jobs", ["status", "available_at"])
    op.create_index(
        "uq_background_jobs_active_unique_key",
        "background_jobs",
        ["unique_key"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'PROCESSING')"),
    )


def downgrade() -> None:
    op.drop_index("uq_background_jobs_active_unique_key", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status_available_at", table_name="background_jobs")
    op.drop_index("ix_background_jobs_kind", table_name="background_jobs")
    op.drop_table("background_jobs")
    op.drop_table("inbox_events")
    op.drop_index("uq_vfd_receipts_subject_type", table_name="vfd_receipts")
    op.drop_index("ix_vfd_receipts_created_at", table_name="vfd_receipts")
    op.drop_index("ix_vfd_receipts_synced_to_archive_at", table_name="vfd_receipts")
    op.drop_index("ix_vfd_receipts_status", table_name="vfd_receipts")
    op.drop_index("ix_vfd_receipts_receipt_type", table_name="vfd_receipts")
    op.drop_index("ix_vfd_receipts_subject", table_name="vfd_receipts")
    op.drop_table("vfd_receipts")
