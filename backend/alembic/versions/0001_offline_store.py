"""offline store tables

Revision ID: 0001
Revises:
Create Date: 2024-05-01 09:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "offline_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("local_id", sa.String(80), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("parent_id", sa.String(100), nullable=True),
        sa.Column("remote_id", sa.String(100), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("blob", sa.LargeBinary(), nullable=True),
        sa.Column("original_blob", sa.LargeBinary(), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("upload_progress", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_offline_records_local_id", "offline_records", ["local_id"], unique=True)
    op.create_index("ix_offline_records_category", "offline_records", ["category"])
    op.create_index("ix_offline_records_parent_id", "offline_records", ["parent_id"])
    op.create_index("ix_offline_records_status", "offline_records", ["status"])
    op.create_index("ix_offline_records_created_at", "offline_records", ["created_at"])

    op.create_table(
        "recording_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("local_id", sa.String(80), nullable=False),
        sa.Column("context", sa.String(255), nullable=True),
        sa.Column("audio_url", sa.String(1000), nullable=False),
        sa.Column("transcription", sa.Text(), nullable=True),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_recording_history_context", "recording_history", ["context"])

    op.create_table(
        "storage_metadata",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("storage_metadata")
    op.drop_index("ix_recording_history_context", table_name="recording_history")
    op.drop_table("recording_history")
    op.drop_index("ix_offline_records_created_at", table_name="offline_records")
    op.drop_index("ix_offline_records_status", table_name="offline_records")
    op.drop_index("ix_offline_records_parent_id", table_name="offline_records")
    op.drop_index("ix_offline_records_category", table_name="offline_records")
    op.drop_index("ix_offline_records_local_id", table_name="offline_records")
    op.drop_table("offline_records")
