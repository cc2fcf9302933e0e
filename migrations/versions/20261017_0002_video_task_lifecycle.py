"""video task lifecycle and provider notifications

Revision ID: 20261017_0002
Revises: 20261017_0001
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "video_tasks",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("task_id", sa.String(length=128), nullable=False),
        sa.Column("owner_user_id", sa.String(length=36), nullable=True),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("request_parameters_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("credit_cost", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("resolution", sa.String(length=16), nullable=True),
        sa.Column("failure_reason", sa.String(length=40), nullable=True),
        sa.Column("error_code", sa.String(length=16), nullable=True),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("hosted_video_path", sa.String(length=255), nullable=True),
        sa.Column("media_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["owner_user_id"], ["user_accounts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", name="uq_video_tasks_task_id"),
    )
    op.create_index(
        "ix_video_tasks_owner_created_at",
        "video_tasks",
        ["owner_user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_video_tasks_state_created_at",
        "video_tasks",
        ["state", "created_at"],
        unique=False,
    )

    op.create_table(
        "provider_notifications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="webhook"),
        sa.Column("task_id", sa.String(length=128), nullable=True),
        sa.Column("outcome", sa.String(length=16), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_provider_notifications_task_created_at",
        "provider_notifications",
        ["task_id", "created_at"],
        unique=False,
    )

    if _is_postgresql():
        op.execute(
            """
            ALTER TABLE video_tasks ADD CONSTRAINT ck_video_tasks_state
            CHECK (state IN ('pending', 'processing', 'completed', 'failed'))
            """
        )
        op.execute(
            """
            ALTER TABLE video_tasks ADD CONSTRAINT ck_video_tasks_result_when_completed
            CHECK ((state = 'completed') = (video_url IS NOT NULL))
            """
        )
        op.execute(
            """
            ALTER TABLE video_tasks ADD CONSTRAINT ck_video_tasks_reason_when_failed
            CHECK ((state = 'failed') = (failure_reason IS NOT NULL))
            """
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("ALTER TABLE video_tasks DROP CONSTRAINT IF EXISTS ck_video_tasks_reason_when_failed")
        op.execute("ALTER TABLE video_tasks DROP CONSTRAINT IF EXISTS ck_video_tasks_result_when_completed")
        op.execute("ALTER TABLE video_tasks DROP CONSTRAINT IF EXISTS ck_video_tasks_state")

    op.drop_index("ix_provider_notifications_task_created_at", table_name="provider_notifications")
    op.drop_table("provider_notifications")

    op.drop_index("ix_video_tasks_state_created_at", table_name="video_tasks")
    op.drop_index("ix_video_tasks_owner_created_at", table_name="video_tasks")
    op.drop_table("video_tasks")
