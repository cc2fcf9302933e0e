"""credit ledger and stripe events

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_credits_spent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_videos_created", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_user_accounts_email"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("transaction_type", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("related_task_id", sa.String(length=128), nullable=True),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_credit_transactions_idempotency_key"),
    )
    op.create_index(
        "ix_credit_transactions_user_created_at",
        "credit_transactions",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_credit_transactions_related_task",
        "credit_transactions",
        ["related_task_id", "transaction_type"],
        unique=False,
    )

    op.create_table(
        "stripe_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user_accounts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_stripe_events_event_id"),
    )
    op.create_index("ix_stripe_events_created_at", "stripe_events", ["created_at"], unique=False)

    if _is_postgresql():
        # Ledger rows are append-only.
        op.execute(
            """
            CREATE OR REPLACE FUNCTION credit_transactions_forbid_update()
            RETURNS trigger AS $$
            BEGIN
              RAISE EXCEPTION 'credit_transactions rows are append-only';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_credit_transactions_append_only
            BEFORE UPDATE ON credit_transactions
            FOR EACH ROW EXECUTE FUNCTION credit_transactions_forbid_update();
            """
        )
        op.execute(
            "ALTER TABLE user_accounts ADD CONSTRAINT ck_user_accounts_credits_non_negative CHECK (credits >= 0)"
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("ALTER TABLE user_accounts DROP CONSTRAINT IF EXISTS ck_user_accounts_credits_non_negative")
        op.execute("DROP TRIGGER IF EXISTS trg_credit_transactions_append_only ON credit_transactions")
        op.execute("DROP FUNCTION IF EXISTS credit_transactions_forbid_update()")

    op.drop_index("ix_stripe_events_created_at", table_name="stripe_events")
    op.drop_table("stripe_events")

    op.drop_index("ix_credit_transactions_related_task", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_created_at", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_table("user_accounts")
