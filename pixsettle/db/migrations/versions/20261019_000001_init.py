from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_000001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=191), nullable=False, server_default=""),
        sa.Column("plan", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_from_plan", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_purchased", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("accumulated_credit", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("withdrawn_credit", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("available_to_withdraw", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("withdrawal_window_key", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_plan", "users", ["plan"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=64), nullable=False),
        sa.Column("target_id", sa.String(length=64), nullable=True),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=191), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("urgent", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("pix_key", sa.String(length=191), nullable=True),
        sa.Column("window_key", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="requested"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payouts_user_id", "payouts", ["user_id"])
    op.create_index("ix_payouts_window_key", "payouts", ["window_key"])

    op.create_table(
        "unreconciled_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("dedupe_key", sa.String(length=191), nullable=True),
        sa.Column("source_transaction_id", sa.String(length=191), nullable=True),
        sa.Column("external_reference", sa.String(length=191), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reported_at", sa.DateTime(), nullable=True),
        sa.Column("reason", sa.String(length=191), nullable=False, server_default=""),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_unreconciled_payments_dedupe_key", "unreconciled_payments", ["dedupe_key"])
    op.create_index("ix_unreconciled_payments_resolved", "unreconciled_payments", ["resolved"])


def downgrade() -> None:
    op.drop_index("ix_unreconciled_payments_resolved", table_name="unreconciled_payments")
    op.drop_index("ix_unreconciled_payments_dedupe_key", table_name="unreconciled_payments")
    op.drop_table("unreconciled_payments")
    op.drop_index("ix_payouts_window_key", table_name="payouts")
    op.drop_index("ix_payouts_user_id", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_users_plan", table_name="users")
    op.drop_table("users")
