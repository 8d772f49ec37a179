"""initial billdesk payments schema

Revision ID: 0001_payments
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_payments"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.order_id"]),
        sa.CheckConstraint("status IN ('pending', 'success', 'failed')", name="ck_transactions_status"),
    )
    op.create_index("ix_transactions_order_number", "transactions", ["order_number"], unique=True)
    op.create_index("ix_transactions_order_id", "transactions", ["order_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])

    op.create_table(
        "gateway_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("trace_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("order_number", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_gateway_logs_trace_id", "gateway_logs", ["trace_id"])
    op.create_index("ix_gateway_logs_event_type", "gateway_logs", ["event_type"])
    op.create_index("ix_gateway_logs_order_number", "gateway_logs", ["order_number"])
    op.create_index("ix_gateway_logs_created_at", "gateway_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_gateway_logs_created_at", table_name="gateway_logs")
    op.drop_index("ix_gateway_logs_order_number", table_name="gateway_logs")
    op.drop_index("ix_gateway_logs_event_type", table_name="gateway_logs")
    op.drop_index("ix_gateway_logs_trace_id", table_name="gateway_logs")
    op.drop_table("gateway_logs")
    op.drop_index("ix_transactions_created_at", table_name="transactions")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_order_id", table_name="transactions")
    op.drop_index("ix_transactions_order_number", table_name="transactions")
    op.drop_table("transactions")
