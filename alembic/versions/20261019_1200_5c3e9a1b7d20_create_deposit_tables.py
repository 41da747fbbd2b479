from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "5c3e9a1b7d20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "deposits",
        sa.Column("txid", sa.String(length=512), nullable=False, comment="Encrypted txid"),
        sa.Column("address", sa.String(length=512), nullable=False, comment="Encrypted address"),
        sa.Column("amount", sa.Numeric(precision=18, scale=8), nullable=False),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("execution_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("txid"),
    )
    op.create_index(op.f("ix_deposits_created_at"), "deposits", ["created_at"], unique=False)
    op.create_index(op.f("ix_deposits_execution_id"), "deposits", ["execution_id"], unique=False)

    op.create_table(
        "failed_transactions",
        sa.Column("execution_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("txid", sa.String(length=512), nullable=True, comment="Encrypted txid"),
        sa.Column("address", sa.String(length=512), nullable=True, comment="Encrypted address"),
        sa.Column("amount", sa.Numeric(precision=18, scale=8), nullable=True),
        sa.Column("confirmations", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_failed_transactions_created_at"),
        "failed_transactions",
        ["created_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_failed_transactions_execution_id"),
        "failed_transactions",
        ["execution_id"],
        unique=False,
    )

    op.create_table(
        "execution_logs",
        sa.Column("execution_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("log_level", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_execution_logs_created_at"), "execution_logs", ["created_at"], unique=False
    )
    op.create_index(
        op.f("ix_execution_logs_execution_id"), "execution_logs", ["execution_id"], unique=False
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_execution_logs_execution_id"), table_name="execution_logs")
    op.drop_index(op.f("ix_execution_logs_created_at"), table_name="execution_logs")
    op.drop_table("execution_logs")
    op.drop_index(op.f("ix_failed_transactions_execution_id"), table_name="failed_transactions")
    op.drop_index(op.f("ix_failed_transactions_created_at"), table_name="failed_transactions")
    op.drop_table("failed_transactions")
    op.drop_index(op.f("ix_deposits_execution_id"), table_name="deposits")
    op.drop_index(op.f("ix_deposits_created_at"), table_name="deposits")
    op.drop_table("deposits")
