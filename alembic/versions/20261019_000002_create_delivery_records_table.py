"""Create delivery_records table

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19

One row per payment reference; the unique index on payment_reference is
the idempotency key.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

delivery_status = sa.Enum(
    "DELIVERING", "COMMITTED", "UNCERTAIN", "FAILED",
    name="delivery_status",
    create_constraint=True,
)


def upgrade() -> None:
    op.create_table(
        "delivery_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("payment_reference", sa.String(255), nullable=False),
        sa.Column("recipient", sa.String(64), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("status", delivery_status, nullable=False),
        sa.Column("transfer_id", sa.String(80), nullable=True),
        sa.Column("holding_after", sa.Integer(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_delivery_records_payment_reference", "delivery_records", ["payment_reference"], unique=True
    )
    op.create_index("ix_delivery_records_recipient", "delivery_records", ["recipient"])
    op.create_index("ix_delivery_records_status", "delivery_records", ["status"])


def downgrade() -> None:
    op.drop_index("ix_delivery_records_status", table_name="delivery_records")
    op.drop_index("ix_delivery_records_recipient", table_name="delivery_records")
    op.drop_index("ix_delivery_records_payment_reference", table_name="delivery_records")
    op.drop_table("delivery_records")
    delivery_status.drop(op.get_bind(), checkfirst=True)
