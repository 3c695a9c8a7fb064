"""Create supply_ledger table

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

Durable counter of delivered units per collection.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "supply_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("max_units", sa.Integer(), nullable=False),
        sa.Column("delivered_units", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "delivered_units >= 0 AND delivered_units <= max_units",
            name="ck_supply_ledger_bounds",
        ),
    )
    op.create_index("ix_supply_ledger_name", "supply_ledger", ["name"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_supply_ledger_name", table_name="supply_ledger")
    op.drop_table("supply_ledger")
