"""Add leave_periods table

Revision ID: 0002_leave_periods
Revises: 0001_initial
Create Date: 2026-10-03 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002_leave_periods"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

leave_type = postgresql.ENUM(name="leave_type", create_type=False)


def upgrade() -> None:
    op.create_table(
        "leave_periods",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=64), nullable=False),
        sa.Column("leave_type", leave_type, nullable=False),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.employee_id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "employee_id",
            "leave_type",
            "from_date",
            name="uq_leave_periods_key_from_date",
        ),
        sa.CheckConstraint("from_date <= to_date", name="ck_leave_periods_date_order"),
    )
    op.create_index("ix_leave_periods_employee_id", "leave_periods", ["employee_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_leave_periods_employee_id", table_name="leave_periods")
    op.drop_table("leave_periods")
