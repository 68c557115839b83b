"""Initial employees / attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_status = postgresql.ENUM(
    "present",
    "late",
    "absent",
    "leave",
    name="attendance_status",
    create_type=False,
)
leave_type = postgresql.ENUM(
    "sick",
    "casual",
    "annual",
    "unpaid",
    "emergency",
    "paid",
    name="leave_type",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "EMPLOYEE",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    attendance_status.create(bind, checkfirst=True)
    leave_type.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("employee_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("fss_no", sa.String(length=64), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column("designation", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("site_lat", sa.Float(), nullable=True),
        sa.Column("site_lon", sa.Float(), nullable=True),
        sa.Column("site_radius_m", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_employees_fss_no", "employees", ["fss_no"], unique=False)

    op.create_table(
        "attendance",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("status", attendance_status, nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("overtime_minutes", sa.Integer(), nullable=True),
        sa.Column("overtime_rate", sa.Float(), nullable=True),
        sa.Column("late_minutes", sa.Integer(), nullable=True),
        sa.Column("late_deduction", sa.Float(), nullable=True),
        sa.Column("leave_type", leave_type, nullable=True),
        sa.Column("fine_amount", sa.Float(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("initial_location", sa.Text(), nullable=True),
        sa.Column("picture", sa.Text(), nullable=True),
        sa.Column("check_in", sa.String(length=16), nullable=True),
        sa.Column("check_in_date", sa.Date(), nullable=True),
        sa.Column("check_out", sa.String(length=16), nullable=True),
        sa.Column("check_out_date", sa.Date(), nullable=True),
        sa.Column("check_out_picture", sa.Text(), nullable=True),
        sa.Column("check_out_location", sa.Text(), nullable=True),
        sa.Column("overtime_in", sa.String(length=16), nullable=True),
        sa.Column("overtime_in_date", sa.Date(), nullable=True),
        sa.Column("overtime_in_picture", sa.Text(), nullable=True),
        sa.Column("overtime_in_location", sa.Text(), nullable=True),
        sa.Column("overtime_out", sa.String(length=16), nullable=True),
        sa.Column("overtime_out_date", sa.Date(), nullable=True),
        sa.Column("overtime_out_picture", sa.Text(), nullable=True),
        sa.Column("overtime_out_location", sa.Text(), nullable=True),
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
        sa.UniqueConstraint("employee_id", "date", name="uq_attendance_employee_date"),
    )
    op.create_index("ix_attendance_employee_id", "attendance", ["employee_id"], unique=False)
    op.create_index("ix_attendance_date", "attendance", ["date"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_attendance_date", table_name="attendance")
    op.drop_index("ix_attendance_employee_id", table_name="attendance")
    op.drop_table("attendance")
    op.drop_index("ix_employees_fss_no", table_name="employees")
    op.drop_table("employees")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    leave_type.drop(bind, checkfirst=True)
    attendance_status.drop(bind, checkfirst=True)
