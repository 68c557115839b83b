from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flash_hr.db import Base


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    LATE = "late"
    ABSENT = "absent"
    LEAVE = "leave"


class LeaveType(str, enum.Enum):
    SICK = "sick"
    CASUAL = "casual"
    ANNUAL = "annual"
    UNPAID = "unpaid"
    EMERGENCY = "emergency"
    PAID = "paid"


class LocationStatus(str, enum.Enum):
    VERIFIED_SITE = "VERIFIED_SITE"
    UNVERIFIED_LOCATION = "UNVERIFIED_LOCATION"
    NO_LOCATION = "NO_LOCATION"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Employee(Base):
    __tablename__ = "employees"

    employee_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    fss_no: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    designation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    site_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    site_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    site_radius_m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    attendance: Mapped[list[Attendance]] = relationship(back_populates="employee")
    leave_periods: Mapped[list[LeavePeriod]] = relationship(back_populates="employee")


class Attendance(Base):
    __tablename__ = "attendance"
    __table_args__ = (
        UniqueConstraint("employee_id", "date", name="uq_attendance_employee_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[str] = mapped_column(
        ForeignKey("employees.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status", values_callable=_enum_values),
        nullable=False,
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    overtime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    overtime_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    late_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    late_deduction: Mapped[float | None] = mapped_column(Float, nullable=True)
    leave_type: Mapped[LeaveType | None] = mapped_column(
        Enum(LeaveType, name="leave_type", values_callable=_enum_values),
        nullable=True,
    )
    fine_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    # JSON string {"lat": .., "lng": ..}
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    initial_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    check_in: Mapped[str | None] = mapped_column(String(16), nullable=True)
    check_in_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    check_out: Mapped[str | None] = mapped_column(String(16), nullable=True)
    check_out_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    check_out_picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    check_out_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    overtime_in: Mapped[str | None] = mapped_column(String(16), nullable=True)
    overtime_in_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    overtime_in_picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    overtime_in_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    overtime_out: Mapped[str | None] = mapped_column(String(16), nullable=True)
    overtime_out_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    overtime_out_picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    overtime_out_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="attendance")


class LeavePeriod(Base):
    __tablename__ = "leave_periods"
    __table_args__ = (
        UniqueConstraint("employee_id", "leave_type", "from_date", name="uq_leave_periods_key_from_date"),
        CheckConstraint("from_date <= to_date", name="ck_leave_periods_date_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[str] = mapped_column(
        ForeignKey("employees.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    leave_type: Mapped[LeaveType] = mapped_column(
        Enum(LeaveType, name="leave_type", values_callable=_enum_values),
        nullable=False,
    )
    from_date: Mapped[date] = mapped_column(Date, nullable=False)
    to_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="leave_periods")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
