from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from flash_hr.models import AttendanceStatus, LeaveType, LocationStatus


class AttendanceRecordIn(BaseModel):
    employee_id: str = Field(min_length=1, max_length=64)
    status: AttendanceStatus
    note: str | None = None
    overtime_minutes: int | None = Field(default=None, ge=0)
    overtime_rate: float | None = None
    late_minutes: int | None = Field(default=None, ge=0)
    late_deduction: float | None = None
    leave_type: LeaveType | None = None
    fine_amount: float | None = None
    location: str | None = None
    initial_location: str | None = None
    picture: str | None = None
    check_in: str | None = None
    check_in_date: date | None = None
    check_out: str | None = None
    check_out_date: date | None = None
    check_out_picture: str | None = None
    check_out_location: str | None = None
    overtime_in: str | None = None
    overtime_in_date: date | None = None
    overtime_in_picture: str | None = None
    overtime_in_location: str | None = None
    overtime_out: str | None = None
    overtime_out_date: date | None = None
    overtime_out_picture: str | None = None
    overtime_out_location: str | None = None


class BulkAttendanceUpsertRequest(BaseModel):
    date: date
    records: list[AttendanceRecordIn]


class BulkAttendanceUpsertResponse(BaseModel):
    success: bool
    upserted: int
    created: int
    updated: int
    errors: list[str] | None = None


class MarkSelfAttendanceRequest(BaseModel):
    """Self-service mark; only the fields sent by the app are written."""

    status: AttendanceStatus = AttendanceStatus.PRESENT
    note: str | None = None
    leave_type: LeaveType | None = None
    location: str | None = None
    initial_location: str | None = None
    picture: str | None = None
    check_in: str | None = None
    check_in_date: date | None = None
    check_out: str | None = None
    check_out_date: date | None = None
    check_out_picture: str | None = None
    check_out_location: str | None = None
    overtime_in: str | None = None
    overtime_in_date: date | None = None
    overtime_in_picture: str | None = None
    overtime_in_location: str | None = None
    overtime_out: str | None = None
    overtime_out_date: date | None = None
    overtime_out_picture: str | None = None
    overtime_out_location: str | None = None


class MarkSelfAttendanceResponse(BaseModel):
    success: bool
    message: str
    employee_id: str
    date: date
    location_status: LocationStatus


class AttendanceRead(BaseModel):
    id: int | None = None
    employee_id: str
    employee_name: str | None = None
    fss_id: str | None = None
    date: date
    status: str
    note: str | None = None
    overtime_minutes: int | None = None
    overtime_rate: float | None = None
    late_minutes: int | None = None
    late_deduction: float | None = None
    leave_type: LeaveType | None = None
    fine_amount: float | None = None
    location: str | None = None
    initial_location: str | None = None
    picture: str | None = None
    check_in: str | None = None
    check_in_date: date | None = None
    check_out: str | None = None
    check_out_date: date | None = None
    check_out_picture: str | None = None
    check_out_location: str | None = None
    overtime_in: str | None = None
    overtime_in_date: date | None = None
    overtime_out: str | None = None
    overtime_out_date: date | None = None
    created_at: datetime | None = None


class AttendanceDayResponse(BaseModel):
    date: date
    records: list[AttendanceRead]
    count: int


class AttendanceSummaryResponse(BaseModel):
    from_date: date
    to_date: date
    total_records: int
    by_status: dict[str, int]


class EmployeeAttendanceStats(BaseModel):
    present: int = 0
    late: int = 0
    absent: int = 0
    leave: int = 0


class LeavePeriodCreateRequest(BaseModel):
    employee_id: str = Field(min_length=1, max_length=64)
    leave_type: LeaveType
    from_date: date
    to_date: date
    reason: str | None = Field(default=None, max_length=2000)


class LeavePeriodRead(BaseModel):
    id: int
    employee_id: str
    leave_type: LeaveType
    from_date: date
    to_date: date
    reason: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeavePeriodDeleteResponse(BaseModel):
    ok: Literal[True] = True
    id: int
