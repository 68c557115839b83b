from __future__ import annotations

import logging
from calendar import monthrange
from datetime import date, datetime, time
from typing import Any

from fastapi import status
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flash_hr.errors import ApiError, ensure_date_range
from flash_hr.models import Attendance, AttendanceStatus, Employee
from flash_hr.schemas import (
    AttendanceDayResponse,
    AttendanceRead,
    AttendanceRecordIn,
    AttendanceSummaryResponse,
    BulkAttendanceUpsertResponse,
    EmployeeAttendanceStats,
    MarkSelfAttendanceRequest,
    MarkSelfAttendanceResponse,
)
from flash_hr.services.leave_periods import LeaveDayEvent
from flash_hr.services.location import evaluate_location
from flash_hr.settings import get_attendance_timezone, get_settings

logger = logging.getLogger("flash_hr.attendance")

UNMARKED_STATUS = "unmarked"
DEFAULT_HISTORY_LIMIT = 30
# Placeholder day for overtime times recorded without a date.
_FALLBACK_DAY = date(2000, 1, 1)

_BULK_WRITE_FIELDS = tuple(
    name for name in AttendanceRecordIn.model_fields if name not in {"employee_id", "overtime_minutes"}
)
_READ_COPY_FIELDS = tuple(
    name for name in AttendanceRead.model_fields if name not in {"employee_name", "fss_id", "date", "status"}
)


def local_today() -> date:
    return datetime.now(get_attendance_timezone()).date()


def _parse_clock(value: str) -> time | None:
    try:
        return time.fromisoformat(value.strip())
    except ValueError:
        return None


def calculate_minutes_between(
    start_time: str | None,
    start_date: date | None,
    end_time: str | None,
    end_date: date | None,
) -> int | None:
    if not start_time or not end_time:
        return None

    start_clock = _parse_clock(start_time)
    end_clock = _parse_clock(end_time)
    if start_clock is None or end_clock is None:
        return None

    start_day = start_date or _FALLBACK_DAY
    end_day = end_date or start_day
    delta = datetime.combine(end_day, end_clock) - datetime.combine(start_day, start_clock)
    minutes = round(delta.total_seconds() / 60)
    return minutes if minutes > 0 else 0


def _to_read(
    attendance: Attendance,
    *,
    employee_name: str | None = None,
    fss_id: str | None = None,
) -> AttendanceRead:
    values: dict[str, Any] = {name: getattr(attendance, name) for name in _READ_COPY_FIELDS}
    return AttendanceRead(
        **values,
        employee_name=employee_name,
        fss_id=fss_id,
        date=attendance.work_date,
        status=attendance.status.value,
    )


def _find_attendance(db: Session, employee_id: str, day: date) -> Attendance | None:
    return db.scalar(
        select(Attendance).where(
            Attendance.employee_id == employee_id,
            Attendance.work_date == day,
        )
    )


def _leave_event(employee_id: str, day: date, record: AttendanceRecordIn | MarkSelfAttendanceRequest) -> LeaveDayEvent | None:
    if record.status != AttendanceStatus.LEAVE or record.leave_type is None:
        return None
    return LeaveDayEvent(employee_id=employee_id, day=day, leave_type=record.leave_type, note=record.note)


def bulk_upsert_attendance(
    db: Session,
    day: date,
    records: list[AttendanceRecordIn],
) -> tuple[BulkAttendanceUpsertResponse, list[LeaveDayEvent]]:
    created = 0
    updated = 0
    errors: list[str] = []
    leave_events: list[LeaveDayEvent] = []

    for record in records:
        values: dict[str, Any] = {name: getattr(record, name) for name in _BULK_WRITE_FIELDS}
        values["overtime_minutes"] = record.overtime_minutes or calculate_minutes_between(
            record.overtime_in,
            record.overtime_in_date,
            record.overtime_out,
            record.overtime_out_date,
        ) or None

        try:
            existing = _find_attendance(db, record.employee_id, day)
            if existing is not None:
                for name, value in values.items():
                    setattr(existing, name, value)
            else:
                db.add(Attendance(employee_id=record.employee_id, work_date=day, **values))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "attendance_bulk_upsert_failed",
                extra={"employee_id": record.employee_id, "date": day.isoformat()},
            )
            errors.append(f"Failed to save attendance for {record.employee_id}")
            continue

        if existing is not None:
            updated += 1
        else:
            created += 1

        event = _leave_event(record.employee_id, day, record)
        if event is not None:
            leave_events.append(event)

    logger.info(
        "attendance_bulk_upserted",
        extra={
            "date": day.isoformat(),
            "created_count": created,
            "updated_count": updated,
            "failed": len(errors),
            "leave_events": len(leave_events),
        },
    )
    result = BulkAttendanceUpsertResponse(
        success=not errors,
        upserted=created + updated,
        created=created,
        updated=updated,
        errors=errors or None,
    )
    return result, leave_events


def mark_self_attendance(
    db: Session,
    employee_id: str,
    day: date | None,
    payload: MarkSelfAttendanceRequest,
) -> tuple[MarkSelfAttendanceResponse, list[LeaveDayEvent]]:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise ApiError(status_code=status.HTTP_404_NOT_FOUND, code="EMPLOYEE_NOT_FOUND", message="Employee not found")
    if not employee.is_active:
        raise ApiError(status_code=status.HTTP_403_FORBIDDEN, code="EMPLOYEE_INACTIVE", message="Employee is inactive")

    target_day = day or local_today()
    location_status, location_flags = evaluate_location(
        employee,
        payload.location or payload.initial_location,
        default_radius_m=get_settings().default_site_radius_m,
    )

    # Partial update: only what the app actually sent.
    values = payload.model_dump(exclude_unset=True)
    values["status"] = payload.status

    existing = _find_attendance(db, employee_id, target_day)
    if existing is not None:
        for name, value in values.items():
            setattr(existing, name, value)
    else:
        db.add(Attendance(employee_id=employee_id, work_date=target_day, **values))
    db.commit()

    logger.info(
        "attendance_self_marked",
        extra={
            "employee_id": employee_id,
            "date": target_day.isoformat(),
            "status": payload.status.value,
            "location_status": location_status.value,
            "location_flags": location_flags,
            "updated_existing": existing is not None,
        },
    )

    event = _leave_event(employee_id, target_day, payload)
    response = MarkSelfAttendanceResponse(
        success=True,
        message="Attendance marked successfully",
        employee_id=employee_id,
        date=target_day,
        location_status=location_status,
    )
    return response, [event] if event is not None else []


def list_attendance_by_date(db: Session, day: date) -> AttendanceDayResponse:
    rows = db.execute(
        select(Attendance, Employee.full_name, Employee.fss_no)
        .outerjoin(Employee, Employee.employee_id == Attendance.employee_id)
        .where(Attendance.work_date == day)
        .order_by(Attendance.employee_id.asc())
    ).all()
    records = [_to_read(row[0], employee_name=row[1], fss_id=row[2]) for row in rows]
    return AttendanceDayResponse(date=day, records=records, count=len(records))


def list_attendance_by_range(db: Session, from_date: date, to_date: date) -> list[AttendanceRead]:
    ensure_date_range(from_date, to_date)
    rows = db.scalars(
        select(Attendance)
        .where(Attendance.work_date.between(from_date, to_date))
        .order_by(Attendance.work_date.asc(), Attendance.employee_id.asc())
    ).all()
    return [_to_read(row) for row in rows]


def list_attendance_for_employee(
    db: Session,
    employee_id: str,
    from_date: date,
    to_date: date,
) -> list[AttendanceRead]:
    ensure_date_range(from_date, to_date)
    rows = db.execute(
        select(Attendance, Employee.full_name, Employee.fss_no)
        .outerjoin(Employee, Employee.employee_id == Attendance.employee_id)
        .where(
            Attendance.employee_id == employee_id,
            Attendance.work_date.between(from_date, to_date),
        )
        .order_by(Attendance.work_date.desc())
    ).all()
    return [_to_read(row[0], employee_name=row[1], fss_id=row[2]) for row in rows]


def get_attendance_summary(db: Session, from_date: date, to_date: date) -> AttendanceSummaryResponse:
    ensure_date_range(from_date, to_date)
    rows = db.execute(
        select(Attendance.status, func.count(Attendance.id))
        .where(Attendance.work_date.between(from_date, to_date))
        .group_by(Attendance.status)
    ).all()
    by_status = {row[0].value: int(row[1]) for row in rows}
    return AttendanceSummaryResponse(
        from_date=from_date,
        to_date=to_date,
        total_records=sum(by_status.values()),
        by_status=by_status,
    )


def get_full_day_sheet(db: Session, day: date) -> list[AttendanceRead]:
    rows = db.execute(
        select(Employee, Attendance)
        .outerjoin(
            Attendance,
            and_(
                Attendance.employee_id == Employee.employee_id,
                Attendance.work_date == day,
            ),
        )
        .where(Employee.is_active.is_(True))
        .order_by(Employee.full_name.asc(), Employee.employee_id.asc())
    ).all()

    sheet: list[AttendanceRead] = []
    for employee, attendance in rows:
        if attendance is None:
            sheet.append(
                AttendanceRead(
                    employee_id=employee.employee_id,
                    employee_name=employee.full_name,
                    fss_id=employee.fss_no,
                    date=day,
                    status=UNMARKED_STATUS,
                )
            )
            continue
        sheet.append(_to_read(attendance, employee_name=employee.full_name, fss_id=employee.fss_no))

    logger.info(
        "attendance_full_day_sheet",
        extra={
            "date": day.isoformat(),
            "employees": len(sheet),
            "marked": sum(1 for item in sheet if item.status != UNMARKED_STATUS),
        },
    )
    return sheet


def get_employee_status(db: Session, employee_id: str, day: date) -> AttendanceRead | None:
    attendance = _find_attendance(db, employee_id, day)
    if attendance is None:
        return None
    return _to_read(attendance)


def get_employee_stats(db: Session, employee_id: str, *, today: date | None = None) -> EmployeeAttendanceStats:
    reference = today or local_today()
    month_start = reference.replace(day=1)
    month_end = reference.replace(day=monthrange(reference.year, reference.month)[1])

    rows = db.execute(
        select(Attendance.status, func.count(Attendance.id))
        .where(
            Attendance.employee_id == employee_id,
            Attendance.work_date.between(month_start, month_end),
        )
        .group_by(Attendance.status)
    ).all()
    return EmployeeAttendanceStats(**{row[0].value: int(row[1]) for row in rows})


def get_employee_history(db: Session, employee_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[AttendanceRead]:
    rows = db.scalars(
        select(Attendance)
        .where(Attendance.employee_id == employee_id)
        .order_by(Attendance.work_date.desc(), Attendance.created_at.desc())
        .limit(limit)
    ).all()
    return [_to_read(row) for row in rows]
