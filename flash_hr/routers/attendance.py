from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from flash_hr.audit import audit_admin_action
from flash_hr.db import get_db
from flash_hr.schemas import (
    AttendanceDayResponse,
    AttendanceRead,
    AttendanceSummaryResponse,
    BulkAttendanceUpsertRequest,
    BulkAttendanceUpsertResponse,
    EmployeeAttendanceStats,
    MarkSelfAttendanceRequest,
    MarkSelfAttendanceResponse,
)
from flash_hr.services.attendance import (
    DEFAULT_HISTORY_LIMIT,
    bulk_upsert_attendance,
    get_attendance_summary,
    get_employee_history,
    get_employee_stats,
    get_employee_status,
    get_full_day_sheet,
    list_attendance_by_date,
    list_attendance_by_range,
    list_attendance_for_employee,
    local_today,
    mark_self_attendance,
)
from flash_hr.services.leave_worker import dispatch_leave_days

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


@router.get("", response_model=AttendanceDayResponse)
def list_by_date_endpoint(
    date_: date = Query(alias="date"),
    db: Session = Depends(get_db),
) -> AttendanceDayResponse:
    return list_attendance_by_date(db, date_)


@router.get("/range", response_model=list[AttendanceRead])
def list_by_range_endpoint(
    from_date: date,
    to_date: date,
    db: Session = Depends(get_db),
) -> list[AttendanceRead]:
    return list_attendance_by_range(db, from_date, to_date)


@router.get("/summary", response_model=AttendanceSummaryResponse)
def summary_endpoint(
    from_date: date,
    to_date: date,
    db: Session = Depends(get_db),
) -> AttendanceSummaryResponse:
    return get_attendance_summary(db, from_date, to_date)


@router.get("/full-day", response_model=list[AttendanceRead])
def full_day_sheet_endpoint(
    date_: date = Query(alias="date"),
    db: Session = Depends(get_db),
) -> list[AttendanceRead]:
    return get_full_day_sheet(db, date_)


@router.get("/employee/{employee_id}", response_model=list[AttendanceRead])
def employee_range_endpoint(
    employee_id: str,
    from_date: date,
    to_date: date,
    db: Session = Depends(get_db),
) -> list[AttendanceRead]:
    return list_attendance_for_employee(db, employee_id, from_date, to_date)


@router.post("/bulk", response_model=BulkAttendanceUpsertResponse)
def bulk_upsert_endpoint(
    payload: BulkAttendanceUpsertRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> BulkAttendanceUpsertResponse:
    result, leave_events = bulk_upsert_attendance(db, payload.date, payload.records)
    dispatch_leave_days(request.app.state, db, leave_events)
    audit_admin_action(
        db,
        request,
        action="ATTENDANCE_BULK_SAVED",
        entity_type="attendance",
        entity_id=payload.date.isoformat(),
        success=result.success,
        details={
            "created": result.created,
            "updated": result.updated,
            "failed": len(result.errors or []),
            "leave_events": len(leave_events),
        },
    )
    return result


@router.post("/self/{employee_id}", response_model=MarkSelfAttendanceResponse)
def mark_self_endpoint(
    employee_id: str,
    payload: MarkSelfAttendanceRequest,
    request: Request,
    date_: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
) -> MarkSelfAttendanceResponse:
    request.state.employee_id = employee_id
    result, leave_events = mark_self_attendance(db, employee_id, date_, payload)
    request.state.location_status = result.location_status.value
    dispatch_leave_days(request.app.state, db, leave_events)
    return result


@router.get("/self/{employee_id}/status", response_model=AttendanceRead | None)
def employee_status_endpoint(
    employee_id: str,
    date_: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
) -> AttendanceRead | None:
    return get_employee_status(db, employee_id, date_ or local_today())


@router.get("/self/{employee_id}/stats", response_model=EmployeeAttendanceStats)
def employee_stats_endpoint(
    employee_id: str,
    db: Session = Depends(get_db),
) -> EmployeeAttendanceStats:
    return get_employee_stats(db, employee_id)


@router.get("/self/{employee_id}/history", response_model=list[AttendanceRead])
def employee_history_endpoint(
    employee_id: str,
    limit: int = Query(default=DEFAULT_HISTORY_LIMIT, ge=1, le=365),
    db: Session = Depends(get_db),
) -> list[AttendanceRead]:
    return get_employee_history(db, employee_id, limit)
