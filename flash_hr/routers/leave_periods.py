from datetime import date

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from flash_hr.audit import audit_admin_action
from flash_hr.db import get_db
from flash_hr.models import LeaveType
from flash_hr.schemas import LeavePeriodCreateRequest, LeavePeriodDeleteResponse, LeavePeriodRead
from flash_hr.services.leave_periods import create_leave_period, delete_leave_period, list_leave_periods

router = APIRouter(prefix="/api/leave-periods", tags=["leave-periods"])


@router.get("", response_model=list[LeavePeriodRead])
def list_leave_periods_endpoint(
    employee_id: str | None = None,
    leave_type: LeaveType | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    db: Session = Depends(get_db),
) -> list[LeavePeriodRead]:
    return list_leave_periods(
        db,
        employee_id=employee_id,
        leave_type=leave_type,
        from_date=from_date,
        to_date=to_date,
    )


@router.post("", response_model=LeavePeriodRead, status_code=status.HTTP_201_CREATED)
def create_leave_period_endpoint(
    payload: LeavePeriodCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> LeavePeriodRead:
    period = create_leave_period(db, payload)
    audit_admin_action(
        db,
        request,
        action="LEAVE_PERIOD_CREATED",
        entity_type="leave_period",
        entity_id=str(period.id),
        details={
            "employee_id": period.employee_id,
            "leave_type": period.leave_type.value,
            "from_date": period.from_date.isoformat(),
            "to_date": period.to_date.isoformat(),
        },
    )
    return period


@router.delete("/{period_id}", response_model=LeavePeriodDeleteResponse)
def delete_leave_period_endpoint(
    period_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> LeavePeriodDeleteResponse:
    delete_leave_period(db, period_id)
    audit_admin_action(db, request, action="LEAVE_PERIOD_DELETED", entity_type="leave_period", entity_id=str(period_id))
    return LeavePeriodDeleteResponse(id=period_id)
