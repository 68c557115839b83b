"""Leave periods: folding single leave days into contiguous date ranges.

Attendance marking reports leave one day at a time. For every
(employee, leave type) the stored periods are kept pairwise non-adjacent and
non-overlapping: a new day either extends the period that ends the day before,
extends the period that starts the day after, or becomes a one-day period of
its own. A day that is already covered changes nothing.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Protocol

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from flash_hr.errors import (
    ApiError,
    InvalidArgument,
    LeavePeriodConflict,
    QueryFailed,
    StoreUnavailable,
    ensure_date_range,
)
from flash_hr.models import Employee, LeavePeriod, LeaveType
from flash_hr.schemas import LeavePeriodCreateRequest

logger = logging.getLogger("flash_hr.leave_periods")

DEFAULT_REASON_TEMPLATE = "Auto-created from attendance ({leave_type})"
MAX_RESOLVE_ATTEMPTS = 2


class ConsolidationOutcome(str, enum.Enum):
    CREATED = "created"
    EXTENDED_FORWARD = "extended_forward"
    EXTENDED_BACKWARD = "extended_backward"
    MERGED = "merged"
    UNCHANGED = "unchanged"


@dataclass(frozen=True, slots=True)
class LeaveDayEvent:
    employee_id: str
    day: date | str
    leave_type: LeaveType | str
    note: str | None = None


@dataclass(slots=True)
class ConsolidationReport:
    outcomes: dict[ConsolidationOutcome, int] = field(
        default_factory=lambda: {outcome: 0 for outcome in ConsolidationOutcome}
    )
    failed: int = 0
    failed_events: list[LeaveDayEvent] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values()) + self.failed

    def to_dict(self) -> dict[str, int]:
        payload = {outcome.value: count for outcome, count in self.outcomes.items()}
        payload["failed"] = self.failed
        return payload


class LeavePeriodStore(Protocol):
    def find_period(
        self,
        employee_id: str,
        leave_type: LeaveType,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> LeavePeriod | None:
        ...

    def find_covering_period(self, employee_id: str, leave_type: LeaveType, day: date) -> LeavePeriod | None:
        ...

    def update_period(
        self,
        period_id: int,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> None:
        ...

    def create_period(
        self,
        *,
        employee_id: str,
        leave_type: LeaveType,
        from_date: date,
        to_date: date,
        reason: str | None,
    ) -> LeavePeriod:
        ...

    def merge_periods(self, keep_id: int, drop_id: int, *, to_date: date) -> None:
        """Extend `keep_id` to `to_date` and remove `drop_id` as one write."""
        ...


class SqlLeavePeriodStore:
    """`LeavePeriodStore` over a SQLAlchemy session. Every write commits."""

    def __init__(self, db: Session):
        self._db = db

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self._db.rollback()
            if isinstance(exc, IntegrityError):
                raise LeavePeriodConflict(f"{operation}: conflicting leave period") from exc
            if isinstance(exc, OperationalError):
                raise StoreUnavailable(f"{operation}: leave period store unavailable") from exc
            raise QueryFailed(f"{operation}: {exc.__class__.__name__}") from exc

    def find_period(
        self,
        employee_id: str,
        leave_type: LeaveType,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> LeavePeriod | None:
        stmt = select(LeavePeriod).where(
            LeavePeriod.employee_id == employee_id,
            LeavePeriod.leave_type == leave_type,
        )
        if from_date is not None:
            stmt = stmt.where(LeavePeriod.from_date == from_date)
        if to_date is not None:
            stmt = stmt.where(LeavePeriod.to_date == to_date)

        with self._translate_errors("find_period"):
            return self._db.scalar(stmt.order_by(LeavePeriod.id.asc()).limit(1))

    def find_covering_period(self, employee_id: str, leave_type: LeaveType, day: date) -> LeavePeriod | None:
        stmt = (
            select(LeavePeriod)
            .where(
                LeavePeriod.employee_id == employee_id,
                LeavePeriod.leave_type == leave_type,
                LeavePeriod.from_date <= day,
                LeavePeriod.to_date >= day,
            )
            .order_by(LeavePeriod.id.asc())
            .limit(1)
        )
        with self._translate_errors("find_covering_period"):
            return self._db.scalar(stmt)

    def update_period(
        self,
        period_id: int,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> None:
        with self._translate_errors("update_period"):
            period = self._db.get(LeavePeriod, period_id)
            if period is None:
                raise QueryFailed(f"update_period: leave period {period_id} not found")
            if from_date is not None:
                period.from_date = from_date
            if to_date is not None:
                period.to_date = to_date
            self._db.commit()

    def create_period(
        self,
        *,
        employee_id: str,
        leave_type: LeaveType,
        from_date: date,
        to_date: date,
        reason: str | None,
    ) -> LeavePeriod:
        period = LeavePeriod(
            employee_id=employee_id,
            leave_type=leave_type,
            from_date=from_date,
            to_date=to_date,
            reason=reason,
        )
        with self._translate_errors("create_period"):
            self._db.add(period)
            self._db.commit()
            self._db.refresh(period)
        return period

    def merge_periods(self, keep_id: int, drop_id: int, *, to_date: date) -> None:
        with self._translate_errors("merge_periods"):
            kept = self._db.get(LeavePeriod, keep_id)
            dropped = self._db.get(LeavePeriod, drop_id)
            if kept is None or dropped is None:
                raise QueryFailed(f"merge_periods: leave period {keep_id if kept is None else drop_id} not found")
            # Delete first so the widened row never overlaps the one it absorbs.
            self._db.delete(dropped)
            self._db.flush()
            kept.to_date = to_date
            self._db.commit()


class _KeyedLocks:
    """One lock per (employee, leave type), dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, LeaveType], threading.Lock] = {}
        self._users: dict[tuple[str, LeaveType], int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: tuple[str, LeaveType]) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


# Shared by every consolidator in the process: requests and the background
# worker each build their own consolidator around their own session.
_period_locks = _KeyedLocks()


def _coerce_day(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise InvalidArgument(f"invalid leave date: {value!r}") from exc


def _coerce_leave_type(value: LeaveType | str | None) -> LeaveType:
    if isinstance(value, LeaveType):
        return value
    normalized = (value or "").strip().lower()
    if not normalized:
        raise InvalidArgument("leave_type is required")
    try:
        return LeaveType(normalized)
    except ValueError as exc:
        raise InvalidArgument(f"unknown leave_type: {value!r}") from exc


class LeavePeriodConsolidator:
    def __init__(
        self,
        store: LeavePeriodStore,
        *,
        merge_bridged_periods: bool = False,
        reason_template: str = DEFAULT_REASON_TEMPLATE,
        locks: _KeyedLocks | None = None,
    ):
        self._store = store
        self._merge_bridged_periods = merge_bridged_periods
        self._reason_template = reason_template
        self._locks = locks if locks is not None else _period_locks

    def record_leave_day(
        self,
        employee_id: str,
        day: date | str,
        leave_type: LeaveType | str,
        note: str | None = None,
    ) -> ConsolidationOutcome:
        employee_key = (employee_id or "").strip()
        if not employee_key:
            raise InvalidArgument("employee_id is required")
        leave_day = _coerce_day(day)
        kind = _coerce_leave_type(leave_type)

        attempt = 1
        with self._locks.hold((employee_key, kind)):
            while True:
                try:
                    return self._resolve(employee_key, leave_day, kind, note)
                except LeavePeriodConflict:
                    # Another process created a period for this key in between.
                    if attempt >= MAX_RESOLVE_ATTEMPTS:
                        raise
                    attempt += 1
                    logger.info(
                        "leave_period_conflict_retry",
                        extra={
                            "employee_id": employee_key,
                            "leave_type": kind.value,
                            "day": leave_day.isoformat(),
                        },
                    )

    def _resolve(
        self,
        employee_id: str,
        day: date,
        leave_type: LeaveType,
        note: str | None,
    ) -> ConsolidationOutcome:
        log_extra = {"employee_id": employee_id, "leave_type": leave_type.value, "day": day.isoformat()}

        covering = self._store.find_covering_period(employee_id, leave_type, day)
        if covering is not None:
            logger.debug("leave_period_already_covered", extra={**log_extra, "period_id": covering.id})
            return ConsolidationOutcome.UNCHANGED

        yesterday = day - timedelta(days=1)
        tomorrow = day + timedelta(days=1)
        extend_forward = self._store.find_period(employee_id, leave_type, to_date=yesterday)
        extend_backward = self._store.find_period(employee_id, leave_type, from_date=tomorrow)

        if extend_forward is not None:
            if extend_backward is not None and self._merge_bridged_periods:
                bridged_to = extend_backward.to_date
                self._store.merge_periods(extend_forward.id, extend_backward.id, to_date=bridged_to)
                logger.info(
                    "leave_period_merged",
                    extra={
                        **log_extra,
                        "period_id": extend_forward.id,
                        "removed_period_id": extend_backward.id,
                        "to_date": bridged_to.isoformat(),
                    },
                )
                return ConsolidationOutcome.MERGED

            self._store.update_period(extend_forward.id, to_date=day)
            logger.info(
                "leave_period_extended",
                extra={**log_extra, "period_id": extend_forward.id, "direction": "forward"},
            )
            return ConsolidationOutcome.EXTENDED_FORWARD

        if extend_backward is not None:
            self._store.update_period(extend_backward.id, from_date=day)
            logger.info(
                "leave_period_extended",
                extra={**log_extra, "period_id": extend_backward.id, "direction": "backward"},
            )
            return ConsolidationOutcome.EXTENDED_BACKWARD

        reason = note or self._reason_template.format(leave_type=leave_type.value)
        period = self._store.create_period(
            employee_id=employee_id,
            leave_type=leave_type,
            from_date=day,
            to_date=day,
            reason=reason,
        )
        logger.info("leave_period_created", extra={**log_extra, "period_id": period.id})
        return ConsolidationOutcome.CREATED

    def record_leave_days(self, events: Iterable[LeaveDayEvent]) -> ConsolidationReport:
        report = ConsolidationReport()
        for event in events:
            try:
                outcome = self.record_leave_day(event.employee_id, event.day, event.leave_type, event.note)
            except Exception:
                report.failed += 1
                report.failed_events.append(event)
                logger.warning(
                    "leave_period_consolidation_failed",
                    exc_info=True,
                    extra={
                        "employee_id": event.employee_id,
                        "leave_type": str(getattr(event.leave_type, "value", event.leave_type)),
                        "day": str(event.day),
                    },
                )
                continue
            report.outcomes[outcome] += 1
        return report


def list_leave_periods(
    db: Session,
    *,
    employee_id: str | None = None,
    leave_type: LeaveType | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
) -> list[LeavePeriod]:
    if from_date is not None and to_date is not None:
        ensure_date_range(from_date, to_date)

    stmt = select(LeavePeriod).order_by(LeavePeriod.from_date.asc(), LeavePeriod.id.asc())
    if employee_id is not None:
        stmt = stmt.where(LeavePeriod.employee_id == employee_id)
    if leave_type is not None:
        stmt = stmt.where(LeavePeriod.leave_type == leave_type)
    if from_date is not None:
        stmt = stmt.where(LeavePeriod.to_date >= from_date)
    if to_date is not None:
        stmt = stmt.where(LeavePeriod.from_date <= to_date)

    return list(db.scalars(stmt).all())


def create_leave_period(db: Session, payload: LeavePeriodCreateRequest) -> LeavePeriod:
    ensure_date_range(payload.from_date, payload.to_date)

    employee = db.get(Employee, payload.employee_id)
    if employee is None:
        raise ApiError(status_code=status.HTTP_404_NOT_FOUND, code="EMPLOYEE_NOT_FOUND", message="Employee not found")

    period = LeavePeriod(
        employee_id=payload.employee_id,
        leave_type=payload.leave_type,
        from_date=payload.from_date,
        to_date=payload.to_date,
        reason=payload.reason,
    )
    db.add(period)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ApiError(
            status_code=status.HTTP_409_CONFLICT,
            code="LEAVE_PERIOD_EXISTS",
            message="A leave period of this type already starts on from_date",
        )
    db.refresh(period)
    return period


def delete_leave_period(db: Session, period_id: int) -> None:
    period = db.get(LeavePeriod, period_id)
    if period is None:
        raise ApiError(status_code=status.HTTP_404_NOT_FOUND, code="LEAVE_PERIOD_NOT_FOUND", message="Leave period not found")

    db.delete(period)
    db.commit()
