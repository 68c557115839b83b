from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from flash_hr.models import LeavePeriod, LeaveType

REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "employees": {"employee_id", "full_name", "is_active"},
    "attendance": {"id", "employee_id", "date", "status", "leave_type"},
    "leave_periods": {"id", "employee_id", "leave_type", "from_date", "to_date", "reason"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "leave_type": {member.value for member in LeaveType},
}

# Concurrent consolidation relies on this key to turn a duplicate insert into a retry.
LEAVE_PERIOD_KEY_COLUMNS = ("employee_id", "leave_type", "from_date")


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


class _SchemaInspection:
    def __init__(self, engine: Engine):
        self.engine = engine
        self.inspector = inspect(engine)
        self.issues: list[str] = []
        self.warnings: list[str] = []

    def check_columns(self) -> None:
        for table_name, expected in REQUIRED_TABLE_COLUMNS.items():
            try:
                present = {str(column.get("name")) for column in self.inspector.get_columns(table_name)}
            except Exception as exc:
                self.issues.append(f"TABLE_UNREADABLE:{table_name}:{type(exc).__name__}")
                continue
            missing = sorted(expected - present)
            if missing:
                self.issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")

    def check_enum_labels(self) -> None:
        try:
            labels = {
                str(item.get("name")): set(item.get("labels") or [])
                for item in self.inspector.get_enums() or []
                if item.get("name")
            }
        except Exception as exc:
            # Backends without native enums (and their inspectors) end up here.
            self.warnings.append(f"ENUM_INSPECTION_FAILED:{type(exc).__name__}")
            return

        for enum_name, expected in REQUIRED_ENUM_VALUES.items():
            if enum_name not in labels:
                self.warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
                continue
            missing = sorted(expected - labels[enum_name])
            if missing:
                self.issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")

    def check_leave_period_key(self) -> None:
        table_name = LeavePeriod.__tablename__
        try:
            constraints = self.inspector.get_unique_constraints(table_name)
            indexes = self.inspector.get_indexes(table_name)
        except Exception as exc:
            self.warnings.append(f"UNIQUE_KEY_INSPECTION_FAILED:{table_name}:{type(exc).__name__}")
            return

        key = tuple(LEAVE_PERIOD_KEY_COLUMNS)
        unique_keys = [tuple(item.get("column_names") or ()) for item in constraints]
        unique_keys += [tuple(item.get("column_names") or ()) for item in indexes if item.get("unique")]
        if key not in unique_keys:
            self.issues.append(f"MISSING_UNIQUE_KEY:{table_name}:{','.join(key)}")

    def check_alembic_version(self) -> None:
        try:
            with self.engine.connect() as connection:
                version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        except Exception as exc:
            self.issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{type(exc).__name__}")
            return
        if not str(version or "").strip():
            self.issues.append("ALEMBIC_VERSION_EMPTY")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    checked_at_utc = datetime.now(timezone.utc)
    inspection = _SchemaInspection(engine)
    inspection.check_columns()
    inspection.check_enum_labels()
    inspection.check_leave_period_key()
    inspection.check_alembic_version()
    return SchemaGuardResult(
        ok=not inspection.issues,
        checked_at_utc=checked_at_utc,
        issues=inspection.issues,
        warnings=inspection.warnings,
    )
