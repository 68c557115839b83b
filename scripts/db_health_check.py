#!/usr/bin/env python
"""Print a JSON health report for the flash-hr database.

Exit status is 1 when any check fails. Leave periods that touch or overlap
within one employee and leave type are reported as warnings: they can be left
behind by the forward-only extension of a bridging day, or by manual edits.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection

from flash_hr.settings import get_settings

EXPECTED_HEAD = "0002_leave_periods"
REQUIRED_TABLES = ("employees", "attendance", "leave_periods", "audit_logs")
SAMPLE_LIMIT = 50

_ORPHAN_ATTENDANCE_SQL = text(
    """
    SELECT a.id
    FROM attendance a
    LEFT JOIN employees e ON e.employee_id = a.employee_id
    WHERE e.employee_id IS NULL
    ORDER BY a.id
    LIMIT :limit
    """
)

_MERGEABLE_LEAVE_PERIODS_SQL = text(
    """
    SELECT earlier.employee_id, earlier.leave_type, earlier.id, later.id
    FROM leave_periods earlier
    JOIN leave_periods later
      ON later.employee_id = earlier.employee_id
     AND later.leave_type = earlier.leave_type
     AND later.id <> earlier.id
     AND later.from_date >= earlier.from_date
     AND later.from_date <= earlier.to_date + 1
     AND (later.from_date > earlier.from_date OR later.id > earlier.id)
    ORDER BY earlier.employee_id, earlier.from_date
    LIMIT :limit
    """
)


def _check(name: str, status: str, **details: Any) -> dict[str, Any]:
    return {"name": name, "status": status, "details": details}


def _migration_checks(conn: Connection, tables: set[str]) -> list[dict[str, Any]]:
    versions: list[str] = []
    if "alembic_version" in tables:
        versions = list(conn.execute(text("SELECT version_num FROM alembic_version")).scalars())
    return [
        _check("alembic_version", "ok" if versions else "fail", current=versions),
        _check(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in versions else "warn",
            expected_head=EXPECTED_HEAD,
            current=versions,
        ),
    ]


def _attendance_checks(conn: Connection) -> list[dict[str, Any]]:
    orphan_ids = list(conn.execute(_ORPHAN_ATTENDANCE_SQL, {"limit": SAMPLE_LIMIT}).scalars())
    return [_check("attendance_orphan_employee", "fail" if orphan_ids else "ok", sample_ids=orphan_ids)]


def _leave_period_checks(conn: Connection) -> list[dict[str, Any]]:
    pairs = [
        {"employee_id": row[0], "leave_type": str(row[1]), "period_ids": [row[2], row[3]]}
        for row in conn.execute(_MERGEABLE_LEAVE_PERIODS_SQL, {"limit": SAMPLE_LIMIT})
    ]
    return [_check("leave_period_mergeable_pairs", "warn" if pairs else "ok", pairs=pairs)]


def run(database_url: str | None = None) -> dict[str, Any]:
    engine = create_engine(database_url or get_settings().database_url)
    checks: list[dict[str, Any]] = []
    try:
        tables = set(inspect(engine).get_table_names())
        missing_tables = [name for name in REQUIRED_TABLES if name not in tables]
        with engine.connect() as conn:
            checks += _migration_checks(conn, tables)
            checks.append(_check("missing_tables", "fail" if missing_tables else "ok", tables=missing_tables))
            if "attendance" in tables and "employees" in tables:
                checks += _attendance_checks(conn)
            if "leave_periods" in tables:
                checks += _leave_period_checks(conn)
    finally:
        engine.dispose()

    return {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": all(item["status"] != "fail" for item in checks),
        "checks": checks,
    }


if __name__ == "__main__":
    report = run()
    print(json.dumps(report, ensure_ascii=False, indent=2))
    sys.exit(0 if report["ok"] else 1)
