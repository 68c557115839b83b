from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from flash_hr.errors import get_request_id
from flash_hr.models import AuditActorType, AuditLog

logger = logging.getLogger("flash_hr.audit")

DEFAULT_ADMIN_ACTOR = "admin"


def actor_from_request(request: Request) -> str:
    """Admin screens identify the operator with `X-Actor-Id`; there is no login in this service."""

    return (request.headers.get("x-actor-id") or "").strip() or DEFAULT_ADMIN_ACTOR


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> bool:
    """Persist one audit row in its own commit. Returns False when the row could not be written."""

    row = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=dict(details or {}),
    )
    event = {
        "request_id": request_id,
        "action": action,
        "actor": f"{actor_type.value}:{actor_id}",
        "entity": f"{entity_type}:{entity_id}" if entity_type else None,
        "success": success,
    }

    db.add(row)
    try:
        db.commit()
    except Exception:
        # The audited change is already committed.
        db.rollback()
        logger.exception("audit_log_write_failed", extra=event)
        return False

    logger.info("audit_event", extra={**event, "audit_id": row.id, "details": row.details})
    return True


def audit_admin_action(
    db: Session,
    request: Request,
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    success: bool = True,
    details: dict[str, Any] | None = None,
) -> bool:
    return log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_from_request(request),
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        request_id=get_request_id(request),
    )
