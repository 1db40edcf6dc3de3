from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from timekeeper.models import AuditLog

logger = logging.getLogger("timekeeper.audit")


def log_audit(
    db: Session,
    *,
    action: str,
    actor_id: int | str,
    entity_type: str,
    entity_id: int | str,
    affected_user_id: int | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    reason: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> bool:
    """Append one audit entry in its own commit.

    Audit writes are a side channel: a failure is logged and reported as
    ``False`` but never raised, so the primary operation is unaffected.
    Call this only after the primary unit of work has been committed.
    """
    entry = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        action=action,
        actor_id=str(actor_id),
        affected_user_id=affected_user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        old_values=old_values,
        new_values=new_values,
        reason=reason,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    try:
        db.add(entry)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_id": str(actor_id),
                "entity_type": entity_type,
                "entity_id": str(entity_id),
            },
        )
        return False

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_id": str(actor_id),
            "affected_user_id": affected_user_id,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
        },
    )
    return True
