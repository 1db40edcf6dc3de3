from __future__ import annotations

from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from timekeeper.audit import log_audit
from timekeeper.errors import get_request_id
from timekeeper.models import User


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def audit_request(
    db: Session,
    request: Request,
    *,
    actor: User | None,
    action: str,
    entity_type: str,
    entity_id: int | str,
    affected_user_id: int | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    reason: str | None = None,
) -> bool:
    return log_audit(
        db,
        action=action,
        actor_id=actor.id if actor is not None else "system",
        entity_type=entity_type,
        entity_id=entity_id,
        affected_user_id=affected_user_id,
        old_values=old_values,
        new_values=new_values,
        reason=reason,
        ip=client_ip(request),
        user_agent=user_agent(request),
        request_id=get_request_id(request),
    )
