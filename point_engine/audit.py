from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from point_engine.models import AuditActorType, AuditLog
from point_engine.security import PointActor

logger = logging.getLogger("point_engine.audit")


def actor_identity(actor: PointActor) -> tuple[AuditActorType, str]:
    if actor.user_id is None:
        return AuditActorType.SYSTEM, actor.role
    return AuditActorType.USER, str(actor.user_id)


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def log_audit(
    db: Session,
    *,
    actor: PointActor,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist one audit row in its own commit.

    Point mutations have already committed by the time this runs, so a failed
    audit write is logged and never undoes them.
    """
    actor_type, actor_id = actor_identity(actor)
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=ip,
            user_agent=user_agent,
            success=success,
            details=details or {},
        )
    )
    log_fields = {
        "request_id": request_id,
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "actor_role": actor.role,
        "success": success,
    }
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=log_fields)
        return

    logger.info(
        "audit_event",
        extra={**log_fields, "entity_type": entity_type, "entity_id": entity_id, "details": details or {}},
    )


def audit_request(
    db: Session,
    request: Request,
    *,
    actor: PointActor,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor=actor,
        action=action,
        success=True,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )
