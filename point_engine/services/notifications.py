from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from point_engine.models import AttendancePoint, NotificationJob

logger = logging.getLogger("point_engine.points")

MANUAL_POINT_JOB_TYPE = "MANUAL_ATTENDANCE_POINT"


def _build_idempotency_key(*, job_type: str, user_id: int, point_id: int, event: str, at: datetime) -> str:
    return f"{job_type}:{user_id}:{point_id}:{event}:{at.strftime('%Y%m%dT%H%M%S%f')}"


def _has_pending_or_sent_job(session: Session, *, idempotency_key: str) -> bool:
    existing = session.scalar(
        select(NotificationJob.id).where(
            NotificationJob.idempotency_key == idempotency_key,
            NotificationJob.status.in_(("PENDING", "SENT")),
        )
    )
    return existing is not None


def build_point_summary(point: AttendancePoint) -> dict[str, str]:
    summary = {
        "point_id": str(point.id),
        "shift_date": point.shift_date.isoformat(),
        "point_type": point.point_type.value,
        "points": f"{point.points:.2f}",
        "expires_at": point.expires_at.isoformat(),
    }
    if point.gbro_expires_at is not None:
        summary["gbro_expires_at"] = point.gbro_expires_at.isoformat()
    if point.violation_details:
        summary["violation_details"] = point.violation_details
    return summary


def queue_manual_point_notification(
    session: Session,
    *,
    point: AttendancePoint,
    event: str,
    now_utc: datetime | None = None,
) -> NotificationJob | None:
    """Add an outbox row for the employee; delivery belongs to the notifier.

    The row joins the caller's transaction, so it only becomes visible if the
    point mutation commits.
    """
    now_utc = now_utc or datetime.now(timezone.utc)
    idempotency_key = _build_idempotency_key(
        job_type=MANUAL_POINT_JOB_TYPE,
        user_id=point.user_id,
        point_id=point.id,
        event=event,
        at=now_utc,
    )
    if _has_pending_or_sent_job(session, idempotency_key=idempotency_key):
        return None

    payload = {"event": event, "user_id": str(point.user_id), **build_point_summary(point)}
    job = NotificationJob(
        user_id=point.user_id,
        job_type=MANUAL_POINT_JOB_TYPE,
        payload=payload,
        scheduled_at_utc=now_utc,
        status="PENDING",
        attempts=0,
        last_error=None,
        idempotency_key=idempotency_key,
    )
    session.add(job)
    logger.info(
        "manual_point_notification_queued",
        extra={"user_id": point.user_id, "point_id": point.id, "event": event},
    )
    return job
