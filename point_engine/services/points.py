from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from point_engine.db import atomic
from point_engine.errors import ImmutableRecordError, NotFoundError, ValidationError
from point_engine.models import Attendance, AttendancePoint, PointType
from point_engine.schemas import ManualPointCreateRequest, ManualPointUpdateRequest
from point_engine.security import Capability, PointActor
from point_engine.services.classifier import (
    VIOLATING_STATUSES,
    AttendanceOutcome,
    Classification,
    classify,
    classify_manual,
    is_gbro_eligible,
    normalize_status,
)
from point_engine.services.expiration import initial_expiration_type, local_today, sro_expiration_date
from point_engine.services.gbro import (
    cascade_recalculate_gbro,
    initial_gbro_expires_at,
    lock_user_points,
    revoke_gbro_eligibility,
    update_user_gbro_expiration_dates,
)
from point_engine.services.notifications import queue_manual_point_notification
from point_engine.settings import get_attendance_timezone

logger = logging.getLogger("point_engine.points")

DEFAULT_GRACE_PERIOD_MINUTES = 15
MAX_EXCUSE_REASON_LENGTH = 500


@dataclass(slots=True)
class RescanResult:
    date_from: date
    date_to: date
    total_records: int = 0
    created: int = 0
    skipped: int = 0
    users_affected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_from": self.date_from,
            "date_to": self.date_to,
            "total_records": self.total_records,
            "created": self.created,
            "skipped": self.skipped,
            "users_affected": self.users_affected,
        }


def validate_date_range(date_from: date, date_to: date) -> None:
    if date_to < date_from:
        raise ValidationError("date_to must be on or after date_from")


def get_point(db: Session, point_id: int) -> AttendancePoint:
    point = db.get(AttendancePoint, point_id)
    if point is None:
        raise NotFoundError("Attendance point", point_id)
    return point


def _format_hhmm(value: time | None, *, missing: str) -> str:
    if value is None:
        return missing
    return value.strftime("%H:%M")


def _format_local_hhmm(value: datetime | None) -> str:
    if value is None:
        return "No scan"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(get_attendance_timezone()).strftime("%H:%M")


def build_attendance_violation_details(attendance: Attendance) -> str:
    scheduled_in = _format_hhmm(attendance.scheduled_time_in, missing="N/A")
    scheduled_out = _format_hhmm(attendance.scheduled_time_out, missing="N/A")
    actual_in = _format_local_hhmm(attendance.actual_time_in)
    actual_out = _format_local_hhmm(attendance.actual_time_out)
    grace_period = attendance.grace_period_minutes or DEFAULT_GRACE_PERIOD_MINUTES
    status = normalize_status(attendance.status)

    if status == "ncns" and attendance.is_advised:
        return (
            "Failed to Notify (FTN): Employee did not report for work despite being advised. "
            f"Scheduled: {scheduled_in} - {scheduled_out}. No biometric scans recorded."
        )
    if status == "ncns":
        return (
            "No Call, No Show (NCNS): Employee did not report for work and did not provide prior notice. "
            f"Scheduled: {scheduled_in} - {scheduled_out}. No biometric scans recorded."
        )
    if status == "advised_absence":
        return f"Advised Absence: Employee gave prior notice. Scheduled: {scheduled_in} - {scheduled_out}."
    if status == "half_day_absence":
        return (
            f"Half-Day Absence: Arrived {attendance.tardy_minutes or 0} minutes late "
            f"(more than {grace_period} minutes grace period). Scheduled: {scheduled_in}, Actual: {actual_in}."
        )
    if status == "tardy":
        return (
            f"Tardy: Arrived {attendance.tardy_minutes or 0} minutes late. "
            f"Scheduled time in: {scheduled_in}, Actual time in: {actual_in}."
        )
    if status == "undertime":
        return (
            f"Undertime: Left {attendance.undertime_minutes or 0} minutes early. "
            f"Scheduled: {scheduled_out}, Actual: {actual_out}."
        )
    if status == "undertime_more_than_hour":
        return (
            f"Undertime (>1 Hour): Left {attendance.undertime_minutes or 0} minutes early "
            f"(more than 1 hour before scheduled end). Scheduled: {scheduled_out}, Actual: {actual_out}."
        )
    return f"Attendance violation on {attendance.shift_date.isoformat()}"


def build_manual_violation_details(
    point_type: PointType,
    *,
    shift_date: date,
    tardy_minutes: int | None = None,
    undertime_minutes: int | None = None,
) -> str:
    if point_type is PointType.TARDY and tardy_minutes:
        return f"Tardy: Arrived {tardy_minutes} minutes late (manual entry)."
    if point_type in (PointType.UNDERTIME, PointType.UNDERTIME_SEVERE) and undertime_minutes:
        return f"Undertime: Left {undertime_minutes} minutes early (manual entry)."
    label = point_type.value.replace("_", " ").title()
    return f"{label} on {shift_date.isoformat()} (manual entry)."


def _derive_is_advised(point_type: PointType, requested: bool | None) -> bool:
    if point_type is PointType.WHOLE_DAY_ABSENCE_ADVISED:
        return True
    if point_type is PointType.WHOLE_DAY_ABSENCE_UNADVISED:
        return False
    return bool(requested)


def _new_point(
    *,
    user_id: int,
    shift_date: date,
    classification: Classification,
    **fields: Any,
) -> AttendancePoint:
    eligible = is_gbro_eligible(classification.point_type)
    return AttendancePoint(
        user_id=user_id,
        shift_date=shift_date,
        point_type=classification.point_type,
        points=classification.points,
        expires_at=sro_expiration_date(shift_date, classification.point_type),
        expiration_type=initial_expiration_type(classification.point_type),
        is_expired=False,
        eligible_for_gbro=eligible,
        gbro_expires_at=initial_gbro_expires_at(shift_date, eligible),
        is_excused=False,
        **fields,
    )


def create_from_attendance(
    db: Session,
    attendance_id: int,
    *,
    today: date | None = None,
) -> AttendancePoint | None:
    """Derive a point from one verified attendance record.

    Returns None (skip) when the record is unverified, non-violating, or
    already has a point. Flushes only; the caller owns the transaction.
    """
    attendance = db.get(Attendance, attendance_id)
    if attendance is None:
        raise NotFoundError("Attendance", attendance_id)
    if not attendance.admin_verified:
        return None

    classification = classify(
        AttendanceOutcome(
            status=attendance.status,
            is_advised=attendance.is_advised,
            tardy_minutes=attendance.tardy_minutes,
            undertime_minutes=attendance.undertime_minutes,
        )
    )
    if classification is None:
        return None

    lock_user_points(db, attendance.user_id)
    existing_id = db.scalar(
        select(AttendancePoint.id).where(AttendancePoint.attendance_id == attendance.id).limit(1)
    )
    if existing_id is not None:
        return None

    point = _new_point(
        user_id=attendance.user_id,
        shift_date=attendance.shift_date,
        classification=classification,
        attendance_id=attendance.id,
        status=normalize_status(attendance.status),
        is_advised=attendance.is_advised,
        is_manual=False,
        tardy_minutes=attendance.tardy_minutes,
        undertime_minutes=attendance.undertime_minutes,
        violation_details=build_attendance_violation_details(attendance),
    )
    db.add(point)
    db.flush()

    if point.eligible_for_gbro:
        update_user_gbro_expiration_dates(db, point.user_id, point.shift_date, today=today)
    logger.info(
        "attendance_point_created",
        extra={
            "operation": "create_from_attendance",
            "user_id": point.user_id,
            "point_id": point.id,
            "attendance_id": attendance.id,
            "point_type": point.point_type.value,
        },
    )
    return point


def import_attendance_point(
    db: Session,
    attendance_id: int,
    *,
    actor: PointActor,
    today: date | None = None,
) -> AttendancePoint | None:
    actor.require(Capability.RESCAN, "import attendance points")
    with atomic(db, operation="create_from_attendance", attendance_id=attendance_id):
        point = create_from_attendance(db, attendance_id, today=today)
    return point


def create_manual(
    db: Session,
    payload: ManualPointCreateRequest,
    *,
    actor: PointActor,
    today: date | None = None,
) -> AttendancePoint:
    actor.require(Capability.CREATE, "create attendance points")
    classification = classify_manual(payload.point_type)
    violation_details = payload.violation_details or build_manual_violation_details(
        payload.point_type,
        shift_date=payload.shift_date,
        tardy_minutes=payload.tardy_minutes,
        undertime_minutes=payload.undertime_minutes,
    )

    with atomic(db, operation="create_manual", user_id=payload.user_id):
        lock_user_points(db, payload.user_id)
        point = _new_point(
            user_id=payload.user_id,
            shift_date=payload.shift_date,
            classification=classification,
            attendance_id=None,
            status=payload.status or payload.point_type.value.lower(),
            is_advised=_derive_is_advised(payload.point_type, payload.is_advised),
            is_manual=True,
            notes=payload.notes,
            tardy_minutes=payload.tardy_minutes,
            undertime_minutes=payload.undertime_minutes,
            violation_details=violation_details,
            created_by=actor.user_id,
        )
        db.add(point)
        db.flush()
        if point.eligible_for_gbro:
            update_user_gbro_expiration_dates(db, point.user_id, point.shift_date, today=today)
        queue_manual_point_notification(db, point=point, event="created")

    logger.info(
        "manual_point_created",
        extra={"operation": "create_manual", "user_id": point.user_id, "point_id": point.id},
    )
    return point


def update_manual(
    db: Session,
    point_id: int,
    payload: ManualPointUpdateRequest,
    *,
    actor: PointActor,
    today: date | None = None,
) -> AttendancePoint:
    actor.require(Capability.EDIT, "edit attendance points")
    point = get_point(db, point_id)
    if not point.is_manual:
        raise ImmutableRecordError(point.id)

    with atomic(db, operation="update_manual", user_id=point.user_id, point_id=point.id):
        lock_user_points(db, point.user_id)
        db.refresh(point)

        classification = classify_manual(payload.point_type)
        eligible = is_gbro_eligible(classification.point_type)
        expires_at = sro_expiration_date(payload.shift_date, classification.point_type)
        timeline_changed = (
            point.shift_date != payload.shift_date
            or point.eligible_for_gbro != eligible
            or point.expires_at != expires_at
        )

        point.shift_date = payload.shift_date
        point.point_type = classification.point_type
        point.points = classification.points
        point.status = payload.status or classification.point_type.value.lower()
        point.is_advised = _derive_is_advised(classification.point_type, payload.is_advised)
        point.notes = payload.notes
        point.tardy_minutes = payload.tardy_minutes
        point.undertime_minutes = payload.undertime_minutes
        point.violation_details = payload.violation_details or build_manual_violation_details(
            classification.point_type,
            shift_date=payload.shift_date,
            tardy_minutes=payload.tardy_minutes,
            undertime_minutes=payload.undertime_minutes,
        )
        point.expires_at = expires_at
        if not eligible:
            # Expired rows are outside the cascade, so clear their GBRO state here.
            revoke_gbro_eligibility(point)
        else:
            point.eligible_for_gbro = True
            if not point.is_expired:
                point.expiration_type = initial_expiration_type(classification.point_type)
        db.flush()

        if timeline_changed:
            cascade_recalculate_gbro(db, point.user_id, today=today)
        queue_manual_point_notification(db, point=point, event="updated")

    logger.info(
        "manual_point_updated",
        extra={
            "operation": "update_manual",
            "user_id": point.user_id,
            "point_id": point.id,
            "timeline_changed": timeline_changed,
        },
    )
    return point


def delete_manual(
    db: Session,
    point_id: int,
    *,
    actor: PointActor,
    today: date | None = None,
) -> int:
    """Hard-delete a manual point and re-cascade its owner; returns the owner's id."""
    actor.require(Capability.DELETE, "delete attendance points")
    point = get_point(db, point_id)
    if not point.is_manual:
        raise ImmutableRecordError(point.id)

    user_id = point.user_id
    with atomic(db, operation="delete_manual", user_id=user_id, point_id=point_id):
        lock_user_points(db, user_id)
        db.delete(point)
        db.flush()
        cascade_recalculate_gbro(db, user_id, today=today)

    logger.info("manual_point_deleted", extra={"operation": "delete_manual", "user_id": user_id, "point_id": point_id})
    return user_id


def excuse_point(
    db: Session,
    point_id: int,
    *,
    reason: str,
    actor: PointActor,
    notes: str | None = None,
    today: date | None = None,
) -> AttendancePoint:
    actor.require(Capability.EXCUSE, "excuse attendance points")
    cleaned_reason = (reason or "").strip()
    if not cleaned_reason:
        raise ValidationError("Excuse reason is required")
    if len(cleaned_reason) > MAX_EXCUSE_REASON_LENGTH:
        raise ValidationError(f"Excuse reason must be at most {MAX_EXCUSE_REASON_LENGTH} characters")

    point = get_point(db, point_id)
    with atomic(db, operation="excuse_point", user_id=point.user_id, point_id=point.id):
        lock_user_points(db, point.user_id)
        db.refresh(point)
        point.is_excused = True
        point.excused_by = actor.user_id
        point.excused_at = datetime.now(timezone.utc)
        point.excuse_reason = cleaned_reason
        if notes is not None:
            point.notes = notes
        db.flush()
        cascade_recalculate_gbro(db, point.user_id, today=today)

    logger.info("point_excused", extra={"operation": "excuse_point", "user_id": point.user_id, "point_id": point.id})
    return point


def unexcuse_point(
    db: Session,
    point_id: int,
    *,
    actor: PointActor,
    today: date | None = None,
) -> AttendancePoint:
    actor.require(Capability.EXCUSE, "remove attendance point excuses")
    point = get_point(db, point_id)
    with atomic(db, operation="unexcuse_point", user_id=point.user_id, point_id=point.id):
        lock_user_points(db, point.user_id)
        db.refresh(point)
        point.is_excused = False
        point.excused_by = None
        point.excused_at = None
        point.excuse_reason = None
        db.flush()
        cascade_recalculate_gbro(db, point.user_id, today=today)

    logger.info(
        "point_unexcused",
        extra={"operation": "unexcuse_point", "user_id": point.user_id, "point_id": point.id},
    )
    return point


def pending_attendance_ids(
    db: Session,
    *,
    date_from: date,
    date_to: date,
    user_id: int | None = None,
) -> dict[int, list[int]]:
    """Verified violating attendance in the range, grouped by user in shift order."""
    stmt = (
        select(Attendance.user_id, Attendance.id)
        .where(
            Attendance.admin_verified.is_(True),
            Attendance.shift_date >= date_from,
            Attendance.shift_date <= date_to,
            Attendance.status.in_(sorted(VIOLATING_STATUSES)),
        )
        .order_by(Attendance.user_id.asc(), Attendance.shift_date.asc(), Attendance.id.asc())
    )
    if user_id is not None:
        stmt = stmt.where(Attendance.user_id == user_id)
    grouped: dict[int, list[int]] = defaultdict(list)
    for owner_id, attendance_id in db.execute(stmt).all():
        grouped[owner_id].append(attendance_id)
    return dict(grouped)


def rescan_attendance(
    db: Session,
    *,
    date_from: date,
    date_to: date,
    actor: PointActor,
    today: date | None = None,
) -> RescanResult:
    actor.require(Capability.RESCAN, "rescan attendance points")
    validate_date_range(date_from, date_to)
    today = today or local_today()

    result = RescanResult(date_from=date_from, date_to=date_to)
    for user_id, attendance_ids in pending_attendance_ids(db, date_from=date_from, date_to=date_to).items():
        created_for_user = 0
        with atomic(db, operation="rescan_attendance", user_id=user_id):
            for attendance_id in attendance_ids:
                if create_from_attendance(db, attendance_id, today=today) is None:
                    result.skipped += 1
                else:
                    created_for_user += 1
        result.total_records += len(attendance_ids)
        result.created += created_for_user
        if created_for_user:
            result.users_affected += 1

    # "created" is a reserved LogRecord attribute.
    logger.info(
        "attendance_rescan_complete",
        extra={
            "operation": "rescan_attendance",
            "date_from": date_from,
            "date_to": date_to,
            "total_records": result.total_records,
            "points_created": result.created,
            "skipped": result.skipped,
            "users_affected": result.users_affected,
        },
    )
    return result
