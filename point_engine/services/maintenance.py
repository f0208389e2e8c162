"""Batch operators over the point store.

Every operator processes one user per transaction, so a failure part way
through a batch leaves earlier users committed and consistent and surfaces
the error for the user that failed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Literal

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from point_engine.db import atomic
from point_engine.errors import ValidationError
from point_engine.models import Attendance, AttendancePoint, ExpirationType, PointType
from point_engine.security import Capability, PointActor
from point_engine.services.classifier import VIOLATING_STATUSES
from point_engine.services.expiration import initial_expiration_type, local_today, sro_expiration_date
from point_engine.services.gbro import (
    cascade_recalculate_gbro,
    lock_user_points,
    restore_initial_gbro_dates,
    revoke_gbro_eligibility,
)
from point_engine.services.points import create_from_attendance, pending_attendance_ids, validate_date_range

logger = logging.getLogger("point_engine.maintenance")

ExpireScope = Literal["sro", "gbro", "both"]
EXPIRE_SCOPES = ("sro", "gbro", "both")

CreatePoint = Callable[..., AttendancePoint | None]


@dataclass(slots=True)
class MaintenanceResult:
    operation: str
    affected: int = 0
    users_processed: int = 0
    details: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "affected": self.affected,
            "users_processed": self.users_processed,
            "details": dict(self.details),
        }


def _log_result(result: MaintenanceResult) -> MaintenanceResult:
    logger.info("maintenance_complete", extra=result.to_dict())
    return result


def _duplicate_groups(db: Session) -> list[tuple[int, int]]:
    stmt = (
        select(AttendancePoint.attendance_id, func.min(AttendancePoint.id))
        .where(AttendancePoint.attendance_id.is_not(None))
        .group_by(AttendancePoint.attendance_id)
        .having(func.count(AttendancePoint.id) > 1)
    )
    return [(attendance_id, keep_id) for attendance_id, keep_id in db.execute(stmt).all()]


def remove_duplicates(db: Session, *, actor: PointActor, today: date | None = None) -> MaintenanceResult:
    """Keep the lowest id per attendance record, delete the rest, then cascade each owner once."""
    actor.require(Capability.MAINTENANCE, "remove duplicate points")
    result = MaintenanceResult(operation="remove_duplicates")

    doomed_by_user: dict[int, list[int]] = defaultdict(list)
    for attendance_id, keep_id in _duplicate_groups(db):
        rows = db.execute(
            select(AttendancePoint.id, AttendancePoint.user_id).where(
                AttendancePoint.attendance_id == attendance_id,
                AttendancePoint.id != keep_id,
            )
        ).all()
        for point_id, user_id in rows:
            doomed_by_user[user_id].append(point_id)

    for user_id, point_ids in sorted(doomed_by_user.items()):
        with atomic(db, operation="remove_duplicates", user_id=user_id, point_ids=point_ids):
            lock_user_points(db, user_id)
            deleted = db.execute(
                delete(AttendancePoint)
                .where(AttendancePoint.id.in_(point_ids))
                .execution_options(synchronize_session="fetch")
            ).rowcount
            cascade_recalculate_gbro(db, user_id, today=today)
        result.affected += deleted or 0
        result.users_processed += 1

    return _log_result(result)


def _due_expiration(point: AttendancePoint, *, scope: ExpireScope, today: date) -> tuple[date, ExpirationType] | None:
    sro_due = scope in ("sro", "both") and point.expires_at <= today
    gbro_due = (
        scope in ("gbro", "both")
        and point.eligible_for_gbro
        and not point.is_excused
        and point.gbro_expires_at is not None
        and point.gbro_expires_at <= today
    )
    if gbro_due and (not sro_due or point.gbro_expires_at <= point.expires_at):
        return point.gbro_expires_at, ExpirationType.GBRO
    if sro_due:
        kind = ExpirationType.SRO if point.eligible_for_gbro else ExpirationType.NONE
        return point.expires_at, kind
    return None


def expire_all_pending(
    db: Session,
    *,
    scope: str = "both",
    actor: PointActor,
    today: date | None = None,
) -> MaintenanceResult:
    """Mark points whose stored expiration date has passed. GBRO dates are left as stored."""
    actor.require(Capability.MAINTENANCE, "expire pending points")
    if scope not in EXPIRE_SCOPES:
        raise ValidationError(f"scope must be one of: {', '.join(EXPIRE_SCOPES)}")
    today = today or local_today()
    result = MaintenanceResult(operation="expire_all_pending", details={"sro": 0, "gbro": 0})

    conditions = []
    if scope in ("sro", "both"):
        conditions.append(AttendancePoint.expires_at <= today)
    if scope in ("gbro", "both"):
        conditions.append(
            and_(
                AttendancePoint.eligible_for_gbro.is_(True),
                AttendancePoint.is_excused.is_(False),
                AttendancePoint.gbro_expires_at.is_not(None),
                AttendancePoint.gbro_expires_at <= today,
            )
        )
    user_ids = db.scalars(
        select(AttendancePoint.user_id)
        .where(AttendancePoint.is_expired.is_(False), or_(*conditions))
        .distinct()
        .order_by(AttendancePoint.user_id)
    ).all()

    for user_id in user_ids:
        with atomic(db, operation="expire_all_pending", user_id=user_id, scope=scope):
            lock_user_points(db, user_id)
            points = db.scalars(
                select(AttendancePoint).where(
                    AttendancePoint.user_id == user_id,
                    AttendancePoint.is_expired.is_(False),
                )
            ).all()
            for point in points:
                due = _due_expiration(point, scope=scope, today=today)
                if due is None:
                    continue
                expired_on, kind = due
                point.is_expired = True
                point.expired_at = expired_on
                point.expiration_type = kind
                result.affected += 1
                result.details["gbro" if kind is ExpirationType.GBRO else "sro"] += 1
        result.users_processed += 1

    return _log_result(result)


def _cascade_users(
    db: Session,
    user_ids: list[int],
    *,
    operation: str,
    today: date | None,
    result: MaintenanceResult,
) -> None:
    for user_id in user_ids:
        with atomic(db, operation=operation, user_id=user_id):
            cascade = cascade_recalculate_gbro(db, user_id, today=today)
        result.affected += cascade.updated
        result.details["expired"] = result.details.get("expired", 0) + cascade.expired
        result.users_processed += 1


def initialize_gbro_dates(db: Session, *, actor: PointActor, today: date | None = None) -> MaintenanceResult:
    """Backfill GBRO state for every user who still has an eligible point with no GBRO date."""
    actor.require(Capability.MAINTENANCE, "initialize GBRO dates")
    result = MaintenanceResult(operation="initialize_gbro_dates")
    user_ids = list(
        db.scalars(
            select(AttendancePoint.user_id)
            .where(
                AttendancePoint.eligible_for_gbro.is_(True),
                AttendancePoint.is_excused.is_(False),
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.gbro_expires_at.is_(None),
            )
            .distinct()
            .order_by(AttendancePoint.user_id)
        ).all()
    )
    _cascade_users(db, user_ids, operation="initialize_gbro_dates", today=today, result=result)
    return _log_result(result)


def fix_gbro_dates(db: Session, *, actor: PointActor, today: date | None = None) -> MaintenanceResult:
    """Repair eligibility flags on unadvised absences, then re-derive every open timeline."""
    actor.require(Capability.MAINTENANCE, "fix GBRO dates")
    result = MaintenanceResult(operation="fix_gbro_dates", details={"eligibility_fixed": 0})

    mislabelled = db.scalars(
        select(AttendancePoint).where(
            AttendancePoint.point_type == PointType.WHOLE_DAY_ABSENCE_UNADVISED,
            or_(
                AttendancePoint.eligible_for_gbro.is_(True),
                AttendancePoint.expiration_type != ExpirationType.NONE,
                AttendancePoint.gbro_expires_at.is_not(None),
            ),
        )
    ).all()
    by_user: dict[int, list[AttendancePoint]] = defaultdict(list)
    for point in mislabelled:
        by_user[point.user_id].append(point)
    for user_id, points in sorted(by_user.items()):
        with atomic(db, operation="fix_gbro_eligibility", user_id=user_id):
            lock_user_points(db, user_id)
            for point in points:
                if revoke_gbro_eligibility(point):
                    result.details["eligibility_fixed"] += 1

    user_ids = list(
        db.scalars(
            select(AttendancePoint.user_id)
            .where(AttendancePoint.is_expired.is_(False))
            .distinct()
            .order_by(AttendancePoint.user_id)
        ).all()
    )
    _cascade_users(db, user_ids, operation="fix_gbro_dates", today=today, result=result)
    return _log_result(result)


def reset_expired(
    db: Session,
    *,
    actor: PointActor,
    user_ids: list[int] | None = None,
    user_id: int | None = None,
) -> MaintenanceResult:
    """Un-expire points and restore their creation-time expiration fields.

    ``user_id`` wins over ``user_ids``; with neither, every user is reset. No
    cascade runs here, so a later recalculation re-expires whatever is still due.
    """
    actor.require(Capability.MAINTENANCE, "reset expired points")
    result = MaintenanceResult(operation="reset_expired")

    if user_id is not None:
        target_users = [user_id]
    elif user_ids:
        target_users = sorted(set(user_ids))
    else:
        target_users = list(
            db.scalars(
                select(AttendancePoint.user_id)
                .where(AttendancePoint.is_expired.is_(True))
                .distinct()
                .order_by(AttendancePoint.user_id)
            ).all()
        )

    for target_user in target_users:
        with atomic(db, operation="reset_expired", user_id=target_user):
            lock_user_points(db, target_user)
            points = db.scalars(
                select(AttendancePoint).where(
                    AttendancePoint.user_id == target_user,
                    AttendancePoint.is_expired.is_(True),
                )
            ).all()
            for point in points:
                point.is_expired = False
                point.expired_at = None
                point.expires_at = sro_expiration_date(point.shift_date, point.point_type)
                point.expiration_type = initial_expiration_type(point.point_type)
            restore_initial_gbro_dates(points)
        result.affected += len(points)
        result.users_processed += 1

    return _log_result(result)


def regenerate_points(
    db: Session,
    *,
    actor: PointActor,
    date_from: date,
    date_to: date,
    user_id: int | None = None,
    create_point: CreatePoint = create_from_attendance,
    today: date | None = None,
) -> MaintenanceResult:
    """Port verified attendance in the range that has no point yet."""
    actor.require(Capability.MAINTENANCE, "regenerate points")
    validate_date_range(date_from, date_to)
    today = today or local_today()
    result = MaintenanceResult(operation="regenerate_points", details={"created": 0, "skipped": 0})

    grouped = pending_attendance_ids(db, date_from=date_from, date_to=date_to, user_id=user_id)
    for owner_id, attendance_ids in grouped.items():
        with atomic(db, operation="regenerate_points", user_id=owner_id):
            for attendance_id in attendance_ids:
                if create_point(db, attendance_id, today=today) is None:
                    result.details["skipped"] += 1
                else:
                    result.details["created"] += 1
                    result.affected += 1
        result.users_processed += 1

    return _log_result(result)


def cleanup(db: Session, *, actor: PointActor, today: date | None = None) -> dict[str, MaintenanceResult]:
    return {
        "remove_duplicates": remove_duplicates(db, actor=actor, today=today),
        "expire_all_pending": expire_all_pending(db, scope="both", actor=actor, today=today),
    }


def management_stats(db: Session, *, today: date | None = None) -> dict[str, Any]:
    today = today or local_today()
    point = AttendancePoint

    def count(*conditions: Any) -> int:
        return int(db.scalar(select(func.count(point.id)).where(*conditions)) or 0)

    expired_by_type = {
        kind.value: amount
        for kind, amount in db.execute(
            select(point.expiration_type, func.count(point.id))
            .where(point.is_expired.is_(True))
            .group_by(point.expiration_type)
        ).all()
    }
    duplicates = sum(
        int(extra)
        for extra in db.scalars(
            select(func.count(point.id) - 1)
            .where(point.attendance_id.is_not(None))
            .group_by(point.attendance_id)
            .having(func.count(point.id) > 1)
        ).all()
    )
    missing_points = int(
        db.scalar(
            select(func.count(Attendance.id))
            .outerjoin(AttendancePoint, AttendancePoint.attendance_id == Attendance.id)
            .where(
                Attendance.admin_verified.is_(True),
                Attendance.status.in_(sorted(VIOLATING_STATUSES)),
                AttendancePoint.id.is_(None),
            )
        )
        or 0
    )

    return {
        "total": count(),
        "active": count(point.is_expired.is_(False), point.is_excused.is_(False)),
        "excused": count(point.is_excused.is_(True)),
        "expired": count(point.is_expired.is_(True)),
        "expired_by_type": expired_by_type,
        "suppressed_gbro": count(
            point.is_expired.is_(False),
            point.is_excused.is_(False),
            point.eligible_for_gbro.is_(True),
            point.gbro_expires_at.is_(None),
        ),
        "duplicates": duplicates,
        "pending_sro": count(point.is_expired.is_(False), point.expires_at <= today),
        "pending_gbro": count(
            point.is_expired.is_(False),
            point.is_excused.is_(False),
            point.eligible_for_gbro.is_(True),
            point.gbro_expires_at.is_not(None),
            point.gbro_expires_at <= today,
        ),
        "missing_points": missing_points,
        "eligibility_violations": count(
            point.point_type == PointType.WHOLE_DAY_ABSENCE_UNADVISED,
            or_(point.eligible_for_gbro.is_(True), point.gbro_expires_at.is_not(None)),
        ),
    }
