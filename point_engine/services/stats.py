from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from point_engine.errors import NotFoundError
from point_engine.models import AttendancePoint, PointType, User
from point_engine.services.gbro import calculate_gbro_stats
from point_engine.services.queries import PointFilters, build_points_query
from point_engine.settings import get_settings

ZERO = Decimal("0")


def _as_float(value: Decimal | float | int | None) -> float:
    return round(float(value or 0), 2)


def is_active(point: AttendancePoint) -> bool:
    return not point.is_excused and not point.is_expired


def calculate_totals(points: Iterable[AttendancePoint]) -> dict[str, Any]:
    """Roll up weights by state. Only active points count toward ``active_points``."""
    total = active = excused = expired = ZERO
    active_count = excused_count = expired_count = 0
    by_type: dict[str, Decimal] = {point_type.value: ZERO for point_type in PointType}
    count_by_type: Counter[str] = Counter({point_type.value: 0 for point_type in PointType})

    for point in points:
        weight = Decimal(point.points or 0)
        total += weight
        if point.is_excused:
            excused += weight
            excused_count += 1
        elif point.is_expired:
            expired += weight
            expired_count += 1
        else:
            active += weight
            active_count += 1
            by_type[point.point_type.value] += weight
            count_by_type[point.point_type.value] += 1

    return {
        "total_points": _as_float(total),
        "active_points": _as_float(active),
        "excused_points": _as_float(excused),
        "expired_points": _as_float(expired),
        "active_count": active_count,
        "excused_count": excused_count,
        "expired_count": expired_count,
        "by_type": {key: _as_float(value) for key, value in by_type.items()},
        "count_by_type": dict(count_by_type),
    }


def get_high_points_employees(
    db: Session,
    *,
    threshold: float | None = None,
    scope_user_id: int | None = None,
) -> list[dict[str, Any]]:
    threshold = get_settings().high_points_threshold if threshold is None else threshold
    total_points = func.sum(AttendancePoint.points)
    stmt = (
        select(User.id, User.full_name, total_points, func.count(AttendancePoint.id))
        .join(AttendancePoint, AttendancePoint.user_id == User.id)
        .where(AttendancePoint.is_expired.is_(False), AttendancePoint.is_excused.is_(False))
        .group_by(User.id, User.full_name)
        .having(total_points >= threshold)
        .order_by(total_points.desc(), User.id.asc())
    )
    if scope_user_id is not None:
        stmt = stmt.where(User.id == scope_user_id)
    return [
        {
            "user_id": user_id,
            "full_name": full_name,
            "total_points": _as_float(points_sum),
            "violations_count": int(violations),
        }
        for user_id, full_name, points_sum, violations in db.execute(stmt).all()
    ]


def calculate_stats(
    db: Session,
    filters: PointFilters,
    *,
    scope_user_id: int | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    points = db.scalars(build_points_query(filters, scope_user_id=scope_user_id, today=today)).all()
    stats = calculate_totals(points)
    stats["high_points_employees"] = get_high_points_employees(
        db,
        scope_user_id=scope_user_id if scope_user_id is not None else filters.user_id,
    )
    return stats


def get_user_statistics(db: Session, user_id: int, *, today: date | None = None) -> dict[str, Any]:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)

    points = db.scalars(select(AttendancePoint).where(AttendancePoint.user_id == user_id)).all()
    totals = calculate_totals(points)

    by_expiration_type: dict[str, int] = defaultdict(int)
    for point in points:
        if point.is_expired:
            by_expiration_type[point.expiration_type.value] += 1

    return {
        "user_id": user.id,
        "full_name": user.full_name,
        "total_active_points": totals["active_points"],
        "active_count": totals["active_count"],
        "excused_count": totals["excused_count"],
        "expired_count": totals["expired_count"],
        "by_type": totals["by_type"],
        "by_expiration_type": dict(by_expiration_type),
        "gbro": calculate_gbro_stats(db, user_id, today=today),
    }
