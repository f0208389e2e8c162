from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

from sqlalchemy import Select, select
from sqlalchemy.orm import Session, joinedload

from point_engine.models import AttendancePoint, PointType
from point_engine.services.expiration import local_today
from point_engine.settings import get_settings

PointStatusFilter = Literal["active", "excused", "expired"]

MAX_PAGE_SIZE = 500


@dataclass(frozen=True, slots=True)
class PointFilters:
    user_id: int | None = None
    point_type: PointType | None = None
    status: PointStatusFilter | None = None
    date_from: date | None = None
    date_to: date | None = None
    expiring_soon: bool = False
    eligible_for_gbro: bool | None = None


def build_points_query(
    filters: PointFilters,
    *,
    scope_user_id: int | None = None,
    today: date | None = None,
) -> Select[tuple[AttendancePoint]]:
    stmt = select(AttendancePoint)

    user_id = scope_user_id if scope_user_id is not None else filters.user_id
    if user_id is not None:
        stmt = stmt.where(AttendancePoint.user_id == user_id)
    if filters.point_type is not None:
        stmt = stmt.where(AttendancePoint.point_type == filters.point_type)
    if filters.status == "active":
        stmt = stmt.where(AttendancePoint.is_expired.is_(False), AttendancePoint.is_excused.is_(False))
    elif filters.status == "excused":
        stmt = stmt.where(AttendancePoint.is_excused.is_(True))
    elif filters.status == "expired":
        stmt = stmt.where(AttendancePoint.is_expired.is_(True))
    if filters.date_from is not None:
        stmt = stmt.where(AttendancePoint.shift_date >= filters.date_from)
    if filters.date_to is not None:
        stmt = stmt.where(AttendancePoint.shift_date <= filters.date_to)
    if filters.eligible_for_gbro is not None:
        stmt = stmt.where(AttendancePoint.eligible_for_gbro.is_(filters.eligible_for_gbro))
    if filters.expiring_soon:
        today = today or local_today()
        horizon = today + timedelta(days=get_settings().expiring_soon_days)
        stmt = stmt.where(
            AttendancePoint.is_expired.is_(False),
            AttendancePoint.is_excused.is_(False),
            AttendancePoint.expires_at >= today,
            AttendancePoint.expires_at <= horizon,
        )
    return stmt


def query_points(
    db: Session,
    filters: PointFilters,
    *,
    scope_user_id: int | None = None,
    limit: int | None = None,
    offset: int = 0,
    today: date | None = None,
) -> list[AttendancePoint]:
    stmt = (
        build_points_query(filters, scope_user_id=scope_user_id, today=today)
        .options(joinedload(AttendancePoint.user))
        .order_by(AttendancePoint.shift_date.desc(), AttendancePoint.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(min(limit, MAX_PAGE_SIZE)).offset(offset)
    return list(db.scalars(stmt).unique().all())
