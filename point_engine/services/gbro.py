"""Behaviour-based ("good behaviour roll off") expiration of attendance points.

This module is the only writer of ``AttendancePoint.gbro_expires_at``.

For one user, take the GBRO-eligible points that are neither excused nor
expired, ordered by (shift_date, id). Each point opens a window of
``gbro_window_days`` from its shift date. If the next point in that order falls
inside the window the point's GBRO date is suppressed (null); otherwise it is
the window end. A point lapses on its GBRO date, or on its fixed SRO date when
that comes first or when its GBRO date is suppressed. Once a point lapses it
leaves the ordered set, which can release the point before it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from point_engine.db import atomic
from point_engine.errors import NotFoundError
from point_engine.models import AttendancePoint, ExpirationType, User
from point_engine.security import Capability, PointActor
from point_engine.services.expiration import local_today
from point_engine.settings import get_settings

logger = logging.getLogger("point_engine.gbro")


@dataclass(frozen=True, slots=True)
class GbroCandidate:
    point_id: int
    shift_date: date
    expires_at: date


@dataclass(frozen=True, slots=True)
class GbroState:
    point_id: int
    gbro_expires_at: date | None
    is_expired: bool = False
    expiration_type: ExpirationType = ExpirationType.SRO
    expired_at: date | None = None


@dataclass(slots=True)
class CascadeResult:
    user_id: int
    evaluated: int = 0
    updated: int = 0
    expired: int = 0
    suppressed: int = 0
    full_pass: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "evaluated": self.evaluated,
            "updated": self.updated,
            "expired": self.expired,
            "suppressed": self.suppressed,
            "full_pass": self.full_pass,
        }


def gbro_window() -> timedelta:
    return timedelta(days=get_settings().gbro_window_days)


def initial_gbro_expires_at(shift_date: date, eligible: bool) -> date | None:
    if not eligible:
        return None
    return shift_date + gbro_window()


def restore_initial_gbro_dates(points: Iterable[AttendancePoint]) -> None:
    """Put back the creation-time GBRO date; used when expiration is reset by hand."""
    for point in points:
        point.gbro_expires_at = initial_gbro_expires_at(
            point.shift_date,
            point.eligible_for_gbro and not point.is_excused,
        )


def revoke_gbro_eligibility(point: AttendancePoint) -> bool:
    """Take a point out of GBRO for good, expired or not. Returns whether anything changed."""
    changed = (
        point.eligible_for_gbro
        or point.gbro_expires_at is not None
        or point.expiration_type != ExpirationType.NONE
    )
    point.eligible_for_gbro = False
    point.gbro_expires_at = None
    point.expiration_type = ExpirationType.NONE
    return changed


def _window_ends(ordered: Sequence[GbroCandidate], window: timedelta) -> list[date | None]:
    ends: list[date | None] = []
    for index, candidate in enumerate(ordered):
        window_end = candidate.shift_date + window
        following = ordered[index + 1] if index + 1 < len(ordered) else None
        if following is not None and following.shift_date < window_end:
            ends.append(None)
        else:
            ends.append(window_end)
    return ends


def compute_gbro_timeline(
    candidates: Iterable[GbroCandidate],
    *,
    today: date,
    window: timedelta | None = None,
) -> dict[int, GbroState]:
    """Replay lapses in date order up to ``today`` and return each point's final state.

    Pure function. Feeding the surviving candidates back in yields the same
    states, which is what makes a repeated cascade a no-op.
    """
    window = window or gbro_window()
    remaining = sorted(candidates, key=lambda item: (item.shift_date, item.point_id))
    states: dict[int, GbroState] = {}
    clock: date | None = None

    while remaining:
        ends = _window_ends(remaining, window)
        lapses: list[tuple[date, ExpirationType]] = []
        for candidate, gbro_end in zip(remaining, ends):
            if gbro_end is not None and gbro_end <= candidate.expires_at:
                lapse_on, kind = gbro_end, ExpirationType.GBRO
            else:
                lapse_on, kind = candidate.expires_at, ExpirationType.SRO
            # A point released by an earlier lapse cannot lapse before that moment.
            if clock is not None and lapse_on < clock:
                lapse_on = clock
            lapses.append((lapse_on, kind))

        next_lapse = min(lapse_on for lapse_on, _ in lapses)
        if next_lapse > today:
            for candidate, gbro_end in zip(remaining, ends):
                states[candidate.point_id] = GbroState(point_id=candidate.point_id, gbro_expires_at=gbro_end)
            break

        survivors: list[GbroCandidate] = []
        for candidate, gbro_end, (lapse_on, kind) in zip(remaining, ends, lapses):
            if lapse_on == next_lapse:
                states[candidate.point_id] = GbroState(
                    point_id=candidate.point_id,
                    gbro_expires_at=gbro_end,
                    is_expired=True,
                    expiration_type=kind,
                    expired_at=lapse_on,
                )
            else:
                survivors.append(candidate)
        remaining = survivors
        clock = next_lapse

    return states


def lock_user_points(db: Session, user_id: int) -> None:
    """Serialize every writer of one user's point set for the rest of the transaction."""
    locked_id = db.scalar(select(User.id).where(User.id == user_id).with_for_update())
    if locked_id is None:
        raise NotFoundError("User", user_id)


def _is_candidate(point: AttendancePoint) -> bool:
    return point.eligible_for_gbro and not point.is_excused and not point.is_expired


def _to_candidate(point: AttendancePoint) -> GbroCandidate:
    return GbroCandidate(point_id=point.id, shift_date=point.shift_date, expires_at=point.expires_at)


def _apply_states(
    points: Sequence[AttendancePoint],
    states: dict[int, GbroState],
    result: CascadeResult,
    *,
    today: date,
) -> None:
    for point in points:
        state = states.get(point.id)
        target_gbro = state.gbro_expires_at if state is not None else None
        changed = False

        if point.gbro_expires_at != target_gbro:
            point.gbro_expires_at = target_gbro
            changed = True

        if state is None and not point.eligible_for_gbro and not point.is_excused and point.expires_at <= today:
            # Ineligible points only ever lapse on their fixed date. Excused rows are
            # left for expire_all_pending.
            point.is_expired = True
            point.expired_at = point.expires_at
            result.expired += 1
            changed = True
        elif state is not None and state.is_expired:
            point.is_expired = True
            point.expiration_type = state.expiration_type
            point.expired_at = state.expired_at
            result.expired += 1
            changed = True
        elif state is not None and target_gbro is None:
            result.suppressed += 1

        if changed:
            result.updated += 1


def _load_open_points(db: Session, user_id: int, *, shift_after: date | None = None) -> list[AttendancePoint]:
    stmt = (
        select(AttendancePoint)
        .where(
            AttendancePoint.user_id == user_id,
            AttendancePoint.is_expired.is_(False),
        )
        .order_by(AttendancePoint.shift_date.asc(), AttendancePoint.id.asc())
    )
    if shift_after is not None:
        stmt = stmt.where(AttendancePoint.shift_date > shift_after)
    return list(db.scalars(stmt).all())


def cascade_recalculate_gbro(db: Session, user_id: int, *, today: date | None = None) -> CascadeResult:
    """Recompute GBRO state for all of a user's open points.

    Runs inside the caller's transaction and only flushes; the caller commits
    or rolls back together with whatever mutation triggered the cascade.
    """
    today = today or local_today()
    lock_user_points(db, user_id)
    db.flush()

    points = _load_open_points(db, user_id)
    candidates = [_to_candidate(point) for point in points if _is_candidate(point)]
    states = compute_gbro_timeline(candidates, today=today)

    result = CascadeResult(user_id=user_id, evaluated=len(candidates))
    _apply_states(points, states, result, today=today)
    db.flush()

    logger.info("gbro_cascade_complete", extra={"operation": "cascade_recalculate_gbro", **result.to_dict()})
    return result


def update_user_gbro_expiration_dates(
    db: Session,
    user_id: int,
    new_point_date: date,
    *,
    today: date | None = None,
) -> CascadeResult:
    """Fold one newly inserted point into an already consistent timeline.

    Only points whose window can contain ``new_point_date`` (and everything
    after them) are reloaded. Whenever the shortcut could diverge from a full
    cascade, i.e. some point would lapse, the full cascade runs instead.
    """
    today = today or local_today()
    window = gbro_window()
    cutoff = new_point_date - window
    lock_user_points(db, user_id)
    db.flush()

    due_before_cutoff = db.scalar(
        select(func.count(AttendancePoint.id)).where(
            AttendancePoint.user_id == user_id,
            AttendancePoint.is_excused.is_(False),
            AttendancePoint.is_expired.is_(False),
            AttendancePoint.shift_date <= cutoff,
            or_(
                AttendancePoint.expires_at <= today,
                and_(
                    AttendancePoint.gbro_expires_at.is_not(None),
                    AttendancePoint.gbro_expires_at <= today,
                ),
            ),
        )
    )
    if due_before_cutoff:
        return cascade_recalculate_gbro(db, user_id, today=today)

    points = _load_open_points(db, user_id, shift_after=cutoff)
    candidates = [_to_candidate(point) for point in points if _is_candidate(point)]
    states = compute_gbro_timeline(candidates, today=today, window=window)
    if any(state.is_expired for state in states.values()):
        return cascade_recalculate_gbro(db, user_id, today=today)

    result = CascadeResult(user_id=user_id, evaluated=len(candidates), full_pass=False)
    _apply_states(points, states, result, today=today)
    db.flush()
    return result


def recalculate_gbro(
    db: Session,
    user_id: int,
    *,
    actor: PointActor,
    today: date | None = None,
) -> CascadeResult:
    actor.require(Capability.RECALCULATE, "recalculate GBRO")
    with atomic(db, operation="recalculate_gbro", user_id=user_id):
        result = cascade_recalculate_gbro(db, user_id, today=today)
    return result


def calculate_gbro_stats(db: Session, user_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or local_today()
    if db.get(User, user_id) is None:
        raise NotFoundError("User", user_id)

    open_points = list(
        db.scalars(
            select(AttendancePoint).where(
                AttendancePoint.user_id == user_id,
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.is_excused.is_(False),
            )
        ).all()
    )
    active_eligible = [point for point in open_points if point.eligible_for_gbro]
    scheduled = sorted(point.gbro_expires_at for point in active_eligible if point.gbro_expires_at is not None)

    expired_via_gbro = db.scalar(
        select(func.count(AttendancePoint.id)).where(
            AttendancePoint.user_id == user_id,
            AttendancePoint.is_expired.is_(True),
            AttendancePoint.expiration_type == ExpirationType.GBRO,
        )
    ) or 0
    last_gbro_date = db.scalar(
        select(func.max(AttendancePoint.expired_at)).where(
            AttendancePoint.user_id == user_id,
            AttendancePoint.expiration_type == ExpirationType.GBRO,
        )
    )

    last_violation_date = max((point.shift_date for point in open_points), default=None)
    reference_date = last_violation_date
    reference_type = "violation" if last_violation_date else None
    if last_gbro_date is not None and (reference_date is None or last_gbro_date > reference_date):
        reference_date = last_gbro_date
        reference_type = "gbro"

    next_gbro = scheduled[0] if scheduled else None
    return {
        "user_id": user_id,
        "active_eligible_count": len(active_eligible),
        "active_eligible_points": float(sum((point.points for point in active_eligible), start=0)),
        "suppressed_count": sum(1 for point in active_eligible if point.gbro_expires_at is None),
        "expired_via_gbro_count": int(expired_via_gbro),
        "next_gbro_expires_at": next_gbro,
        "days_until_gbro": max(0, (next_gbro - today).days) if next_gbro else None,
        "last_violation_date": last_violation_date,
        "last_gbro_date": last_gbro_date,
        "gbro_reference_date": reference_date,
        "gbro_reference_type": reference_type,
        "days_clean": (today - reference_date).days if reference_date else 0,
        "is_gbro_ready": next_gbro is not None and next_gbro <= today,
    }
