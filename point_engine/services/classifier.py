from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping

from point_engine.models import PointType
from point_engine.settings import get_settings

POINT_VALUES: dict[PointType, Decimal] = {
    PointType.WHOLE_DAY_ABSENCE_UNADVISED: Decimal("1.00"),
    PointType.WHOLE_DAY_ABSENCE_ADVISED: Decimal("1.00"),
    PointType.HALF_DAY_ABSENCE: Decimal("0.50"),
    PointType.UNDERTIME_SEVERE: Decimal("0.50"),
    PointType.UNDERTIME: Decimal("0.25"),
    PointType.TARDY: Decimal("0.25"),
}

# Attendance statuses that never produce a point.
NON_VIOLATING_STATUSES = frozenset(
    {
        "on_time",
        "failed_bio_in",
        "failed_bio_out",
        "present_no_bio",
        "non_work_day",
        "on_leave",
        "needs_review",
    }
)

WHOLE_DAY_STATUSES = frozenset({"ncns", "advised_absence"})

_STATUS_POINT_TYPES: dict[str, PointType] = {
    "tardy": PointType.TARDY,
    "undertime": PointType.UNDERTIME,
    "undertime_more_than_hour": PointType.UNDERTIME_SEVERE,
    "half_day_absence": PointType.HALF_DAY_ABSENCE,
}

VIOLATING_STATUSES = frozenset(_STATUS_POINT_TYPES) | WHOLE_DAY_STATUSES


@dataclass(frozen=True, slots=True)
class AttendanceOutcome:
    status: str
    is_advised: bool = False
    tardy_minutes: int | None = None
    undertime_minutes: int | None = None


@dataclass(frozen=True, slots=True)
class Classification:
    point_type: PointType
    points: Decimal


@dataclass(frozen=True, slots=True)
class ClassificationRules:
    undertime_severe_after_minutes: int = 60
    point_values: Mapping[PointType, Decimal] = field(default_factory=lambda: dict(POINT_VALUES))

    @classmethod
    def from_settings(cls) -> ClassificationRules:
        return cls(undertime_severe_after_minutes=get_settings().undertime_severe_after_minutes)

    def weight(self, point_type: PointType) -> Decimal:
        return self.point_values.get(point_type, Decimal("0.00"))


def normalize_status(raw: str | None) -> str:
    return (raw or "").strip().lower()


def classify(outcome: AttendanceOutcome, rules: ClassificationRules | None = None) -> Classification | None:
    """Map an attendance outcome to a point type and weight.

    Total over any status string: unknown and non-violating statuses yield None.
    """
    rules = rules or ClassificationRules.from_settings()
    status = normalize_status(outcome.status)

    if status in WHOLE_DAY_STATUSES:
        advised = outcome.is_advised or status == "advised_absence"
        point_type = (
            PointType.WHOLE_DAY_ABSENCE_ADVISED if advised else PointType.WHOLE_DAY_ABSENCE_UNADVISED
        )
        return Classification(point_type=point_type, points=rules.weight(point_type))

    point_type = _STATUS_POINT_TYPES.get(status)
    if point_type is None:
        return None

    if point_type is PointType.UNDERTIME and (outcome.undertime_minutes or 0) > rules.undertime_severe_after_minutes:
        point_type = PointType.UNDERTIME_SEVERE
    return Classification(point_type=point_type, points=rules.weight(point_type))


def classify_manual(point_type: PointType, rules: ClassificationRules | None = None) -> Classification:
    rules = rules or ClassificationRules.from_settings()
    return Classification(point_type=point_type, points=rules.weight(point_type))


def is_whole_day_absence(point_type: PointType) -> bool:
    return point_type in (PointType.WHOLE_DAY_ABSENCE_ADVISED, PointType.WHOLE_DAY_ABSENCE_UNADVISED)


def is_gbro_eligible(point_type: PointType) -> bool:
    return point_type is not PointType.WHOLE_DAY_ABSENCE_UNADVISED
