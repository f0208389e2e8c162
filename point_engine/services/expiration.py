from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime

from point_engine.models import ExpirationType, PointType
from point_engine.services.classifier import is_gbro_eligible
from point_engine.settings import get_attendance_timezone, get_settings


def local_today() -> date:
    return datetime.now(get_attendance_timezone()).date()


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return date(year, month, day)


def sro_expiration_date(shift_date: date, point_type: PointType) -> date:
    settings = get_settings()
    if point_type is PointType.WHOLE_DAY_ABSENCE_UNADVISED:
        return add_months(shift_date, settings.sro_ncns_months)
    return add_months(shift_date, settings.sro_standard_months)


def initial_expiration_type(point_type: PointType) -> ExpirationType:
    if is_gbro_eligible(point_type):
        return ExpirationType.SRO
    return ExpirationType.NONE
