from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from point_engine.models import ExpirationType, PointType


class AttendancePointRead(BaseModel):
    id: int
    user_id: int
    attendance_id: int | None = None
    shift_date: date
    point_type: PointType
    points: float
    status: str | None = None
    is_advised: bool
    is_manual: bool
    notes: str | None = None
    is_excused: bool
    excused_by: int | None = None
    excused_at: datetime | None = None
    excuse_reason: str | None = None
    expires_at: date
    expiration_type: ExpirationType
    is_expired: bool
    expired_at: date | None = None
    eligible_for_gbro: bool
    gbro_expires_at: date | None = None
    tardy_minutes: int | None = None
    undertime_minutes: int | None = None
    violation_details: str | None = None
    created_by: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ManualPointCreateRequest(BaseModel):
    user_id: int = Field(ge=1)
    shift_date: date
    point_type: PointType
    status: str | None = Field(default=None, max_length=50)
    is_advised: bool | None = None
    notes: str | None = Field(default=None, max_length=2000)
    violation_details: str | None = Field(default=None, max_length=2000)
    tardy_minutes: int | None = Field(default=None, ge=0)
    undertime_minutes: int | None = Field(default=None, ge=0)


class ManualPointUpdateRequest(BaseModel):
    shift_date: date
    point_type: PointType
    status: str | None = Field(default=None, max_length=50)
    is_advised: bool | None = None
    notes: str | None = Field(default=None, max_length=2000)
    violation_details: str | None = Field(default=None, max_length=2000)
    tardy_minutes: int | None = Field(default=None, ge=0)
    undertime_minutes: int | None = Field(default=None, ge=0)


class ExcuseRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=2000)


class DateRangeRequest(BaseModel):
    date_from: date
    date_to: date


class RegenerateRequest(DateRangeRequest):
    user_id: int | None = Field(default=None, ge=1)


class ExpirePendingRequest(BaseModel):
    scope: Literal["sro", "gbro", "both"] = "both"


class ResetExpiredRequest(BaseModel):
    user_ids: list[int] | None = None
    user_id: int | None = Field(default=None, ge=1)


class RescanResponse(BaseModel):
    date_from: date
    date_to: date
    total_records: int
    created: int
    skipped: int
    users_affected: int


class CascadeResultRead(BaseModel):
    user_id: int
    evaluated: int
    updated: int
    expired: int
    suppressed: int
    full_pass: bool


class GbroStatsRead(BaseModel):
    user_id: int
    active_eligible_count: int
    active_eligible_points: float
    suppressed_count: int
    expired_via_gbro_count: int
    next_gbro_expires_at: date | None = None
    days_until_gbro: int | None = None
    last_violation_date: date | None = None
    last_gbro_date: date | None = None
    gbro_reference_date: date | None = None
    gbro_reference_type: Literal["violation", "gbro"] | None = None
    days_clean: int
    is_gbro_ready: bool


class PointTotalsRead(BaseModel):
    total_points: float
    active_points: float
    excused_points: float
    expired_points: float
    active_count: int
    excused_count: int
    expired_count: int
    by_type: dict[str, float]
    count_by_type: dict[str, int]


class HighPointsEmployeeRead(BaseModel):
    user_id: int
    full_name: str
    total_points: float
    violations_count: int


class PointStatsRead(PointTotalsRead):
    high_points_employees: list[HighPointsEmployeeRead] = Field(default_factory=list)


class UserPointStatisticsRead(BaseModel):
    user_id: int
    full_name: str
    total_active_points: float
    active_count: int
    excused_count: int
    expired_count: int
    by_type: dict[str, float]
    by_expiration_type: dict[str, int]
    gbro: GbroStatsRead


class MaintenanceResultRead(BaseModel):
    operation: str
    affected: int
    users_processed: int = 0
    details: dict[str, int] = Field(default_factory=dict)


class ManagementStatsRead(BaseModel):
    total: int
    active: int
    excused: int
    expired: int
    expired_by_type: dict[str, int]
    suppressed_gbro: int
    duplicates: int
    pending_sro: int
    pending_gbro: int
    missing_points: int
    eligibility_violations: int


class PointImportResponse(BaseModel):
    created: bool
    point: AttendancePointRead | None = None


class DeleteResponse(BaseModel):
    ok: bool
    id: int
    user_id: int


class CleanupResponse(BaseModel):
    remove_duplicates: MaintenanceResultRead
    expire_all_pending: MaintenanceResultRead
