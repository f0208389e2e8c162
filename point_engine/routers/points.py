from datetime import date, datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from point_engine.audit import audit_request
from point_engine.db import get_db
from point_engine.models import PointType
from point_engine.schemas import (
    AttendancePointRead,
    CascadeResultRead,
    DateRangeRequest,
    DeleteResponse,
    ExcuseRequest,
    GbroStatsRead,
    ManualPointCreateRequest,
    ManualPointUpdateRequest,
    PointImportResponse,
    PointStatsRead,
    RescanResponse,
    UserPointStatisticsRead,
)
from point_engine.security import Capability, PointActor, require_actor
from point_engine.services.exports import export_points_xlsx
from point_engine.services.gbro import calculate_gbro_stats, recalculate_gbro
from point_engine.services.points import (
    create_manual,
    delete_manual,
    excuse_point,
    get_point,
    import_attendance_point,
    rescan_attendance,
    unexcuse_point,
    update_manual,
    validate_date_range,
)
from point_engine.services.queries import PointFilters, query_points
from point_engine.services.stats import calculate_stats, get_user_statistics

router = APIRouter(tags=["attendance-points"])
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def point_filters(
    user_id: int | None = Query(default=None, ge=1),
    point_type: PointType | None = Query(default=None),
    status_filter: Literal["active", "excused", "expired"] | None = Query(default=None, alias="status"),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    expiring_soon: bool = Query(default=False),
    eligible_for_gbro: bool | None = Query(default=None),
) -> PointFilters:
    if date_from is not None and date_to is not None:
        validate_date_range(date_from, date_to)
    return PointFilters(
        user_id=user_id,
        point_type=point_type,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        expiring_soon=expiring_soon,
        eligible_for_gbro=eligible_for_gbro,
    )


@router.get("/api/attendance-points", response_model=list[AttendancePointRead])
def list_points(
    filters: PointFilters = Depends(point_filters),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[AttendancePointRead]:
    actor.require(Capability.VIEW, "view attendance points")
    points = query_points(
        db,
        filters,
        scope_user_id=actor.scope_user_id(filters.user_id),
        limit=limit,
        offset=offset,
    )
    return [AttendancePointRead.model_validate(point) for point in points]


@router.get("/api/attendance-points/stats", response_model=PointStatsRead)
def points_stats(
    filters: PointFilters = Depends(point_filters),
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PointStatsRead:
    actor.require(Capability.VIEW, "view attendance point statistics")
    stats = calculate_stats(db, filters, scope_user_id=actor.scope_user_id(filters.user_id))
    return PointStatsRead(**stats)


@router.get("/api/attendance-points/export.xlsx")
def export_points(
    request: Request,
    filters: PointFilters = Depends(point_filters),
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> Response:
    actor.require(Capability.EXPORT, "export attendance points")
    payload = export_points_xlsx(db, filters, scope_user_id=actor.scope_user_id(filters.user_id))
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINTS_EXPORT_XLSX",
        entity_type="export",
        entity_id=None,
        details={
            "user_id": filters.user_id,
            "point_type": filters.point_type.value if filters.point_type else None,
            "status": filters.status,
            "date_from": filters.date_from.isoformat() if filters.date_from else None,
            "date_to": filters.date_to.isoformat() if filters.date_to else None,
        },
    )
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="attendance-points-{stamp}.xlsx"'},
    )


@router.post("/api/attendance-points/rescan", response_model=RescanResponse)
def rescan_points(
    payload: DateRangeRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> RescanResponse:
    result = rescan_attendance(db, date_from=payload.date_from, date_to=payload.date_to, actor=actor)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINTS_RESCAN",
        entity_type="attendance_point",
        entity_id=None,
        details={
            "date_from": payload.date_from.isoformat(),
            "date_to": payload.date_to.isoformat(),
            "created": result.created,
            "skipped": result.skipped,
        },
    )
    return RescanResponse(**result.to_dict())


@router.post(
    "/api/attendance-points",
    response_model=AttendancePointRead,
    status_code=status.HTTP_201_CREATED,
)
def create_manual_point(
    payload: ManualPointCreateRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendancePointRead:
    point = create_manual(db, payload, actor=actor)
    response = AttendancePointRead.model_validate(point)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINT_MANUAL_CREATED",
        entity_type="attendance_point",
        entity_id=str(point.id),
        details={"user_id": point.user_id, "point_type": point.point_type.value, "shift_date": point.shift_date.isoformat()},
    )
    return response


@router.get("/api/attendance-points/{point_id}", response_model=AttendancePointRead)
def get_point_detail(
    point_id: int,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendancePointRead:
    point = get_point(db, point_id)
    actor.require_view_of(point.user_id)
    return AttendancePointRead.model_validate(point)


@router.put("/api/attendance-points/{point_id}", response_model=AttendancePointRead)
def update_manual_point(
    point_id: int,
    payload: ManualPointUpdateRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendancePointRead:
    point = update_manual(db, point_id, payload, actor=actor)
    response = AttendancePointRead.model_validate(point)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINT_MANUAL_UPDATED",
        entity_type="attendance_point",
        entity_id=str(point.id),
        details={"user_id": point.user_id, "point_type": point.point_type.value, "shift_date": point.shift_date.isoformat()},
    )
    return response


@router.delete("/api/attendance-points/{point_id}", response_model=DeleteResponse)
def delete_manual_point(
    point_id: int,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> DeleteResponse:
    user_id = delete_manual(db, point_id, actor=actor)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINT_MANUAL_DELETED",
        entity_type="attendance_point",
        entity_id=str(point_id),
        details={"user_id": user_id},
    )
    return DeleteResponse(ok=True, id=point_id, user_id=user_id)


@router.post("/api/attendance-points/{point_id}/excuse", response_model=AttendancePointRead)
def excuse(
    point_id: int,
    payload: ExcuseRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendancePointRead:
    point = excuse_point(db, point_id, reason=payload.reason, notes=payload.notes, actor=actor)
    response = AttendancePointRead.model_validate(point)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINT_EXCUSED",
        entity_type="attendance_point",
        entity_id=str(point.id),
        details={"user_id": point.user_id, "reason": point.excuse_reason},
    )
    return response


@router.post("/api/attendance-points/{point_id}/unexcuse", response_model=AttendancePointRead)
def unexcuse(
    point_id: int,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendancePointRead:
    point = unexcuse_point(db, point_id, actor=actor)
    response = AttendancePointRead.model_validate(point)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINT_UNEXCUSED",
        entity_type="attendance_point",
        entity_id=str(point.id),
        details={"user_id": point.user_id},
    )
    return response


@router.post("/api/attendances/{attendance_id}/attendance-point", response_model=PointImportResponse)
def import_point(
    attendance_id: int,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PointImportResponse:
    point = import_attendance_point(db, attendance_id, actor=actor)
    if point is None:
        return PointImportResponse(created=False, point=None)
    response = PointImportResponse(created=True, point=AttendancePointRead.model_validate(point))
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINT_IMPORTED",
        entity_type="attendance_point",
        entity_id=str(point.id),
        details={"user_id": point.user_id, "attendance_id": attendance_id},
    )
    return response


@router.get("/api/users/{user_id}/attendance-points/statistics", response_model=UserPointStatisticsRead)
def user_statistics(
    user_id: int,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> UserPointStatisticsRead:
    actor.require_view_of(user_id)
    return UserPointStatisticsRead(**get_user_statistics(db, user_id))


@router.get("/api/users/{user_id}/attendance-points/gbro", response_model=GbroStatsRead)
def user_gbro_stats(
    user_id: int,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> GbroStatsRead:
    actor.require_view_of(user_id)
    return GbroStatsRead(**calculate_gbro_stats(db, user_id))


@router.post("/api/users/{user_id}/attendance-points/recalculate", response_model=CascadeResultRead)
def recalculate_user_points(
    user_id: int,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> CascadeResultRead:
    result = recalculate_gbro(db, user_id, actor=actor)
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_POINTS_GBRO_RECALCULATED",
        entity_type="user",
        entity_id=str(user_id),
        details=result.to_dict(),
    )
    return CascadeResultRead(**result.to_dict())
