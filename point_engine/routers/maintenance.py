from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from point_engine.audit import audit_request
from point_engine.db import get_db
from point_engine.schemas import (
    CleanupResponse,
    ExpirePendingRequest,
    MaintenanceResultRead,
    ManagementStatsRead,
    RegenerateRequest,
    ResetExpiredRequest,
)
from point_engine.security import Capability, PointActor, require_actor
from point_engine.services.maintenance import (
    MaintenanceResult,
    cleanup,
    expire_all_pending,
    fix_gbro_dates,
    initialize_gbro_dates,
    management_stats,
    regenerate_points,
    remove_duplicates,
    reset_expired,
)

router = APIRouter(prefix="/api/attendance-points/maintenance", tags=["attendance-points-maintenance"])


def _respond(
    db: Session,
    request: Request,
    *,
    actor: PointActor,
    result: MaintenanceResult,
    extra: dict | None = None,
) -> MaintenanceResultRead:
    audit_request(
        db,
        request,
        actor=actor,
        action=f"ATTENDANCE_POINTS_{result.operation.upper()}",
        entity_type="attendance_point",
        entity_id=None,
        details={**result.to_dict(), **(extra or {})},
    )
    return MaintenanceResultRead(**result.to_dict())


@router.get("/stats", response_model=ManagementStatsRead)
def maintenance_stats(
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ManagementStatsRead:
    actor.require(Capability.MAINTENANCE, "view point maintenance statistics")
    return ManagementStatsRead(**management_stats(db))


@router.post("/remove-duplicates", response_model=MaintenanceResultRead)
def run_remove_duplicates(
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MaintenanceResultRead:
    return _respond(db, request, actor=actor, result=remove_duplicates(db, actor=actor))


@router.post("/expire-pending", response_model=MaintenanceResultRead)
def run_expire_pending(
    payload: ExpirePendingRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MaintenanceResultRead:
    result = expire_all_pending(db, scope=payload.scope, actor=actor)
    return _respond(db, request, actor=actor, result=result, extra={"scope": payload.scope})


@router.post("/initialize-gbro", response_model=MaintenanceResultRead)
def run_initialize_gbro(
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MaintenanceResultRead:
    return _respond(db, request, actor=actor, result=initialize_gbro_dates(db, actor=actor))


@router.post("/fix-gbro", response_model=MaintenanceResultRead)
def run_fix_gbro(
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MaintenanceResultRead:
    return _respond(db, request, actor=actor, result=fix_gbro_dates(db, actor=actor))


@router.post("/reset-expired", response_model=MaintenanceResultRead)
def run_reset_expired(
    payload: ResetExpiredRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MaintenanceResultRead:
    result = reset_expired(db, actor=actor, user_ids=payload.user_ids, user_id=payload.user_id)
    return _respond(
        db,
        request,
        actor=actor,
        result=result,
        extra={"user_id": payload.user_id, "user_ids": payload.user_ids},
    )


@router.post("/regenerate", response_model=MaintenanceResultRead)
def run_regenerate(
    payload: RegenerateRequest,
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> MaintenanceResultRead:
    result = regenerate_points(
        db,
        actor=actor,
        date_from=payload.date_from,
        date_to=payload.date_to,
        user_id=payload.user_id,
    )
    return _respond(
        db,
        request,
        actor=actor,
        result=result,
        extra={
            "date_from": payload.date_from.isoformat(),
            "date_to": payload.date_to.isoformat(),
            "user_id": payload.user_id,
        },
    )


@router.post("/cleanup", response_model=CleanupResponse)
def run_cleanup(
    request: Request,
    actor: PointActor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> CleanupResponse:
    results = cleanup(db, actor=actor)
    return CleanupResponse(
        remove_duplicates=_respond(db, request, actor=actor, result=results["remove_duplicates"]),
        expire_all_pending=_respond(db, request, actor=actor, result=results["expire_all_pending"]),
    )
