"""API routes for farm-out reservations, driver trip status, and assignments."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from app.core.auth import TenantContext, get_tenant_context, require_roles
from app.core.logging import logger
from app.models.farmout import (
    DriverAssignmentRequest,
    FarmoutBoardResponse,
    FarmoutModeRequest,
    FarmoutStatusRequest,
    PropagationError,
    ReservationDetailResponse,
    StatusUpdateResult,
    TripStatusPollResult,
    TripStatusUpdateRequest,
)
from app.services.farmout_engine import farmout_engine

router = APIRouter(prefix="/farmout", tags=["farmout"])

_RESULT_STATUS_CODES = {
    PropagationError.NOT_FOUND: 404,
    PropagationError.INVALID_STATUS: 400,
    PropagationError.STORE_FAILURE: 503,
}


@router.get("/board", response_model=FarmoutBoardResponse)
def farmout_board(context: TenantContext = Depends(get_tenant_context)):
    return farmout_engine.board(context.tenant_id)


@router.post("/reservations", response_model=ReservationDetailResponse)
def save_reservation(
    record: Dict[str, Any] = Body(...),
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return farmout_engine.save_reservation(context.tenant_id, record, actor=context.actor)
    except Exception as exc:
        logger.error("Failed to save reservation", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/reservations/{reservation_ref}", response_model=ReservationDetailResponse)
def get_reservation(
    reservation_ref: str,
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return farmout_engine.get_reservation_detail(context.tenant_id, reservation_ref)
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")


@router.put("/reservations/{reservation_ref}/status", response_model=ReservationDetailResponse)
def update_farmout_status(
    reservation_ref: str,
    request: FarmoutStatusRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return farmout_engine.update_farmout_status(
            context.tenant_id, reservation_ref, request.status, actor=context.actor
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except Exception as exc:
        logger.error("Failed to update farm-out status", reservation_ref=reservation_ref, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.put("/reservations/{reservation_ref}/mode", response_model=ReservationDetailResponse)
def set_farmout_mode(
    reservation_ref: str,
    request: FarmoutModeRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return farmout_engine.set_farmout_mode(context.tenant_id, reservation_ref, request.mode, actor=context.actor)
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except Exception as exc:
        logger.error("Failed to set farm-out mode", reservation_ref=reservation_ref, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/reservations/{reservation_ref}/driver", response_model=ReservationDetailResponse)
def assign_farmout_driver(
    reservation_ref: str,
    request: DriverAssignmentRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return farmout_engine.assign_farmout_driver(context.tenant_id, reservation_ref, request, actor=context.actor)
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except Exception as exc:
        logger.error("Failed to assign farm-out driver", reservation_ref=reservation_ref, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.delete("/reservations/{reservation_ref}/driver", response_model=ReservationDetailResponse)
def clear_farmout_assignment(
    reservation_ref: str,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return farmout_engine.clear_farmout_assignment(context.tenant_id, reservation_ref, actor=context.actor)
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except Exception as exc:
        logger.error("Failed to clear farm-out assignment", reservation_ref=reservation_ref, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/reservations/{reservation_ref}/activity")
def reservation_activity(
    reservation_ref: str,
    limit: int = Query(default=100, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return {"activity": farmout_engine.list_activity(context.tenant_id, reservation_ref, limit=limit)}
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")


@router.post("/trip-status", response_model=StatusUpdateResult)
def driver_trip_status(
    request: TripStatusUpdateRequest,
    context: TenantContext = Depends(require_roles("driver", "dispatcher", "admin")),
):
    """Driver-app webhook for trip status changes."""
    result = farmout_engine.apply_status_update(
        context.tenant_id,
        request.reservation_id,
        request.status,
        driver_id=request.driver_id,
        actor=context.actor,
    )
    if result.error is not None:
        raise HTTPException(status_code=_RESULT_STATUS_CODES[result.error], detail=result.detail)
    return result


@router.post("/trip-status/poll", response_model=TripStatusPollResult)
def poll_trip_status_feed(context: TenantContext = Depends(require_roles("dispatcher", "admin"))):
    try:
        return farmout_engine.poll_trip_status_feed(context.tenant_id)
    except Exception as exc:
        logger.error("Trip status poll failed", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/assignments")
def list_assignments(context: TenantContext = Depends(get_tenant_context)):
    return {"assignments": farmout_engine.store.get_snapshot(context.tenant_id)}


@router.post("/assignments/rebuild")
def rebuild_assignments(context: TenantContext = Depends(require_roles("dispatcher", "admin"))):
    assignments = farmout_engine.rebuild_assignment_snapshot(context.tenant_id)
    if assignments is None:
        raise HTTPException(status_code=503, detail="Snapshot rebuild failed")
    return {"assignments": [item.model_dump(mode="json") for item in assignments]}
