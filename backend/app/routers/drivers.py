"""Driver directory routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from app.core.auth import TenantContext, get_tenant_context, require_roles
from app.core.logging import logger
from app.models.farmout import DriverCreateRequest
from app.services.farmout_engine import farmout_engine

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get("")
def list_drivers(context: TenantContext = Depends(get_tenant_context)):
    return {"drivers": farmout_engine.store.list_drivers(context.tenant_id)}


@router.post("")
def create_driver(
    request: DriverCreateRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        driver = farmout_engine.store.create_driver(
            context.tenant_id,
            name=request.name,
            driver_id=request.driver_id,
            affiliate=request.affiliate,
            phone=request.phone,
            vehicle_type=request.vehicle_type,
        )
    except Exception as exc:
        logger.error("Failed to create driver", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    farmout_engine.notifier.refresh_driver_directory(context.tenant_id)
    return driver


@router.get("/{driver_id}")
def get_driver(
    driver_id: str,
    context: TenantContext = Depends(get_tenant_context),
):
    driver = farmout_engine.store.get_driver(context.tenant_id, driver_id)
    if not driver:
        raise HTTPException(status_code=404, detail="Driver not found")
    return driver
