"""Роуты администратора: парк устройств и история обновлений"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db import get_db
from app.models import User
from app.schemas import DeviceResponse, MarkDeviceUpdated, ReleaseResponse, UpdateHistoryResponse
from app.services import device_service
from app.services.auth_service import require_permission

router = APIRouter(prefix="/admin/devices", tags=["devices"])


@router.get("/", response_class=JSONResponse)
async def devices_list(
    distributor_id: Optional[int] = None,
    search: Optional[str] = None,
    current_user: User = Depends(require_permission("devices.view")),
    db: Session = Depends(get_db),
):
    devices = device_service.list_devices(db, distributor_id=distributor_id, search=search)
    return [DeviceResponse.model_validate(device).model_dump(mode="json") for device in devices]


@router.get("/{device_id}/history", response_class=JSONResponse)
async def device_history(
    device_id: int,
    current_user: User = Depends(require_permission("devices.view")),
    db: Session = Depends(get_db),
):
    """История установок, последние сверху"""
    history = device_service.get_device_update_history(db, device_id)
    return [UpdateHistoryResponse.model_validate(row).model_dump(mode="json") for row in history]


@router.post("/{device_id}/mark-updated", response_class=JSONResponse)
async def device_mark_updated(
    device_id: int,
    payload: MarkDeviceUpdated,
    current_user: User = Depends(require_permission("devices.update")),
    db: Session = Depends(get_db),
):
    record = device_service.mark_device_updated(
        db,
        device_id,
        payload.release_id,
        installed_by=current_user.id,
        notes=payload.notes,
        status=payload.status,
    )
    return UpdateHistoryResponse.model_validate(record).model_dump(mode="json")


@router.get("/{device_id}/available-releases", response_class=JSONResponse)
async def device_available_releases(
    device_id: int,
    current_user: User = Depends(require_permission("devices.view")),
    db: Session = Depends(get_db),
):
    releases = device_service.fetch_releases_for_device(db, device_id)
    return [ReleaseResponse.model_validate(release).model_dump(mode="json") for release in releases]
