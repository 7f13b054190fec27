"""Роуты администратора для управления релизами ПО"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db import get_db
from app.logging_config import releases_logger
from app.models import User
from app.schemas import (
    DeviceResponse,
    ReleaseDraft,
    ReleaseResponse,
    ReleaseStatus,
    ReleaseType,
    ReleaseUpdate,
    TargetType,
    TargetsUpdate,
)
from app.services import compliance_service, lifecycle_service, release_service, targeting_service
from app.services.auth_service import get_access_token, require_permission
from app.services.errors import ValidationError
from app.services.notification_service import notify_release_published
from app.services.storage_client import StorageClient, get_storage_client
from app.services.upload_registry import UploadRegistry, get_upload_registry

router = APIRouter(prefix="/admin/releases", tags=["releases"])


def _parse_ids(raw: Optional[str]) -> List[int]:
    """Список id из формы: "1, 2,3" """
    if not raw or not raw.strip():
        return []
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ValidationError("Список получателей должен состоять из числовых id")


def _release_json(release) -> dict:
    return ReleaseResponse.model_validate(release).model_dump(mode="json")


@router.get("/", response_class=JSONResponse)
async def releases_list(
    status: Optional[ReleaseStatus] = None,
    release_type: Optional[ReleaseType] = None,
    product_id: Optional[int] = None,
    search: Optional[str] = None,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    """Список релизов с фильтрами и счётчиками"""
    items = release_service.list_releases(
        db, status=status, release_type=release_type, product_id=product_id, search=search
    )
    for item in items:
        item["release_type_label"] = release_service.get_release_type_label(item["release_type"])
        item["status_label"] = release_service.get_release_status_label(item["status"])
        item["file_size_label"] = release_service.format_file_size(item["file_size"])
    return {"items": items, "total": len(items)}


@router.post("/", response_class=JSONResponse, status_code=201)
async def create_release(
    request: Request,
    file: UploadFile = File(...),
    name: str = Form(...),
    version: str = Form(...),
    release_type: ReleaseType = Form(...),
    product_id: Optional[int] = Form(None),
    product_name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    release_notes: Optional[str] = Form(None),
    changelog: Optional[str] = Form(None),
    min_previous_version: Optional[str] = Form(None),
    is_mandatory: bool = Form(False),
    release_date: Optional[date] = Form(None),
    notify_on_publish: bool = Form(True),
    upload_id: Optional[str] = Form(None),
    target_type: TargetType = Form("all"),
    target_ids: Optional[str] = Form(None),
    publish_immediately: bool = Form(False),
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
    storage: StorageClient = Depends(get_storage_client),
    registry: UploadRegistry = Depends(get_upload_registry),
):
    """
    Создание релиза: файл загружается в хранилище, затем создаётся запись.

    Пока идёт загрузка, прогресс доступен по upload_id через /uploads/{upload_id}.
    """
    draft = ReleaseDraft(
        name=name,
        version=version,
        release_type=release_type,
        product_id=product_id,
        product_name=product_name,
        description=description,
        release_notes=release_notes,
        changelog=changelog,
        min_previous_version=min_previous_version,
        is_mandatory=is_mandatory,
        release_date=release_date,
        notify_on_publish=notify_on_publish,
    )
    ids = _parse_ids(target_ids)
    release = await release_service.create_release_with_upload(
        db,
        storage,
        registry,
        draft,
        file.file,
        file.filename or "release.bin",
        content_type=file.content_type,
        access_token=get_access_token(request),
        upload_id=upload_id,
        created_by=current_user.id,
        target_type=target_type,
        target_ids=ids,
        publish_immediately=publish_immediately,
    )
    return _release_json(release)


@router.get("/uploads/{upload_id}", response_class=JSONResponse)
async def upload_progress(
    upload_id: str,
    current_user: User = Depends(require_permission("releases.manage")),
    registry: UploadRegistry = Depends(get_upload_registry),
):
    tracker = registry.get(upload_id)
    if tracker is None:
        raise HTTPException(status_code=404, detail="Загрузка не найдена")
    return tracker.as_dict()


@router.post("/uploads/{upload_id}/cancel", response_class=JSONResponse)
async def cancel_upload(
    upload_id: str,
    current_user: User = Depends(require_permission("releases.manage")),
    registry: UploadRegistry = Depends(get_upload_registry),
):
    """Отмена загрузки: следующий чанк уже не уйдёт"""
    if registry.get(upload_id) is None:
        raise HTTPException(status_code=404, detail="Загрузка не найдена")
    cancelled = registry.cancel(upload_id)
    releases_logger.info("Upload %s cancel requested by %s: %s", upload_id, current_user.username, cancelled)
    return {"upload_id": upload_id, "cancelled": cancelled}


@router.get("/{release_id}", response_class=JSONResponse)
async def release_detail(
    release_id: int,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    """Релиз со списками получателей и счётчиками скачиваний и установок"""
    return release_service.get_release(db, release_id)


@router.put("/{release_id}", response_class=JSONResponse)
async def release_update(
    release_id: int,
    payload: ReleaseUpdate,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    release = release_service.update_release(db, release_id, payload)
    return _release_json(release)


@router.delete("/{release_id}", response_class=JSONResponse)
async def release_delete(
    release_id: int,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
    storage: StorageClient = Depends(get_storage_client),
):
    """Удалить можно только черновик"""
    await release_service.delete_release(db, storage, release_id)
    return {"status": "ok"}


@router.post("/{release_id}/publish", response_class=JSONResponse)
async def release_publish(
    release_id: int,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    release = lifecycle_service.publish_release(db, release_id)
    return _release_json(release)


@router.post("/{release_id}/deprecate", response_class=JSONResponse)
async def release_deprecate(
    release_id: int,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    release = lifecycle_service.deprecate_release(db, release_id)
    return _release_json(release)


@router.put("/{release_id}/targets", response_class=JSONResponse)
async def release_targets(
    release_id: int,
    payload: TargetsUpdate,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    release = targeting_service.set_release_targets(db, release_id, payload.target_type, payload.ids)
    distributor_ids, device_ids = targeting_service.get_target_ids(db, release_id)
    return {
        "target_type": release.target_type,
        "distributor_ids": distributor_ids,
        "device_ids": device_ids,
    }


@router.get("/{release_id}/stats", response_class=JSONResponse)
async def release_stats(
    release_id: int,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    return compliance_service.get_release_stats(db, release_id)


@router.get("/{release_id}/outdated-devices", response_class=JSONResponse)
async def release_outdated_devices(
    release_id: int,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    devices = compliance_service.get_outdated_devices(db, release_id)
    return [DeviceResponse.model_validate(device).model_dump(mode="json") for device in devices]


@router.post("/{release_id}/notify", response_class=JSONResponse)
async def release_notify(
    release_id: int,
    only_unnotified: bool = True,
    current_user: User = Depends(require_permission("releases.manage")),
    db: Session = Depends(get_db),
):
    """Повторная рассылка уведомлений по опубликованному релизу"""
    release = release_service.get_release_model(db, release_id)
    if release.status != "published":
        raise HTTPException(status_code=409, detail="Уведомления рассылаются только по опубликованным релизам")
    sent = notify_release_published(db, release, only_unnotified=only_unnotified)
    return {"release_id": release_id, "notifications": sent}
