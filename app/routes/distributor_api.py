"""API портала дистрибьютора: доступные релизы и журнал скачиваний"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db import get_db
from app.models import User
from app.schemas import ReleaseResponse
from app.services import compliance_service, release_service
from app.services.auth_service import require_permission, resolve_current_distributor, user_has_permission

router = APIRouter(prefix="/api/v1/releases", tags=["distributor-api"])


def _distributor_id(db: Session, current_user: User):
    distributor = resolve_current_distributor(db, current_user)
    return distributor.id if distributor else None


@router.get("/", response_class=JSONResponse)
async def available_releases(
    current_user: User = Depends(require_permission("releases.view")),
    db: Session = Depends(get_db),
):
    """Опубликованные релизы для всех и адресованные дистрибьютору пользователя"""
    releases = release_service.fetch_available_releases(db, _distributor_id(db, current_user))
    items = []
    for release in releases:
        item = ReleaseResponse.model_validate(release).model_dump(mode="json")
        item["release_type_label"] = release_service.get_release_type_label(release.release_type)
        item["file_size_label"] = release_service.format_file_size(release.file_size)
        items.append(item)
    return {"items": items, "total": len(items)}


@router.get("/pending-count", response_class=JSONResponse)
async def pending_updates_count(
    current_user: User = Depends(require_permission("releases.view")),
    db: Session = Depends(get_db),
):
    return {"count": compliance_service.get_pending_updates_count(db, _distributor_id(db, current_user))}


@router.post("/{release_id}/download", response_class=JSONResponse)
async def download_release(
    release_id: int,
    current_user: User = Depends(require_permission("releases.view")),
    db: Session = Depends(get_db),
):
    """Фиксирует скачивание и отдаёт ссылку на файл"""
    release = release_service.get_release_model(db, release_id)
    if not user_has_permission(current_user, db, "releases.manage"):
        visible = {r.id for r in release_service.fetch_available_releases(db, _distributor_id(db, current_user))}
        if release.id not in visible:
            raise HTTPException(status_code=404, detail="Релиз не найден")
    release_service.log_release_download(db, release_id, current_user.id)
    return {"file_url": release.file_url, "file_name": release.file_name, "checksum": release.checksum}
