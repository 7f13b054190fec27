"""Хранилище релизов: создание, чтение, фильтры, изменение, удаление"""
from datetime import date, datetime
from typing import Any, BinaryIO, Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.logging_config import releases_logger
from app.models import (
    Device,
    DeviceUpdateHistory,
    Distributor,
    ReleaseDeviceTarget,
    ReleaseDistributorTarget,
    ReleaseDownload,
    SoftwareRelease,
)
from app.schemas import ReleaseCreate, ReleaseDraft, ReleaseResponse, ReleaseUpdate
from app.services.errors import (
    DuplicateVersionError,
    InvalidStateError,
    NotFoundError,
    ReleaseError,
    StorageError,
    UploadCancelledError,
    ValidationError,
)
from app.services.lifecycle_service import STATUS_LABELS, delete_draft_release, publish_release
from app.services.storage_client import StorageClient
from app.services.targeting_service import set_release_targets, validate_target_ids
from app.services.upload_registry import UploadRegistry
from app.services.version_service import is_well_formed_version

# После выхода из черновика эти поля менять нельзя
LOCKED_FIELDS = ("name", "version", "release_type", "file_url", "file_name", "file_size", "checksum")

# NOT NULL-колонки: в частичном обновлении null для них недопустим
REQUIRED_UPDATE_FIELDS = ("release_type", "is_mandatory", "notify_on_publish", "release_date")

RELEASE_TYPE_LABELS = {
    "firmware": "Прошивка",
    "software": "ПО",
    "patch": "Патч",
    "hotfix": "Хотфикс",
    "driver": "Драйвер",
}


def get_release_type_label(release_type: str) -> str:
    return RELEASE_TYPE_LABELS.get(release_type, release_type)


def get_release_status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def format_file_size(size: Optional[int]) -> str:
    if not size:
        return "Неизвестно"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit_index = 0
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1
    return f"{value:.1f} {units[unit_index]}"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def like_pattern(search: str) -> str:
    """Шаблон ILIKE по подстроке; % и _ из ввода ищутся буквально"""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _require(value: Optional[str], label: str) -> str:
    value = _clean(value)
    if not value:
        raise ValidationError(f"Поле «{label}» обязательно")
    return value


def find_duplicate(
    db: Session,
    version: str,
    release_type: str,
    product_id: Optional[int],
    exclude_id: Optional[int] = None,
) -> Optional[SoftwareRelease]:
    """Релиз с той же тройкой (версия, тип, продукт); NULL-продукт равен NULL-продукту"""
    query = db.query(SoftwareRelease).filter(
        SoftwareRelease.version == version,
        SoftwareRelease.release_type == release_type,
    )
    if product_id is None:
        query = query.filter(SoftwareRelease.product_id.is_(None))
    else:
        query = query.filter(SoftwareRelease.product_id == product_id)
    if exclude_id is not None:
        query = query.filter(SoftwareRelease.id != exclude_id)
    return query.first()


def get_release_model(db: Session, release_id: int) -> SoftwareRelease:
    release = db.query(SoftwareRelease).filter(SoftwareRelease.id == release_id).first()
    if not release:
        raise NotFoundError("Релиз не найден")
    return release


def create_release(db: Session, params: ReleaseCreate, created_by: Optional[int] = None) -> SoftwareRelease:
    """Создаёт релиз в статусе draft с таргетингом "all" """
    name = _require(params.name, "Название")
    version = _require(params.version, "Версия")
    file_url = _require(params.file_url, "Файл релиза")
    file_name = _require(params.file_name, "Имя файла")

    releases_logger.info("Creating release %s %s (%s)", name, version, params.release_type)
    if not is_well_formed_version(version):
        releases_logger.warning("Release version %r is not dotted-numeric, comparisons treat bad segments as 0", version)

    if find_duplicate(db, version, params.release_type, params.product_id):
        releases_logger.warning("Duplicate release version %s for type %s", version, params.release_type)
        raise DuplicateVersionError(version, params.release_type)

    now = datetime.utcnow()
    release = SoftwareRelease(
        name=name,
        version=version,
        release_type=params.release_type,
        product_id=params.product_id,
        product_name=_clean(params.product_name),
        file_url=file_url,
        file_name=file_name,
        file_size=params.file_size,
        checksum=_clean(params.checksum),
        description=params.description,
        release_notes=params.release_notes,
        changelog=params.changelog,
        min_previous_version=_clean(params.min_previous_version),
        target_type="all",
        is_mandatory=params.is_mandatory,
        status="draft",
        release_date=params.release_date or date.today(),
        notify_on_publish=params.notify_on_publish,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(release)
    db.commit()
    db.refresh(release)
    releases_logger.info("Release created id=%s", release.id)
    return release


def _count_by_release(db: Session, column, release_ids: List[int], *filters) -> Dict[int, int]:
    if not release_ids:
        return {}
    rows = (
        db.query(column, func.count())
        .filter(column.in_(release_ids), *filters)
        .group_by(column)
        .all()
    )
    return {release_id: count for release_id, count in rows}


def _enrich(db: Session, releases: List[SoftwareRelease]) -> List[Dict[str, Any]]:
    release_ids = [r.id for r in releases]
    downloads = _count_by_release(db, ReleaseDownload.release_id, release_ids)
    installs = _count_by_release(
        db, DeviceUpdateHistory.release_id, release_ids, DeviceUpdateHistory.status == "success"
    )
    dist_targets = _count_by_release(db, ReleaseDistributorTarget.release_id, release_ids)
    device_targets = _count_by_release(db, ReleaseDeviceTarget.release_id, release_ids)

    result = []
    for release in releases:
        data = ReleaseResponse.model_validate(release).model_dump()
        data["download_count"] = downloads.get(release.id, 0)
        data["install_count"] = installs.get(release.id, 0)
        if release.target_type == "distributors":
            data["target_count"] = dist_targets.get(release.id, 0)
        elif release.target_type == "devices":
            data["target_count"] = device_targets.get(release.id, 0)
        else:
            data["target_count"] = 0
        result.append(data)
    return result


def get_release(db: Session, release_id: int) -> Dict[str, Any]:
    """Релиз со списками таргетов и счётчиками"""
    release = get_release_model(db, release_id)
    data = _enrich(db, [release])[0]

    distributors = (
        db.query(Distributor.id, Distributor.company_name)
        .join(ReleaseDistributorTarget, ReleaseDistributorTarget.distributor_id == Distributor.id)
        .filter(ReleaseDistributorTarget.release_id == release_id)
        .order_by(Distributor.company_name)
        .all()
    )
    devices = (
        db.query(Device.id, Device.device_name, Device.serial_number)
        .join(ReleaseDeviceTarget, ReleaseDeviceTarget.device_id == Device.id)
        .filter(ReleaseDeviceTarget.release_id == release_id)
        .order_by(Device.device_name)
        .all()
    )
    data["target_distributors"] = [{"id": d.id, "company_name": d.company_name} for d in distributors]
    data["target_devices"] = [
        {"id": d.id, "device_name": d.device_name, "serial_number": d.serial_number} for d in devices
    ]
    return data


def list_releases(
    db: Session,
    status: Optional[str] = None,
    release_type: Optional[str] = None,
    product_id: Optional[int] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query = db.query(SoftwareRelease)
    if status:
        query = query.filter(SoftwareRelease.status == status)
    if release_type:
        query = query.filter(SoftwareRelease.release_type == release_type)
    if product_id is not None:
        query = query.filter(SoftwareRelease.product_id == product_id)
    search = _clean(search)
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(
            SoftwareRelease.name.ilike(pattern, escape="\\"),
            SoftwareRelease.version.ilike(pattern, escape="\\"),
        ))
    releases = query.order_by(SoftwareRelease.created_at.desc(), SoftwareRelease.id.desc()).all()
    return _enrich(db, releases)


def update_release(db: Session, release_id: int, params: ReleaseUpdate) -> SoftwareRelease:
    """
    Частичное обновление релиза.

    Меняются только переданные поля. Название, версия, тип и файл заблокированы
    после выхода из черновика.
    """
    release = get_release_model(db, release_id)
    changes = params.model_dump(exclude_unset=True)
    for key in ("name", "version", "file_url", "file_name"):
        if key in changes:
            changes[key] = _require(changes[key], key)
    for key in REQUIRED_UPDATE_FIELDS:
        if key in changes and changes[key] is None:
            raise ValidationError(f"Поле «{key}» не может быть пустым")

    if release.status != "draft":
        locked = [key for key in LOCKED_FIELDS if key in changes and changes[key] != getattr(release, key)]
        if locked:
            releases_logger.warning("Refused update of locked fields %s on release %s", locked, release_id)
            raise InvalidStateError(
                "После публикации нельзя менять название, версию, тип и файл релиза",
                current_status=release.status,
            )

    version = changes.get("version", release.version)
    release_type = changes.get("release_type", release.release_type)
    product_id = changes.get("product_id", release.product_id)
    if (version, release_type, product_id) != (release.version, release.release_type, release.product_id):
        if find_duplicate(db, version, release_type, product_id, exclude_id=release_id):
            raise DuplicateVersionError(version, release_type)

    if not changes:
        return release

    changes["updated_at"] = datetime.utcnow()
    updated = db.query(SoftwareRelease).filter(
        SoftwareRelease.id == release_id,
        SoftwareRelease.status == release.status,
    ).update(changes, synchronize_session=False)
    if updated == 0:
        db.rollback()
        raise InvalidStateError("Релиз был изменён другим пользователем, обновите страницу")
    db.commit()
    db.refresh(release)
    releases_logger.info("Release %s updated: %s", release_id, sorted(changes))
    return release


async def delete_release(db: Session, storage: StorageClient, release_id: int) -> None:
    """
    Удаляет черновик релиза и, по возможности, его файл из хранилища.

    Ошибка удаления файла только логируется: строка в БД всё равно удаляется.
    """
    releases_logger.info("Deleting release %s", release_id)
    file_url = delete_draft_release(db, release_id)
    if file_url:
        try:
            removed = await storage.remove_by_url(file_url)
            if not removed:
                releases_logger.warning("Release %s file url is outside the releases bucket: %s", release_id, file_url)
        except StorageError as e:
            releases_logger.warning("Failed to delete file for release %s: %s", release_id, e)
    releases_logger.info("Release %s deleted", release_id)


def log_release_download(db: Session, release_id: int, user_id: Optional[int]) -> ReleaseDownload:
    get_release_model(db, release_id)
    record = ReleaseDownload(release_id=release_id, user_id=user_id, downloaded_at=datetime.utcnow())
    db.add(record)
    db.commit()
    db.refresh(record)
    releases_logger.info("Release %s downloaded by user %s", release_id, user_id)
    return record


def fetch_available_releases(db: Session, distributor_id: Optional[int]) -> List[SoftwareRelease]:
    """Опубликованные релизы для всех или адресованные этому дистрибьютору, новые сверху"""
    visibility = SoftwareRelease.target_type == "all"
    if distributor_id is not None:
        targeted = db.query(ReleaseDistributorTarget.release_id).filter(
            ReleaseDistributorTarget.distributor_id == distributor_id
        )
        visibility = or_(visibility, SoftwareRelease.id.in_(targeted))
    return (
        db.query(SoftwareRelease)
        .filter(SoftwareRelease.status == "published", visibility)
        .order_by(SoftwareRelease.release_date.desc(), SoftwareRelease.id.desc())
        .all()
    )


async def create_release_with_upload(
    db: Session,
    storage: StorageClient,
    registry: UploadRegistry,
    draft: ReleaseDraft,
    fileobj: BinaryIO,
    filename: str,
    *,
    content_type: Optional[str] = None,
    access_token: Optional[str] = None,
    upload_id: Optional[str] = None,
    created_by: Optional[int] = None,
    target_type: str = "all",
    target_ids: Optional[Iterable[int]] = None,
    publish_immediately: bool = False,
) -> SoftwareRelease:
    """
    Загружает файл релиза и только после успешной загрузки создаёт запись.

    Ошибка или отмена загрузки прерывает создание до записи в БД. Если запись
    не удалось создать уже после загрузки, загруженный файл удаляется.
    """
    _require(draft.name, "Название")
    version = _require(draft.version, "Версия")
    if find_duplicate(db, version, draft.release_type, draft.product_id):
        raise DuplicateVersionError(version, draft.release_type)
    ids = validate_target_ids(db, target_type, target_ids or [])

    tracker = registry.start(filename, upload_id=upload_id)
    releases_logger.info("Upload %s started for release %s %s", tracker.upload_id, draft.name, version)
    try:
        artifact = await storage.upload_release_file(
            fileobj,
            filename,
            content_type=content_type,
            access_token=access_token,
            on_progress=tracker.on_progress,
            cancel_token=tracker.token,
        )
    except UploadCancelledError:
        registry.finish(tracker.upload_id, "cancelled")
        releases_logger.info("Upload %s cancelled, release not created", tracker.upload_id)
        raise
    except Exception:
        registry.finish(tracker.upload_id, "failed")
        raise
    registry.finish(tracker.upload_id, "done")

    params = ReleaseCreate(
        **draft.model_dump(),
        file_url=artifact.url,
        file_name=artifact.file_name,
        file_size=artifact.size,
        checksum=artifact.checksum,
    )
    try:
        release = create_release(db, params, created_by=created_by)
    except ReleaseError:
        try:
            await storage.remove([artifact.path])
        except StorageError as e:
            releases_logger.warning("Orphaned upload %s left in storage: %s", artifact.path, e)
        raise

    if ids:
        release = set_release_targets(db, release.id, target_type, ids)
    if publish_immediately:
        release = publish_release(db, release.id)
    return release
