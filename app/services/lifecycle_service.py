"""
Жизненный цикл релиза: draft -> published -> deprecated.

Каждый переход выполняется условной записью (UPDATE ... WHERE status = ожидаемый),
поэтому два администратора, одновременно публикующие или удаляющие один релиз,
не перезапишут друг друга: проигравший получает InvalidStateError.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import releases_logger
from app.models import SoftwareRelease, ReleaseDistributorTarget, ReleaseDeviceTarget, ReleaseDownload
from app.services.errors import InvalidStateError, NotFoundError
from app.services.notification_service import notify_release_published

ALLOWED_TRANSITIONS = {
    "draft": {"published"},
    "published": {"deprecated"},
    # recalled пока недостижим ни одним переходом
    "deprecated": set(),
    "recalled": set(),
}
DELETABLE_STATUSES = {"draft"}

STATUS_LABELS = {
    "draft": "Черновик",
    "published": "Опубликован",
    "deprecated": "Устарел",
    "recalled": "Отозван",
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def can_delete(status: str) -> bool:
    return status in DELETABLE_STATUSES


def _load(db: Session, release_id: int) -> SoftwareRelease:
    release = db.query(SoftwareRelease).filter(SoftwareRelease.id == release_id).first()
    if not release:
        raise NotFoundError("Релиз не найден")
    return release


def _transition(db: Session, release_id: int, target: str, extra: Optional[dict] = None) -> SoftwareRelease:
    release = _load(db, release_id)
    current = release.status
    if not can_transition(current, target):
        releases_logger.warning(
            "Refused transition %s -> %s for release %s", current, target, release_id
        )
        raise InvalidStateError(
            f"Нельзя перевести релиз из статуса «{STATUS_LABELS.get(current, current)}» "
            f"в «{STATUS_LABELS.get(target, target)}»",
            current_status=current,
        )

    now = datetime.utcnow()
    values = {"status": target, "updated_at": now}
    if extra:
        values.update(extra)
    updated = db.query(SoftwareRelease).filter(
        SoftwareRelease.id == release_id,
        SoftwareRelease.status == current,
    ).update(values, synchronize_session=False)
    if updated == 0:
        db.rollback()
        releases_logger.warning("Release %s changed concurrently, transition to %s aborted", release_id, target)
        raise InvalidStateError("Статус релиза был изменён другим пользователем, обновите страницу")
    db.commit()
    db.refresh(release)
    return release


def publish_release(db: Session, release_id: int) -> SoftwareRelease:
    """Публикация возможна только из черновика; published_at ставится один раз"""
    releases_logger.info("Publishing release %s", release_id)
    release = _transition(db, release_id, "published", {"published_at": datetime.utcnow()})
    if release.notify_on_publish:
        try:
            notify_release_published(db, release)
        except Exception as e:
            # публикация уже зафиксирована, уведомления не должны её откатывать
            db.rollback()
            releases_logger.exception("Notifications for release %s failed: %s", release_id, e)
    releases_logger.info("Release %s published", release_id)
    return release


def deprecate_release(db: Session, release_id: int) -> SoftwareRelease:
    releases_logger.info("Deprecating release %s", release_id)
    release = _transition(db, release_id, "deprecated")
    releases_logger.info("Release %s deprecated", release_id)
    return release


def delete_draft_release(db: Session, release_id: int) -> str:
    """
    Удаляет черновик вместе с таргетами и журналом скачиваний.

    Возвращает file_url удалённого релиза, чтобы вызывающий убрал артефакт из хранилища.
    """
    release = _load(db, release_id)
    status = release.status
    file_url = release.file_url
    if not can_delete(status):
        releases_logger.warning("Refused delete of release %s in status %s", release_id, status)
        raise InvalidStateError(
            "Удалить можно только черновик. Опубликованный релиз сначала переведите в устаревшие.",
            current_status=status,
        )

    db.query(ReleaseDistributorTarget).filter(ReleaseDistributorTarget.release_id == release_id).delete(
        synchronize_session=False
    )
    db.query(ReleaseDeviceTarget).filter(ReleaseDeviceTarget.release_id == release_id).delete(
        synchronize_session=False
    )
    db.query(ReleaseDownload).filter(ReleaseDownload.release_id == release_id).delete(
        synchronize_session=False
    )
    deleted = db.query(SoftwareRelease).filter(
        SoftwareRelease.id == release_id,
        SoftwareRelease.status.in_(DELETABLE_STATUSES),
    ).delete(synchronize_session=False)
    if deleted == 0:
        db.rollback()
        raise InvalidStateError("Статус релиза был изменён другим пользователем, удаление отменено")
    db.commit()
    db.expire_all()
    return file_url
