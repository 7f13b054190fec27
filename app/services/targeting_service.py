"""Таргетинг релизов: всем, выбранным дистрибьюторам или выбранным устройствам"""
from datetime import datetime
from typing import Iterable, List, Tuple

from sqlalchemy.orm import Session

from app.logging_config import releases_logger
from app.models import Device, Distributor, ReleaseDeviceTarget, ReleaseDistributorTarget, SoftwareRelease
from app.services.errors import NotFoundError, ValidationError


def derive_target_type(kind: str, ids: Iterable[int]) -> str:
    if kind == "all" or not list(ids):
        return "all"
    return kind


def _unique(ids: Iterable[int]) -> List[int]:
    seen = set()
    result = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def _check_exists(db: Session, model, ids: List[int], label: str) -> None:
    if not ids:
        return
    found = {row_id for (row_id,) in db.query(model.id).filter(model.id.in_(ids)).all()}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"{label} не найдены: {', '.join(str(i) for i in missing)}")


def validate_target_ids(db: Session, kind: str, ids: Iterable[int]) -> List[int]:
    """Проверяет вид таргетинга и существование id; возвращает id без повторов"""
    if kind not in ("all", "distributors", "devices"):
        raise ValidationError(f"Неизвестный тип таргетинга: {kind}")
    if kind == "all":
        return []
    ids = _unique(ids)
    if kind == "distributors":
        _check_exists(db, Distributor, ids, "Дистрибьюторы")
    else:
        _check_exists(db, Device, ids, "Устройства")
    return ids


def set_release_targets(db: Session, release_id: int, kind: str, ids: Iterable[int]) -> SoftwareRelease:
    """
    Заменяет набор таргетов релиза.

    Обе таблицы таргетов очищаются всегда, независимо от нового вида, чтобы у
    релиза не оставалось строк от предыдущего режима. Пустой список означает "all".
    """
    release = db.query(SoftwareRelease).filter(SoftwareRelease.id == release_id).first()
    if not release:
        raise NotFoundError("Релиз не найден")

    ids = validate_target_ids(db, kind, ids)

    target_type = derive_target_type(kind, ids)
    releases_logger.info("Setting targets for release %s: %s %s", release_id, target_type, ids)

    db.query(ReleaseDistributorTarget).filter(ReleaseDistributorTarget.release_id == release_id).delete(
        synchronize_session=False
    )
    db.query(ReleaseDeviceTarget).filter(ReleaseDeviceTarget.release_id == release_id).delete(
        synchronize_session=False
    )

    if target_type == "distributors":
        db.add_all([ReleaseDistributorTarget(release_id=release_id, distributor_id=i) for i in ids])
    elif target_type == "devices":
        db.add_all([ReleaseDeviceTarget(release_id=release_id, device_id=i) for i in ids])

    release.target_type = target_type
    release.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(release)
    return release


def get_target_ids(db: Session, release_id: int) -> Tuple[List[int], List[int]]:
    """(id дистрибьюторов, id устройств) текущего таргетинга"""
    distributor_ids = [
        row_id for (row_id,) in db.query(ReleaseDistributorTarget.distributor_id)
        .filter(ReleaseDistributorTarget.release_id == release_id)
        .order_by(ReleaseDistributorTarget.distributor_id)
        .all()
    ]
    device_ids = [
        row_id for (row_id,) in db.query(ReleaseDeviceTarget.device_id)
        .filter(ReleaseDeviceTarget.release_id == release_id)
        .order_by(ReleaseDeviceTarget.device_id)
        .all()
    ]
    return distributor_ids, device_ids
