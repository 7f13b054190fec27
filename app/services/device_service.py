"""Устройства: отметка установки обновления, история, доступные релизы"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from app.logging_config import devices_logger
from app.models import Customer, Device, DeviceUpdateHistory, ReleaseDeviceTarget, ReleaseDistributorTarget, SoftwareRelease
from app.services.compliance_service import is_release_applicable, version_field_for
from app.services.errors import NotFoundError, ValidationError
from app.services.release_service import get_release_model, like_pattern

INSTALL_STATUSES = ("success", "failed", "rolled_back")


def get_device(db: Session, device_id: int) -> Device:
    device = db.query(Device).options(joinedload(Device.customer)).filter(Device.id == device_id).first()
    if not device:
        raise NotFoundError("Устройство не найдено")
    return device


def list_devices(db: Session, distributor_id: Optional[int] = None, search: Optional[str] = None) -> List[Device]:
    query = db.query(Device).options(joinedload(Device.customer))
    if distributor_id is not None:
        query = query.join(Customer, Customer.id == Device.customer_id).filter(
            Customer.distributor_id == distributor_id
        )
    if search and search.strip():
        pattern = like_pattern(search.strip())
        query = query.filter(or_(
            Device.device_name.ilike(pattern, escape="\\"),
            Device.serial_number.ilike(pattern, escape="\\"),
        ))
    return query.order_by(Device.device_name).all()


def mark_device_updated(
    db: Session,
    device_id: int,
    release_id: int,
    installed_by: Optional[int] = None,
    notes: Optional[str] = None,
    status: str = "success",
) -> DeviceUpdateHistory:
    """
    Записывает установку релиза на устройство.

    При успешной установке версия устройства (прошивки или ПО, по типу релиза)
    и дата последнего обновления меняются; неуспешная только попадает в историю.
    """
    if status not in INSTALL_STATUSES:
        raise ValidationError(f"Неизвестный статус установки: {status}")
    device = get_device(db, device_id)
    release = get_release_model(db, release_id)

    field = version_field_for(release.release_type)
    previous_version = getattr(device, field)
    now = datetime.utcnow()

    history = DeviceUpdateHistory(
        device_id=device.id,
        release_id=release.id,
        version_installed=release.version,
        release_type=release.release_type,
        release_name=release.name,
        previous_version=previous_version,
        installed_at=now,
        installed_by=installed_by,
        installation_notes=notes,
        status=status,
    )
    db.add(history)
    if status == "success":
        setattr(device, field, release.version)
        device.last_update_date = now
        device.updated_at = now
    db.commit()
    db.refresh(history)

    devices_logger.info(
        "Device %s: release %s %s (%s -> %s)", device_id, release_id, status, previous_version, release.version
    )
    return history


def get_device_update_history(db: Session, device_id: int) -> List[DeviceUpdateHistory]:
    get_device(db, device_id)
    return (
        db.query(DeviceUpdateHistory)
        .filter(DeviceUpdateHistory.device_id == device_id)
        .order_by(DeviceUpdateHistory.installed_at.desc(), DeviceUpdateHistory.id.desc())
        .all()
    )


def fetch_releases_for_device(db: Session, device_id: int) -> List[SoftwareRelease]:
    """Опубликованные релизы, адресованные устройству, совместимые и новее установленной версии"""
    device = get_device(db, device_id)

    visibility = [
        SoftwareRelease.target_type == "all",
        SoftwareRelease.id.in_(
            db.query(ReleaseDeviceTarget.release_id).filter(ReleaseDeviceTarget.device_id == device.id)
        ),
    ]
    if device.distributor_id is not None:
        visibility.append(
            SoftwareRelease.id.in_(
                db.query(ReleaseDistributorTarget.release_id).filter(
                    ReleaseDistributorTarget.distributor_id == device.distributor_id
                )
            )
        )

    releases = (
        db.query(SoftwareRelease)
        .filter(SoftwareRelease.status == "published", or_(*visibility))
        .order_by(SoftwareRelease.release_date.desc(), SoftwareRelease.id.desc())
        .all()
    )
    return [release for release in releases if is_release_applicable(device, release)]
