"""Статистика релиза и устройства, отстающие от опубликованной версии"""
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from app.models import (
    Customer,
    Device,
    DeviceUpdateHistory,
    ReleaseDeviceTarget,
    ReleaseDistributorTarget,
    ReleaseDownload,
    SoftwareRelease,
)
from app.services.release_service import fetch_available_releases, get_release_model
from app.services.version_service import is_newer


def version_field_for(release_type: str) -> str:
    """Прошивки сравниваются с версией прошивки устройства, всё остальное с версией ПО"""
    if release_type == "firmware":
        return "current_firmware_version"
    return "current_software_version"


def _target_count(db: Session, release: SoftwareRelease) -> int:
    if release.target_type == "distributors":
        return db.query(func.count(ReleaseDistributorTarget.id)).filter(
            ReleaseDistributorTarget.release_id == release.id
        ).scalar() or 0
    if release.target_type == "devices":
        return db.query(func.count(ReleaseDeviceTarget.id)).filter(
            ReleaseDeviceTarget.release_id == release.id
        ).scalar() or 0
    return 0


def get_release_stats(db: Session, release_id: int) -> Dict[str, Any]:
    release = get_release_model(db, release_id)

    total_downloads = db.query(func.count(ReleaseDownload.id)).filter(
        ReleaseDownload.release_id == release_id
    ).scalar() or 0
    unique_downloads = db.query(func.count(func.distinct(ReleaseDownload.user_id))).filter(
        ReleaseDownload.release_id == release_id
    ).scalar() or 0

    rows = (
        db.query(DeviceUpdateHistory.status, func.count(DeviceUpdateHistory.id))
        .filter(DeviceUpdateHistory.release_id == release_id)
        .group_by(DeviceUpdateHistory.status)
        .all()
    )
    by_status = {status: count for status, count in rows}
    successful = by_status.get("success", 0)

    target_count = _target_count(db, release)
    # round() округляет половину к чётному: 12.5 -> 12
    install_percentage = round(successful / target_count * 100) if target_count else 0

    return {
        "release_id": release_id,
        "total_downloads": total_downloads,
        "unique_downloads": unique_downloads,
        "total_installs": sum(by_status.values()),
        "successful_installs": successful,
        "failed_installs": by_status.get("failed", 0),
        "rolled_back_installs": by_status.get("rolled_back", 0),
        "target_count": target_count,
        "install_percentage": install_percentage,
    }


def is_device_outdated(device: Device, release: SoftwareRelease) -> bool:
    return is_newer(getattr(device, version_field_for(release.release_type)), release.version)


def get_outdated_devices(db: Session, release_id: int) -> List[Device]:
    """Активные устройства из аудитории релиза, у которых версия ниже версии релиза"""
    release = get_release_model(db, release_id)

    query = db.query(Device).options(joinedload(Device.customer)).filter(Device.status == "active")
    if release.product_id is not None:
        query = query.filter(Device.product_id == release.product_id)

    if release.target_type == "distributors":
        distributor_ids = db.query(ReleaseDistributorTarget.distributor_id).filter(
            ReleaseDistributorTarget.release_id == release_id
        )
        query = query.join(Customer, Customer.id == Device.customer_id).filter(
            Customer.distributor_id.in_(distributor_ids)
        )
    elif release.target_type == "devices":
        device_ids = db.query(ReleaseDeviceTarget.device_id).filter(ReleaseDeviceTarget.release_id == release_id)
        query = query.filter(Device.id.in_(device_ids))

    devices = query.order_by(Device.device_name).all()
    return [device for device in devices if is_device_outdated(device, release)]


def is_release_applicable(device: Device, release: SoftwareRelease) -> bool:
    if release.product_id is not None and device.product_id != release.product_id:
        return False
    return is_device_outdated(device, release)


def get_pending_updates_count(db: Session, distributor_id: Optional[int]) -> int:
    """Сколько активных устройств дистрибьютора ждут хотя бы одного доступного обновления"""
    if distributor_id is None:
        return 0
    releases = fetch_available_releases(db, distributor_id)
    if not releases:
        return 0

    devices = (
        db.query(Device)
        .join(Customer, Customer.id == Device.customer_id)
        .filter(Customer.distributor_id == distributor_id, Device.status == "active")
        .all()
    )
    pending = 0
    for device in devices:
        if any(is_release_applicable(device, release) for release in releases):
            pending += 1
    return pending

