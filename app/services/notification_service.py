"""Уведомления дистрибьюторов о публикации релизов"""
from datetime import datetime
from typing import List, Set

from sqlalchemy.orm import Session

from app.logging_config import notifications_logger
from app.models import (
    Customer,
    Device,
    Distributor,
    Notification,
    ReleaseDeviceTarget,
    ReleaseDistributorTarget,
    SoftwareRelease,
    User,
)


def _recipient_distributor_ids(db: Session, release: SoftwareRelease, only_unnotified: bool) -> Set[int]:
    """Дистрибьюторы-получатели и отметка notified_at на строках таргетов"""
    now = datetime.utcnow()
    distributor_ids: Set[int] = set()

    if release.target_type == "distributors":
        query = db.query(ReleaseDistributorTarget).filter(ReleaseDistributorTarget.release_id == release.id)
        if only_unnotified:
            query = query.filter(ReleaseDistributorTarget.notified_at.is_(None))
        for target in query.all():
            distributor_ids.add(target.distributor_id)
            target.notified_at = now

    elif release.target_type == "devices":
        query = (
            db.query(ReleaseDeviceTarget, Customer.distributor_id)
            .join(Device, Device.id == ReleaseDeviceTarget.device_id)
            .outerjoin(Customer, Customer.id == Device.customer_id)
            .filter(ReleaseDeviceTarget.release_id == release.id)
        )
        if only_unnotified:
            query = query.filter(ReleaseDeviceTarget.notified_at.is_(None))
        for target, distributor_id in query.all():
            if distributor_id is not None:
                distributor_ids.add(distributor_id)
            target.notified_at = now

    elif not only_unnotified:
        # для "all" отдельного учёта нет, поэтому повторная рассылка только целиком
        distributor_ids = {
            did for (did,) in db.query(Distributor.id).filter(Distributor.is_active == True).all()
        }

    return distributor_ids


def notify_release_published(db: Session, release: SoftwareRelease, only_unnotified: bool = False) -> int:
    """
    Создаёт уведомления для пользователей дистрибьюторов, которым адресован релиз.

    Возвращает количество созданных уведомлений.
    """
    distributor_ids = _recipient_distributor_ids(db, release, only_unnotified)
    if not distributor_ids:
        db.commit()
        notifications_logger.info("Release %s: no recipients to notify", release.id)
        return 0

    users: List[User] = db.query(User).filter(
        User.distributor_id.in_(sorted(distributor_ids)),
        User.is_active == True,
        User.deleted_at.is_(None),
    ).all()

    title = f"Доступно обновление {release.name} {release.version}"
    if release.is_mandatory:
        title = f"Обязательное обновление {release.name} {release.version}"

    for user in users:
        db.add(Notification(
            user_id=user.id,
            type="release_published",
            title=title,
            message=release.release_notes or release.description,
            related_type="software_release",
            related_id=release.id,
        ))
    db.commit()

    notifications_logger.info(
        "Release %s: %s notifications for %s distributors", release.id, len(users), len({u.distributor_id for u in users})
    )
    return len(users)
