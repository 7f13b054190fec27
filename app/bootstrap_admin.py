"""
Роли, права и первый администратор
"""
import os
from sqlalchemy.orm import Session
from app.models import User, Role, Permission, RolePermission
from app.services.auth_service import hash_password

BASE_PERMISSIONS = [
    ("releases.view", "Релизы: просмотр доступных"),
    ("releases.manage", "Релизы: управление"),
    ("devices.view", "Устройства: просмотр"),
    ("devices.update", "Устройства: отметка обновления"),
]

# ADMIN получает все права автоматически
ROLES = {
    "ADMIN": ("Системная роль администратора", []),
    "DISTRIBUTOR": ("Сотрудник дистрибьютора", ["releases.view"]),
}


def seed_roles_and_permissions(db: Session) -> None:
    for key, label in BASE_PERMISSIONS:
        if not db.query(Permission).filter(Permission.key == key).first():
            db.add(Permission(key=key, label=label))
    for name, (description, _) in ROLES.items():
        if not db.query(Role).filter(Role.name == name).first():
            db.add(Role(name=name, description=description, is_system=True))
    db.commit()

    permissions = {p.key: p for p in db.query(Permission).all()}
    for name, (_, keys) in ROLES.items():
        role = db.query(Role).filter(Role.name == name).first()
        granted = permissions.keys() if name == "ADMIN" else keys
        for key in granted:
            exists_link = db.query(RolePermission).filter(
                RolePermission.role_id == role.id,
                RolePermission.permission_id == permissions[key].id,
            ).first()
            if not exists_link:
                db.add(RolePermission(role_id=role.id, permission_id=permissions[key].id))
    db.commit()


def create_first_admin(db: Session):
    """Создание первого администратора, если в системе нет ни одного администратора"""
    admin_exists = db.query(User).join(Role).filter(Role.name == "ADMIN").first()
    if admin_exists:
        return None

    admin_role = db.query(Role).filter(Role.name == "ADMIN").first()
    admin_user = User(
        username=os.getenv("ADMIN_USERNAME", "admin"),
        email=os.getenv("ADMIN_EMAIL", "admin@fleet.local"),
        password_hash=hash_password(os.getenv("ADMIN_PASSWORD", "admin123")),
        role_id=admin_role.id,
        is_active=True,
    )
    db.add(admin_user)
    db.commit()
    db.refresh(admin_user)
    return admin_user
