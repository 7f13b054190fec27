from datetime import datetime, timedelta
from typing import Optional, Iterable, Union
import bcrypt
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from app.config import settings
from app.db import get_db
from app.logging_config import auth_logger
from app.models import User, Role, Permission, RolePermission, Distributor


def hash_password(plain_password: str) -> str:
    """Хеширование пароля с использованием bcrypt"""
    pwd_bytes = plain_password.encode('utf-8')
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(pwd_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Проверка соответствия пароля хешу"""
    pwd_bytes = plain_password.encode('utf-8')
    hash_bytes = password_hash.encode('utf-8')
    return bcrypt.checkpw(pwd_bytes, hash_bytes)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Создание JWT токена доступа"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    auth_logger.info(f"Created access token for user: {data.get('username', 'unknown')}")
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.username == username, User.deleted_at.is_(None)).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def get_current_user_from_cookie(
    request: Request,
    db: Session = Depends(get_db)
) -> User:
    """
    Получение текущего пользователя из cookie с валидацией JWT
    """
    token = request.cookies.get("access_token")
    client_ip = request.client.host if request.client else "unknown"

    if not token:
        auth_logger.warning(f"Access denied: No token provided from IP {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        auth_logger.error(f"JWT validation error: {str(e)} from IP {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        auth_logger.warning(f"Access denied: Invalid token (no user_id) from IP {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = db.query(User).filter(User.id == int(user_id), User.deleted_at.is_(None)).first()
    if user is None or not user.is_active:
        auth_logger.warning(f"Access denied: User not found for ID {user_id} from IP {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_access_token(request: Request) -> Optional[str]:
    """
    Токен для авторизации загрузки в хранилище.

    Это сессионный JWT вызывающего, подписанный SECRET_KEY: хранилище должно
    знать тот же секрет. При STORAGE_FORWARD_USER_TOKEN=False возвращает None,
    и загрузка идёт под сервисным ключом.
    """
    if not settings.STORAGE_FORWARD_USER_TOKEN:
        return None
    return request.cookies.get("access_token")


def get_user_permission_keys(user: User, db: Session) -> set:
    """
    Набор permission.key для текущей роли пользователя.
    ADMIN считается имеющим все права (возвращаем {"*"}).
    """
    role = user.role or db.query(Role).filter(Role.id == user.role_id).first()
    if role and role.name == "ADMIN":
        return {"*"}
    if not role:
        return set()
    rows = (
        db.query(Permission.key)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role_id == role.id)
        .all()
    )
    return {r[0] for r in rows}


def require_permission(permission_keys: Union[str, Iterable[str]]):
    """
    Доступ, если у пользователя есть хотя бы одно из указанных прав.
    ADMIN имеет все права.
    """
    needed = {permission_keys} if isinstance(permission_keys, str) else set(permission_keys)

    def dependency(
        current_user: User = Depends(get_current_user_from_cookie),
        db: Session = Depends(get_db)
    ):
        keys = get_user_permission_keys(current_user, db)
        if "*" in keys:
            return current_user
        if not needed.intersection(keys):
            auth_logger.warning(f"Access denied: user {current_user.username} lacks {sorted(needed)}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Недостаточно прав"
            )
        return current_user

    return dependency


def user_has_permission(user: User, db: Session, permission_key: str) -> bool:
    """Проверка наличия конкретного права у пользователя (ADMIN имеет все)."""
    if user is None:
        return False
    keys = get_user_permission_keys(user, db)
    return ("*" in keys) or (permission_key in keys)


def resolve_current_distributor(db: Session, current_user: User) -> Optional[Distributor]:
    """Дистрибьютор, к которому привязан пользователь, или None"""
    if current_user is None or not current_user.distributor_id:
        return None
    return db.query(Distributor).filter(
        Distributor.id == current_user.distributor_id,
        Distributor.is_active == True,
    ).first()
