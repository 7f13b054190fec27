"""Исключения сервисного слоя релизов.

Сервисы их только поднимают; в HTTP-ответы их переводит обработчик в app.main.
"""
from typing import Optional


class ReleaseError(Exception):
    """Базовое исключение подсистемы релизов"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReleaseError):
    """Не заполнены обязательные поля или данные некорректны"""


class DuplicateVersionError(ValidationError):
    status_code = 409

    def __init__(self, version: str, release_type: str):
        super().__init__(f"Релиз типа {release_type} с версией {version} уже существует")
        self.version = version
        self.release_type = release_type


class InvalidStateError(ValidationError):
    """Переход недопустим из текущего статуса"""

    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class NotFoundError(ReleaseError):
    status_code = 404


class StorageError(ReleaseError):
    """Ошибка объектного хранилища (загрузка/удаление артефакта)"""

    status_code = 502


class TransportError(ReleaseError):
    """Сетевая ошибка или отказ авторизации во время загрузки"""

    status_code = 502


class UploadCancelledError(ReleaseError):
    """Загрузка отменена пользователем"""

    # nginx-овский "client closed request"
    status_code = 499
