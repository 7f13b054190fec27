"""
Клиент объектного хранилища для артефактов релизов.

Загрузка идёт только через резюмируемый протокол TUS 1.0.0 (эндпоинт
/storage/v1/upload/resumable), чанками фиксированного размера, с авторизацией
токеном сессии вызывающего. Прогресс сообщается после каждого подтверждённого
чанка, отмена проверяется на границе чанков.
"""
import base64
import hashlib
import re
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional
from urllib.parse import urljoin

import httpx

from app.config import settings
from app.logging_config import storage_logger
from app.services.errors import StorageError, TransportError, UploadCancelledError

TUS_VERSION = "1.0.0"
RELEASES_FOLDER = "releases"
# сколько раз подряд допускаем рассинхронизацию смещения с сервером
MAX_OFFSET_RESYNCS = 3


@dataclass(frozen=True)
class UploadProgress:
    bytes_uploaded: int
    total_bytes: int
    elapsed_seconds: float

    @property
    def percent(self) -> int:
        if not self.total_bytes:
            return 100
        return int(self.bytes_uploaded * 100 / self.total_bytes)

    @property
    def bytes_per_second(self) -> Optional[float]:
        if self.elapsed_seconds <= 0 or self.bytes_uploaded <= 0:
            return None
        return self.bytes_uploaded / self.elapsed_seconds

    @property
    def eta_seconds(self) -> Optional[float]:
        """Оценка оставшегося времени по наблюдаемой скорости (ориентировочно)"""
        rate = self.bytes_per_second
        if rate is None:
            return None
        return max(self.total_bytes - self.bytes_uploaded, 0) / rate

    def as_dict(self) -> dict:
        return {
            "bytes_uploaded": self.bytes_uploaded,
            "total_bytes": self.total_bytes,
            "percent": self.percent,
            "bytes_per_second": self.bytes_per_second,
            "eta_seconds": self.eta_seconds,
        }


class CancellationToken:
    """Флаг отмены, который транспорт проверяет на каждой границе чанка"""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class UploadedArtifact:
    url: str
    path: str
    file_name: str
    size: int
    checksum: str


ProgressCallback = Callable[[UploadProgress], None]


def sanitize_filename(filename: str) -> str:
    """Оставляет в имени файла только латиницу, цифры, точку, дефис и подчёркивание"""
    base = (filename or "").replace("\\", "/").split("/")[-1].strip()
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned or "artifact"


def build_object_path(filename: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{RELEASES_FOLDER}/{timestamp_ms}-{sanitize_filename(filename)}"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _offset_header(response: httpx.Response, default: int) -> int:
    raw = response.headers.get("Upload-Offset")
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise StorageError(f"Некорректный Upload-Offset в ответе хранилища: {raw!r}")


def _file_size(fileobj: BinaryIO) -> int:
    position = fileobj.tell()
    fileobj.seek(0, 2)
    size = fileobj.tell()
    fileobj.seek(position)
    return size


def _file_checksum(fileobj: BinaryIO, block_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    fileobj.seek(0)
    for block in iter(lambda: fileobj.read(block_size), b""):
        digest.update(block)
    fileobj.seek(0)
    return digest.hexdigest()


class StorageClient:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        chunk_size: int = 6 * 1024 * 1024,
        timeout_seconds: float = 60,
        cache_control: str = "3600",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.base_url = str(base_url).rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.cache_control = cache_control
        self._transport = transport
        self._clock = clock

    @classmethod
    def from_settings(cls, config=settings, **kwargs) -> "StorageClient":
        return cls(
            base_url=str(config.STORAGE_URL),
            service_key=config.STORAGE_SERVICE_KEY,
            bucket=config.RELEASES_BUCKET,
            chunk_size=config.UPLOAD_CHUNK_SIZE,
            timeout_seconds=config.STORAGE_TIMEOUT_SECONDS,
            cache_control=config.UPLOAD_CACHE_CONTROL,
            **kwargs,
        )

    @property
    def resumable_endpoint(self) -> str:
        return f"{self.base_url}/storage/v1/upload/resumable"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path.lstrip('/')}"

    def path_from_url(self, url: str) -> Optional[str]:
        """Достаёт путь объекта из публичной ссылки; None, если ссылка не из нашего бакета"""
        if not url:
            return None
        marker = f"/{self.bucket}/"
        idx = url.find(marker)
        if idx == -1:
            return None
        path = url[idx + len(marker):].split("?", 1)[0]
        return path or None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    def _auth_headers(self, access_token: Optional[str] = None) -> dict:
        token = access_token or self.service_key
        headers = {"Authorization": f"Bearer {token}"}
        if self.service_key:
            headers["apikey"] = self.service_key
        return headers

    def _check_response(self, response: httpx.Response, expected: tuple, action: str) -> None:
        if response.status_code in expected:
            return
        body = response.text[:500]
        if response.status_code in (401, 403):
            raise TransportError(f"Хранилище отклонило авторизацию ({action}): HTTP {response.status_code}")
        raise StorageError(f"Ошибка хранилища ({action}): HTTP {response.status_code} {body}")

    async def _create_upload(
        self,
        client: httpx.AsyncClient,
        path: str,
        size: int,
        content_type: str,
        access_token: Optional[str],
    ) -> str:
        metadata = ",".join([
            f"bucketName {_b64(self.bucket)}",
            f"objectName {_b64(path)}",
            f"contentType {_b64(content_type)}",
            f"cacheControl {_b64(self.cache_control)}",
        ])
        headers = {
            **self._auth_headers(access_token),
            "Tus-Resumable": TUS_VERSION,
            "Upload-Length": str(size),
            "Upload-Metadata": metadata,
            "x-upsert": "false",
        }
        response = await client.post(self.resumable_endpoint, headers=headers)
        self._check_response(response, (200, 201), "create upload")
        location = response.headers.get("Location")
        if not location:
            raise StorageError("Хранилище не вернуло адрес загрузки (Location)")
        return urljoin(self.resumable_endpoint + "/", location)

    async def _server_offset(self, client: httpx.AsyncClient, location: str, access_token: Optional[str]) -> int:
        headers = {**self._auth_headers(access_token), "Tus-Resumable": TUS_VERSION}
        response = await client.head(location, headers=headers)
        self._check_response(response, (200, 204), "resume")
        return _offset_header(response, 0)

    async def _terminate(self, client: httpx.AsyncClient, location: str, access_token: Optional[str]) -> None:
        # чанк, уже ушедший на сервер, может быть дописан и после этого вызова
        headers = {**self._auth_headers(access_token), "Tus-Resumable": TUS_VERSION}
        try:
            response = await client.delete(location, headers=headers)
            if response.status_code not in (200, 204, 404):
                storage_logger.warning("Terminate upload %s returned HTTP %s", location, response.status_code)
        except httpx.HTTPError as e:
            storage_logger.warning("Terminate upload %s failed: %s", location, e)

    async def _send_chunks(
        self,
        client: httpx.AsyncClient,
        location: str,
        fileobj: BinaryIO,
        size: int,
        access_token: Optional[str],
        on_progress: Optional[ProgressCallback],
        cancel_token: CancellationToken,
        started: float,
    ) -> None:
        offset = 0
        resyncs = 0
        while offset < size:
            if cancel_token.cancelled:
                raise UploadCancelledError("Загрузка отменена")

            fileobj.seek(offset)
            chunk = fileobj.read(self.chunk_size)
            if not chunk:
                raise StorageError(f"Файл оборвался на смещении {offset} из {size}")

            headers = {
                **self._auth_headers(access_token),
                "Tus-Resumable": TUS_VERSION,
                "Upload-Offset": str(offset),
                "Content-Type": "application/offset+octet-stream",
            }
            response = await client.patch(location, headers=headers, content=chunk)

            if response.status_code == 409:
                # сервер уже принял другое количество байт: берём его смещение
                resyncs += 1
                if resyncs > MAX_OFFSET_RESYNCS:
                    raise StorageError("Не удалось синхронизировать смещение загрузки с сервером")
                offset = await self._server_offset(client, location, access_token)
                storage_logger.warning("[UPLOAD] offset conflict, resuming from %s", offset)
                continue

            self._check_response(response, (200, 204), "upload chunk")
            resyncs = 0
            offset = _offset_header(response, offset + len(chunk))

            if cancel_token.cancelled:
                raise UploadCancelledError("Загрузка отменена")
            if on_progress is not None:
                on_progress(UploadProgress(offset, size, self._clock() - started))

    async def upload_release_file(
        self,
        fileobj: BinaryIO,
        filename: str,
        *,
        size: Optional[int] = None,
        content_type: Optional[str] = None,
        access_token: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> UploadedArtifact:
        """
        Загружает артефакт релиза чанками и возвращает публичную ссылку.

        Отмена через cancel_token приводит к UploadCancelledError, а не к
        частичному результату; после отмены on_progress больше не вызывается.
        """
        cancel_token = cancel_token or CancellationToken()
        content_type = content_type or "application/octet-stream"
        if size is None:
            size = _file_size(fileobj)
        path = build_object_path(filename)
        checksum = _file_checksum(fileobj)

        storage_logger.info("[UPLOAD] start file=%s size=%s path=%s", filename, size, path)
        started = self._clock()
        try:
            async with self._client() as client:
                if cancel_token.cancelled:
                    raise UploadCancelledError("Загрузка отменена")
                location = await self._create_upload(client, path, size, content_type, access_token)
                try:
                    await self._send_chunks(
                        client, location, fileobj, size, access_token, on_progress, cancel_token, started
                    )
                except UploadCancelledError:
                    await self._terminate(client, location, access_token)
                    raise
                except Exception:
                    # незавершённая загрузка на сервере больше не нужна
                    storage_logger.warning("[UPLOAD] aborting %s after failure", location)
                    await self._terminate(client, location, access_token)
                    raise
        except httpx.HTTPError as e:
            storage_logger.error("[UPLOAD] transport failure file=%s: %s", filename, e)
            raise TransportError(f"Сетевая ошибка при загрузке файла: {e}") from e
        except UploadCancelledError:
            storage_logger.info("[UPLOAD] cancelled file=%s", filename)
            raise

        url = self.public_url(path)
        storage_logger.info("[UPLOAD] done file=%s in %.3f sec url=%s", filename, self._clock() - started, url)
        return UploadedArtifact(url=url, path=path, file_name=filename, size=size, checksum=checksum)

    async def remove(self, paths: List[str]) -> None:
        if not paths:
            return
        url = f"{self.base_url}/storage/v1/object/{self.bucket}"
        try:
            async with self._client() as client:
                response = await client.request(
                    "DELETE", url, headers=self._auth_headers(), json={"prefixes": paths}
                )
        except httpx.HTTPError as e:
            raise StorageError(f"Не удалось удалить файл из хранилища: {e}") from e
        if response.status_code not in (200, 204):
            raise StorageError(f"Не удалось удалить файл из хранилища: HTTP {response.status_code}")
        storage_logger.info("[REMOVE] %s", ", ".join(paths))

    async def remove_by_url(self, url: str) -> bool:
        """Удаляет объект по публичной ссылке. False, если ссылка не указывает на наш бакет"""
        path = self.path_from_url(url)
        if path is None:
            return False
        await self.remove([path])
        return True


def get_storage_client() -> StorageClient:
    """Зависимость FastAPI: клиент хранилища из настроек"""
    return StorageClient.from_settings()
