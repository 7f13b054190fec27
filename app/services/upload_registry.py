"""Реестр загрузок в процессе: прогресс для опроса из UI и отмена по upload_id"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from app.config import settings
from app.services.storage_client import CancellationToken, UploadProgress

TERMINAL_STATUSES = ("done", "failed", "cancelled")


@dataclass
class UploadTracker:
    upload_id: str
    file_name: str
    token: CancellationToken = field(default_factory=CancellationToken)
    progress: Optional[UploadProgress] = None
    status: str = "uploading"  # uploading / done / failed / cancelled
    finished_at: Optional[float] = None

    def on_progress(self, progress: UploadProgress) -> None:
        if self.token.cancelled:
            return
        self.progress = progress

    def as_dict(self) -> dict:
        data = {"upload_id": self.upload_id, "file_name": self.file_name, "status": self.status}
        if self.token.cancelled and self.status == "uploading":
            data["status"] = "cancelling"
        data["progress"] = self.progress.as_dict() if self.progress else None
        return data


class UploadRegistry:
    """
    Загрузки текущего процесса.

    Завершённые записи хранятся ttl_seconds, чтобы UI успел забрать итог,
    затем удаляются при следующем обращении к реестру.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self._uploads: Dict[str, UploadTracker] = {}
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        return len(self._uploads)

    def _evict_finished(self) -> None:
        deadline = self._clock() - self.ttl_seconds
        expired = [
            upload_id for upload_id, tracker in self._uploads.items()
            if tracker.finished_at is not None and tracker.finished_at <= deadline
        ]
        for upload_id in expired:
            del self._uploads[upload_id]

    def start(self, file_name: str, upload_id: Optional[str] = None) -> UploadTracker:
        self._evict_finished()
        upload_id = upload_id or uuid.uuid4().hex
        tracker = UploadTracker(upload_id=upload_id, file_name=file_name)
        self._uploads[upload_id] = tracker
        return tracker

    def get(self, upload_id: str) -> Optional[UploadTracker]:
        self._evict_finished()
        return self._uploads.get(upload_id)

    def cancel(self, upload_id: str) -> bool:
        tracker = self.get(upload_id)
        if tracker is None or tracker.status != "uploading":
            return False
        tracker.token.cancel()
        return True

    def finish(self, upload_id: str, status: str) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Unknown upload status: {status}")
        tracker = self._uploads.get(upload_id)
        if tracker is not None:
            tracker.status = status
            tracker.finished_at = self._clock()


upload_registry = UploadRegistry(ttl_seconds=settings.UPLOAD_TRACKER_TTL_SECONDS)


def get_upload_registry() -> UploadRegistry:
    """Зависимость FastAPI: реестр загрузок процесса"""
    return upload_registry
