"""Pydantic-схемы релизов, таргетинга и устройств"""
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

ReleaseType = Literal["firmware", "software", "patch", "hotfix", "driver"]
ReleaseStatus = Literal["draft", "published", "deprecated", "recalled"]
TargetType = Literal["all", "distributors", "devices"]
InstallStatus = Literal["success", "failed", "rolled_back"]


class ReleaseDraft(BaseModel):
    """Поля формы релиза без файла: файл приходит отдельно и загружается первым"""
    name: str
    version: str
    release_type: ReleaseType
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    description: Optional[str] = None
    release_notes: Optional[str] = None
    changelog: Optional[str] = None
    min_previous_version: Optional[str] = None
    is_mandatory: bool = False
    release_date: Optional[date] = None
    notify_on_publish: bool = True


class ReleaseCreate(ReleaseDraft):
    file_url: str
    file_name: str
    file_size: Optional[int] = None
    checksum: Optional[str] = None


class ReleaseUpdate(BaseModel):
    name: Optional[str] = None
    version: Optional[str] = None
    release_type: Optional[ReleaseType] = None
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    checksum: Optional[str] = None
    description: Optional[str] = None
    release_notes: Optional[str] = None
    changelog: Optional[str] = None
    min_previous_version: Optional[str] = None
    is_mandatory: Optional[bool] = None
    release_date: Optional[date] = None
    notify_on_publish: Optional[bool] = None


class ReleaseResponse(BaseModel):
    id: int
    name: str
    version: str
    release_type: str
    product_id: Optional[int]
    product_name: Optional[str]
    file_url: str
    file_name: str
    file_size: Optional[int]
    checksum: Optional[str]
    description: Optional[str]
    release_notes: Optional[str]
    changelog: Optional[str]
    min_previous_version: Optional[str]
    target_type: str
    is_mandatory: bool
    status: str
    release_date: date
    published_at: Optional[datetime]
    notify_on_publish: bool
    created_by: Optional[int]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class TargetsUpdate(BaseModel):
    target_type: TargetType
    ids: List[int] = []


class MarkDeviceUpdated(BaseModel):
    release_id: int
    notes: Optional[str] = None
    status: InstallStatus = "success"


class DeviceResponse(BaseModel):
    id: int
    serial_number: str
    device_name: str
    device_model: Optional[str]
    product_id: Optional[int]
    status: str
    current_firmware_version: Optional[str]
    current_software_version: Optional[str]
    last_update_date: Optional[datetime]
    customer_id: Optional[int]
    distributor_id: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class UpdateHistoryResponse(BaseModel):
    id: int
    device_id: int
    release_id: Optional[int]
    version_installed: str
    release_type: Optional[str]
    release_name: Optional[str]
    previous_version: Optional[str]
    installed_at: datetime
    installed_by: Optional[int]
    installation_notes: Optional[str]
    status: str

    model_config = ConfigDict(from_attributes=True)
