from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, ForeignKey, func, UniqueConstraint
from sqlalchemy.orm import relationship
from app.db import Base
from datetime import datetime, date
from sqlalchemy import Date


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False) # "ADMIN", "DISTRIBUTOR"
    description = Column(String, nullable=True)
    is_system = Column(Boolean, default=True)  # для базовых ролей

    # Связь с пользователями
    users = relationship("User", back_populates="role")
    permissions = relationship("Permission", secondary="role_permissions", back_populates="roles")


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, nullable=False)
    label = Column(String, nullable=False)

    roles = relationship("Role", secondary="role_permissions", back_populates="permissions")


class RolePermission(Base):
    __tablename__ = "role_permissions"

    id = Column(Integer, primary_key=True, index=True)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    permission_id = Column(Integer, ForeignKey("permissions.id"), nullable=False)

    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=True)
    full_name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    distributor_id = Column(Integer, ForeignKey("distributors.id"), nullable=True)
    is_active = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_login_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    # Связи
    role = relationship("Role", back_populates="users")
    distributor = relationship("Distributor", back_populates="users")


class Distributor(Base):
    __tablename__ = "distributors"

    id = Column(Integer, primary_key=True, index=True)
    company_name = Column(String, nullable=False)
    contact_email = Column(String, nullable=True)
    country = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", back_populates="distributor")
    customers = relationship("Customer", back_populates="distributor")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    company_name = Column(String, nullable=False)
    distributor_id = Column(Integer, ForeignKey("distributors.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    distributor = relationship("Distributor", back_populates="customers")
    devices = relationship("Device", back_populates="customer")


class Device(Base):
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    serial_number = Column(String, unique=True, index=True, nullable=False)
    device_name = Column(String, nullable=False)
    device_model = Column(String, nullable=True)
    product_id = Column(Integer, nullable=True, index=True)
    product_name = Column(String, nullable=True)
    # Статусы: "active", "inactive", "maintenance", "decommissioned"
    status = Column(String, nullable=False, default="active")
    current_firmware_version = Column(String, nullable=True)
    current_software_version = Column(String, nullable=True)
    last_update_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("Customer", back_populates="devices")
    update_history = relationship("DeviceUpdateHistory", back_populates="device")

    @property
    def distributor_id(self):
        return self.customer.distributor_id if self.customer else None


class SoftwareRelease(Base):
    __tablename__ = "software_releases"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    version = Column(String, nullable=False, index=True)
    release_type = Column(String, nullable=False)  # firmware / software / patch / hotfix / driver
    product_id = Column(Integer, nullable=True, index=True)
    product_name = Column(String, nullable=True)

    # Артефакт в объектном хранилище
    file_url = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    file_size = Column(BigInteger, nullable=True)
    checksum = Column(String, nullable=True)

    description = Column(Text, nullable=True)
    release_notes = Column(Text, nullable=True)
    changelog = Column(Text, nullable=True)
    min_previous_version = Column(String, nullable=True)

    target_type = Column(String, nullable=False, default="all")  # all / distributors / devices
    is_mandatory = Column(Boolean, default=False, nullable=False)
    status = Column(String, nullable=False, default="draft")  # draft / published / deprecated / recalled
    release_date = Column(Date, nullable=False, default=date.today)
    published_at = Column(DateTime, nullable=True)
    notify_on_publish = Column(Boolean, default=True, nullable=False)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    distributor_targets = relationship("ReleaseDistributorTarget", back_populates="release")
    device_targets = relationship("ReleaseDeviceTarget", back_populates="release")
    created_by_user = relationship("User")


class ReleaseDistributorTarget(Base):
    __tablename__ = "software_release_distributors"

    id = Column(Integer, primary_key=True, index=True)
    release_id = Column(Integer, ForeignKey("software_releases.id"), nullable=False, index=True)
    distributor_id = Column(Integer, ForeignKey("distributors.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    notified_at = Column(DateTime, nullable=True)

    release = relationship("SoftwareRelease", back_populates="distributor_targets")
    distributor = relationship("Distributor")

    __table_args__ = (UniqueConstraint("release_id", "distributor_id", name="uq_release_distributor"),)


class ReleaseDeviceTarget(Base):
    __tablename__ = "software_release_devices"

    id = Column(Integer, primary_key=True, index=True)
    release_id = Column(Integer, ForeignKey("software_releases.id"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    notified_at = Column(DateTime, nullable=True)

    release = relationship("SoftwareRelease", back_populates="device_targets")
    device = relationship("Device")

    __table_args__ = (UniqueConstraint("release_id", "device_id", name="uq_release_device"),)


class ReleaseDownload(Base):
    __tablename__ = "software_release_downloads"

    id = Column(Integer, primary_key=True, index=True)
    release_id = Column(Integer, ForeignKey("software_releases.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    downloaded_at = Column(DateTime, default=datetime.utcnow)


class DeviceUpdateHistory(Base):
    __tablename__ = "device_update_history"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False, index=True)
    # без FK: история переживает удаление черновика релиза
    release_id = Column(Integer, nullable=True, index=True)
    version_installed = Column(String, nullable=False)
    release_type = Column(String, nullable=True)
    release_name = Column(String, nullable=True)
    previous_version = Column(String, nullable=True)
    installed_at = Column(DateTime, default=datetime.utcnow)
    installed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    installation_notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="success")  # success / failed / rolled_back

    device = relationship("Device", back_populates="update_history")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # "release_published"
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    related_type = Column(String, nullable=True)
    related_id = Column(Integer, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=func.now())
    read_at = Column(DateTime, nullable=True)

    user = relationship("User")
