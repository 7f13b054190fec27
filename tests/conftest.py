import json
import re

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.bootstrap_admin import seed_roles_and_permissions
from app.db import Base, get_db
from app.main import app
from app.models import Customer, Device, Distributor, Role, User
from app.services.auth_service import get_current_user_from_cookie
from app.services.storage_client import StorageClient, get_storage_client
from app.services.upload_registry import UploadRegistry, get_upload_registry

STORAGE_URL = "http://storage.test"
BUCKET = "software-releases"


class FakeTusServer:
    """Минимальный TUS-сервер для httpx.MockTransport"""

    def __init__(self, fail_status=None, conflict_once_at=None, patch_status=None):
        self.uploads = {}
        self.requests = []
        self.removed = []
        self.terminated = []
        self.fail_status = fail_status
        self.conflict_once_at = conflict_once_at
        self.patch_status = patch_status
        self.before_patch = None
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if self.fail_status:
            return httpx.Response(self.fail_status, text="denied")

        if request.method == "POST" and path == "/storage/v1/upload/resumable":
            self._counter += 1
            upload_id = f"u{self._counter}"
            self.uploads[upload_id] = {
                "length": int(request.headers["Upload-Length"]),
                "data": b"",
                "metadata": request.headers["Upload-Metadata"],
            }
            return httpx.Response(201, headers={"Location": f"/storage/v1/upload/resumable/{upload_id}"})

        match = re.match(r"^/storage/v1/upload/resumable/(\w+)$", path)
        if match:
            upload = self.uploads[match.group(1)]
            if request.method == "HEAD":
                return httpx.Response(200, headers={"Upload-Offset": str(len(upload["data"]))})
            if request.method == "DELETE":
                self.terminated.append(match.group(1))
                return httpx.Response(204)
            if request.method == "PATCH":
                if self.before_patch is not None:
                    self.before_patch(upload)
                if self.patch_status:
                    return httpx.Response(self.patch_status, text="chunk rejected")
                offset = int(request.headers["Upload-Offset"])
                if self.conflict_once_at is not None and offset == self.conflict_once_at:
                    self.conflict_once_at = None
                    return httpx.Response(409)
                if offset != len(upload["data"]):
                    return httpx.Response(409)
                upload["data"] += request.content
                return httpx.Response(204, headers={"Upload-Offset": str(len(upload["data"]))})

        if request.method == "DELETE" and path == f"/storage/v1/object/{BUCKET}":
            self.removed.extend(json.loads(request.content)["prefixes"])
            return httpx.Response(200, json=[])

        return httpx.Response(404)

    def patch_requests(self):
        return [r for r in self.requests if r.method == "PATCH"]


def make_storage(server, chunk_size=4):
    return StorageClient(
        base_url=STORAGE_URL,
        service_key="service-key",
        bucket=BUCKET,
        chunk_size=chunk_size,
        transport=httpx.MockTransport(server),
    )


@pytest.fixture()
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    seed_roles_and_permissions(session)
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def fleet(db_session):
    """Два дистрибьютора, по клиенту и устройству у каждого"""
    db = db_session
    dist_d = Distributor(company_name="Distributor D")
    dist_e = Distributor(company_name="Distributor E")
    db.add_all([dist_d, dist_e])
    db.flush()
    cust_d = Customer(company_name="Clinic D", distributor_id=dist_d.id)
    cust_e = Customer(company_name="Clinic E", distributor_id=dist_e.id)
    db.add_all([cust_d, cust_e])
    db.flush()
    device_a = Device(
        serial_number="SN-A", device_name="Device A", customer_id=cust_d.id, product_id=1,
        current_firmware_version="1.5.0", current_software_version="3.0.0",
    )
    device_b = Device(
        serial_number="SN-B", device_name="Device B", customer_id=cust_e.id, product_id=1,
        current_firmware_version="1.5.0", current_software_version="3.0.0",
    )
    db.add_all([device_a, device_b])
    db.commit()
    return {"D": dist_d, "E": dist_e, "A": device_a, "B": device_b}


def make_user(db, username, role_name, distributor_id=None):
    role = db.query(Role).filter(Role.name == role_name).first()
    user = User(
        username=username,
        password_hash="x",
        role_id=role.id,
        distributor_id=distributor_id,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def storage_server():
    return FakeTusServer()


@pytest.fixture()
def api(db_session, storage_server):
    """TestClient с подменой БД, хранилища, реестра загрузок и текущего пользователя"""
    registry = UploadRegistry()
    state = {"user": make_user(db_session, "admin", "ADMIN")}

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_from_cookie] = lambda: state["user"]
    app.dependency_overrides[get_storage_client] = lambda: make_storage(storage_server)
    app.dependency_overrides[get_upload_registry] = lambda: registry

    client = TestClient(app)
    try:
        yield client, state, registry
    finally:
        app.dependency_overrides.clear()
