import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from app.config import settings
from app.db import get_db
from app.main import app
from app.models import Role, User
from app.services.auth_service import get_access_token, hash_password, user_has_permission, verify_password


@pytest.fixture()
def auth_client(db_session):
    role = db_session.query(Role).filter(Role.name == "DISTRIBUTOR").first()
    db_session.add(User(username="dealer", password_hash=hash_password("secret"), role_id=role.id, is_active=True))
    db_session.commit()

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_password_hashing():
    hashed = hash_password("secret")
    assert hashed != "secret"
    assert verify_password("secret", hashed)
    assert not verify_password("wrong", hashed)


def test_login_sets_cookie_and_grants_access(auth_client):
    resp = auth_client.post("/auth/login", data={"username": "dealer", "password": "secret"})
    assert resp.status_code == 200
    assert resp.json()["role"] == "DISTRIBUTOR"
    assert "access_token" in resp.cookies

    assert auth_client.get("/api/v1/releases/").status_code == 200
    assert auth_client.get("/admin/releases/").status_code == 403


def test_wrong_password(auth_client):
    resp = auth_client.post("/auth/login", data={"username": "dealer", "password": "nope"})
    assert resp.status_code == 401


def test_no_cookie_is_unauthorized(auth_client):
    assert auth_client.get("/api/v1/releases/").status_code == 401


def test_logout_clears_cookie(auth_client):
    auth_client.post("/auth/login", data={"username": "dealer", "password": "secret"})
    assert auth_client.post("/auth/logout").status_code == 200
    assert auth_client.get("/api/v1/releases/").status_code == 401


def test_permissions_by_role(db_session):
    role = db_session.query(Role).filter(Role.name == "DISTRIBUTOR").first()
    user = User(username="viewer", password_hash="x", role_id=role.id)
    db_session.add(user)
    db_session.commit()
    assert user_has_permission(user, db_session, "releases.view")
    assert not user_has_permission(user, db_session, "releases.manage")


def _request_with_cookie(token):
    return Request({"type": "http", "headers": [(b"cookie", f"access_token={token}".encode())]})


def test_storage_token_follows_setting(monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_FORWARD_USER_TOKEN", True)
    assert get_access_token(_request_with_cookie("jwt-value")) == "jwt-value"

    monkeypatch.setattr(settings, "STORAGE_FORWARD_USER_TOKEN", False)
    assert get_access_token(_request_with_cookie("jwt-value")) is None
