from app.models import Notification, ReleaseDownload, SoftwareRelease

from conftest import make_user


def _create(client, version="2.0.0", **fields):
    data = {"name": "Controller firmware", "version": version, "release_type": "firmware", "product_id": "1"}
    data.update(fields)
    files = {"file": ("fw.bin", b"firmware-bytes", "application/octet-stream")}
    return client.post("/admin/releases/", data=data, files=files)


def test_create_release_uploads_then_persists(api, db_session, storage_server):
    client, _, registry = api
    resp = _create(client, upload_id="up-1")
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "draft"
    assert body["file_name"] == "fw.bin"
    assert body["file_size"] == len(b"firmware-bytes")
    assert body["file_url"].startswith("http://storage.test/storage/v1/object/public/software-releases/releases/")
    assert storage_server.uploads["u1"]["data"] == b"firmware-bytes"

    progress = client.get("/admin/releases/uploads/up-1").json()
    assert progress["status"] == "done"
    assert progress["progress"]["percent"] == 100


def test_create_with_targets_and_publish(api, db_session, fleet):
    client, _, _ = api
    resp = _create(client, target_type="distributors", target_ids=f"{fleet['D'].id}", publish_immediately="true")
    assert resp.status_code == 201
    assert resp.json()["status"] == "published"
    assert resp.json()["target_type"] == "distributors"


def test_duplicate_version_returns_409_without_upload(api, storage_server):
    client, _, _ = api
    assert _create(client).status_code == 201
    uploads_before = len(storage_server.uploads)

    resp = _create(client)
    assert resp.status_code == 409
    assert "2.0.0" in resp.json()["detail"]
    assert len(storage_server.uploads) == uploads_before


def test_failed_upload_writes_no_row(api, db_session, storage_server):
    client, _, _ = api
    storage_server.fail_status = 500
    resp = _create(client)
    assert resp.status_code == 502
    assert db_session.query(SoftwareRelease).count() == 0


def test_rejected_auth_on_upload(api, db_session, storage_server):
    client, _, _ = api
    storage_server.fail_status = 403
    resp = _create(client)
    assert resp.status_code == 502
    assert db_session.query(SoftwareRelease).count() == 0


def test_lifecycle_over_http(api, db_session):
    client, _, _ = api
    release_id = _create(client).json()["id"]

    assert client.post(f"/admin/releases/{release_id}/deprecate").status_code == 409
    assert client.post(f"/admin/releases/{release_id}/publish").json()["status"] == "published"
    assert client.post(f"/admin/releases/{release_id}/publish").status_code == 409
    assert client.delete(f"/admin/releases/{release_id}").status_code == 409
    assert client.put(f"/admin/releases/{release_id}", json={"version": "2.0.1"}).status_code == 409
    assert client.post(f"/admin/releases/{release_id}/deprecate").json()["status"] == "deprecated"


def test_delete_draft_over_http(api, db_session, storage_server):
    client, _, _ = api
    release_id = _create(client).json()["id"]

    resp = client.delete(f"/admin/releases/{release_id}")
    assert resp.status_code == 200
    assert db_session.query(SoftwareRelease).count() == 0
    assert len(storage_server.removed) == 1
    assert client.get(f"/admin/releases/{release_id}").status_code == 404


def test_list_detail_targets_stats(api, db_session, fleet):
    client, _, _ = api
    release_id = _create(client).json()["id"]

    listing = client.get("/admin/releases/", params={"search": "controller"}).json()
    assert listing["total"] == 1
    assert listing["items"][0]["release_type_label"] == "Прошивка"

    resp = client.put(f"/admin/releases/{release_id}/targets", json={"target_type": "devices", "ids": [fleet["A"].id]})
    assert resp.json() == {"target_type": "devices", "distributor_ids": [], "device_ids": [fleet["A"].id]}

    detail = client.get(f"/admin/releases/{release_id}").json()
    assert detail["target_count"] == 1
    assert detail["target_devices"][0]["serial_number"] == "SN-A"

    outdated = client.get(f"/admin/releases/{release_id}/outdated-devices").json()
    assert [d["serial_number"] for d in outdated] == ["SN-A"]

    stats = client.get(f"/admin/releases/{release_id}/stats").json()
    assert stats["target_count"] == 1
    assert stats["install_percentage"] == 0


def test_unknown_targets_404(api, fleet):
    client, _, _ = api
    release_id = _create(client).json()["id"]
    resp = client.put(f"/admin/releases/{release_id}/targets", json={"target_type": "devices", "ids": [999]})
    assert resp.status_code == 404


def test_cancel_unknown_upload(api):
    client, _, registry = api
    assert client.post("/admin/releases/uploads/nope/cancel").status_code == 404

    tracker = registry.start("fw.bin", upload_id="in-flight")
    resp = client.post("/admin/releases/uploads/in-flight/cancel")
    assert resp.json() == {"upload_id": "in-flight", "cancelled": True}
    assert tracker.token.cancelled
    assert client.get("/admin/releases/uploads/in-flight").json()["status"] == "cancelling"


def test_notify_resends_only_to_new_targets(api, db_session, fleet):
    client, _, _ = api
    make_user(db_session, "d-staff", "DISTRIBUTOR", distributor_id=fleet["D"].id)
    make_user(db_session, "e-staff", "DISTRIBUTOR", distributor_id=fleet["E"].id)
    release_id = _create(client, target_type="distributors", target_ids=str(fleet["D"].id)).json()["id"]
    client.post(f"/admin/releases/{release_id}/publish")
    assert db_session.query(Notification).count() == 1

    resp = client.post(f"/admin/releases/{release_id}/notify")
    assert resp.json()["notifications"] == 0
    assert db_session.query(Notification).count() == 1


def test_distributor_portal(api, db_session, fleet):
    client, state, _ = api
    public_id = _create(client, version="2.0.0").json()["id"]
    private_id = _create(client, version="2.1.0", target_type="distributors", target_ids=str(fleet["E"].id)).json()["id"]
    draft_id = _create(client, version="2.2.0").json()["id"]
    client.post(f"/admin/releases/{public_id}/publish")
    client.post(f"/admin/releases/{private_id}/publish")

    state["user"] = make_user(db_session, "d-staff", "DISTRIBUTOR", distributor_id=fleet["D"].id)

    listing = client.get("/api/v1/releases/").json()
    assert [item["id"] for item in listing["items"]] == [public_id]
    assert client.get("/api/v1/releases/pending-count").json() == {"count": 1}

    resp = client.post(f"/api/v1/releases/{public_id}/download")
    assert resp.status_code == 200
    assert resp.json()["file_name"] == "fw.bin"
    assert db_session.query(ReleaseDownload).count() == 1

    assert client.post(f"/api/v1/releases/{private_id}/download").status_code == 404
    assert client.post(f"/api/v1/releases/{draft_id}/download").status_code == 404
    assert client.get("/admin/releases/").status_code == 403


def test_devices_admin(api, db_session, fleet):
    client, _, _ = api
    release_id = _create(client).json()["id"]
    client.post(f"/admin/releases/{release_id}/publish")

    devices = client.get("/admin/devices/").json()
    assert {d["serial_number"] for d in devices} == {"SN-A", "SN-B"}

    available = client.get(f"/admin/devices/{fleet['A'].id}/available-releases").json()
    assert [r["id"] for r in available] == [release_id]

    resp = client.post(f"/admin/devices/{fleet['A'].id}/mark-updated", json={"release_id": release_id})
    assert resp.status_code == 200
    assert resp.json()["previous_version"] == "1.5.0"

    history = client.get(f"/admin/devices/{fleet['A'].id}/history").json()
    assert [h["version_installed"] for h in history] == ["2.0.0"]
    assert client.get(f"/admin/devices/{fleet['A'].id}/available-releases").json() == []
    assert client.post("/admin/devices/999/mark-updated", json={"release_id": release_id}).status_code == 404


def test_health(api):
    client, _, _ = api
    assert client.get("/health").json()["status"] == "ok"


def test_notification_inbox(api, db_session, fleet):
    client, state, _ = api
    staff = make_user(db_session, "d-staff", "DISTRIBUTOR", distributor_id=fleet["D"].id)
    release_id = _create(client).json()["id"]
    client.post(f"/admin/releases/{release_id}/publish")

    state["user"] = staff
    inbox = client.get("/notifications/").json()
    assert inbox["unread_count"] == 1
    assert inbox["items"][0]["related_id"] == release_id

    assert client.post("/notifications/read_all").json() == {"status": "ok"}
    assert client.get("/notifications/").json()["unread_count"] == 0
    assert client.post("/notifications/999/read").status_code == 404


def test_update_with_null_for_required_column_is_400(api, db_session):
    client, _, _ = api
    release_id = _create(client).json()["id"]
    for field in ("is_mandatory", "notify_on_publish", "release_type", "release_date"):
        resp = client.put(f"/admin/releases/{release_id}", json={field: None})
        assert resp.status_code == 400, field
    assert client.put(f"/admin/releases/{release_id}", json={"product_name": None}).status_code == 200


def test_unknown_target_ids_abort_create_before_upload(api, db_session, storage_server):
    client, _, registry = api
    resp = _create(client, upload_id="up-x", target_type="devices", target_ids="999")
    assert resp.status_code == 404
    assert "999" in resp.json()["detail"]
    assert db_session.query(SoftwareRelease).count() == 0
    assert storage_server.uploads == {}
    assert registry.get("up-x") is None
