import asyncio
import base64
import hashlib
import io

import httpx
import pytest

from app.services.errors import StorageError, TransportError, UploadCancelledError
from app.services.storage_client import (
    CancellationToken,
    StorageClient,
    UploadProgress,
    build_object_path,
    sanitize_filename,
)

from conftest import BUCKET, STORAGE_URL, FakeTusServer, make_storage

PAYLOAD = b"0123456789"


def _upload(storage, data=PAYLOAD, **kwargs):
    return asyncio.run(storage.upload_release_file(io.BytesIO(data), "firmware v2.bin", **kwargs))


def test_sanitize_filename_and_path():
    assert sanitize_filename("../Прошивка v2 (final).bin") == "v2_final_.bin"
    assert sanitize_filename("???") == "artifact"
    assert build_object_path("fw.bin", timestamp_ms=1700000000000) == "releases/1700000000000-fw.bin"


def test_upload_in_chunks_reports_progress():
    server = FakeTusServer()
    progress = []
    artifact = _upload(make_storage(server, chunk_size=4), on_progress=progress.append, access_token="user-token")

    assert server.uploads["u1"]["data"] == PAYLOAD
    assert [p.bytes_uploaded for p in progress] == [4, 8, 10]
    assert progress[-1].percent == 100
    assert all(p.total_bytes == 10 for p in progress)

    assert artifact.file_name == "firmware v2.bin"
    assert artifact.size == 10
    assert artifact.checksum == hashlib.sha256(PAYLOAD).hexdigest()
    assert artifact.path.startswith("releases/") and artifact.path.endswith("-firmware_v2.bin")
    assert artifact.url == f"{STORAGE_URL}/storage/v1/object/public/{BUCKET}/{artifact.path}"

    create = server.requests[0]
    assert create.headers["Authorization"] == "Bearer user-token"
    assert create.headers["apikey"] == "service-key"
    assert create.headers["Upload-Length"] == "10"
    assert create.headers["Tus-Resumable"] == "1.0.0"
    metadata = dict(item.split(" ") for item in create.headers["Upload-Metadata"].split(","))
    assert base64.b64decode(metadata["bucketName"]).decode() == BUCKET
    assert base64.b64decode(metadata["objectName"]).decode() == artifact.path
    for patch in server.patch_requests():
        assert patch.headers["Content-Type"] == "application/offset+octet-stream"


def test_small_file_still_uses_chunked_protocol():
    server = FakeTusServer()
    _upload(make_storage(server, chunk_size=1024), data=b"abc")
    assert len(server.patch_requests()) == 1
    assert server.requests[0].method == "POST"


def test_offset_conflict_resumes_from_server_offset():
    server = FakeTusServer(conflict_once_at=4)
    _upload(make_storage(server, chunk_size=4))
    assert server.uploads["u1"]["data"] == PAYLOAD
    assert any(r.method == "HEAD" for r in server.requests)


def test_cancel_stops_before_next_chunk():
    server = FakeTusServer()
    token = CancellationToken()
    progress = []

    def on_progress(p):
        progress.append(p)
        token.cancel()

    with pytest.raises(UploadCancelledError):
        _upload(make_storage(server, chunk_size=4), on_progress=on_progress, cancel_token=token)

    assert len(server.patch_requests()) == 1
    assert len(progress) == 1
    assert server.terminated == ["u1"]


def test_cancel_during_chunk_reports_no_progress():
    server = FakeTusServer()
    token = CancellationToken()
    server.before_patch = lambda upload: token.cancel()
    progress = []

    with pytest.raises(UploadCancelledError):
        _upload(make_storage(server, chunk_size=4), on_progress=progress.append, cancel_token=token)

    assert progress == []
    assert len(server.patch_requests()) == 1
    assert server.terminated == ["u1"]


def test_cancelled_before_start_sends_nothing():
    server = FakeTusServer()
    token = CancellationToken()
    token.cancel()
    with pytest.raises(UploadCancelledError):
        _upload(make_storage(server), cancel_token=token)
    assert server.requests == []


def test_auth_failure_is_transport_error():
    server = FakeTusServer(fail_status=401)
    with pytest.raises(TransportError):
        _upload(make_storage(server))


def test_server_error_is_storage_error():
    server = FakeTusServer(fail_status=500)
    with pytest.raises(StorageError):
        _upload(make_storage(server))


def test_network_failure_is_transport_error():
    def broken(request):
        raise httpx.ConnectError("connection refused", request=request)

    storage = StorageClient(STORAGE_URL, "service-key", BUCKET, transport=httpx.MockTransport(broken))
    with pytest.raises(TransportError):
        _upload(storage)


def test_remove_by_url():
    server = FakeTusServer()
    storage = make_storage(server)
    url = storage.public_url("releases/1-fw.bin")

    assert asyncio.run(storage.remove_by_url(url)) is True
    assert server.removed == ["releases/1-fw.bin"]
    assert asyncio.run(storage.remove_by_url("https://cdn.example.com/other/fw.bin")) is False


def test_remove_failure_raises_storage_error():
    storage = make_storage(FakeTusServer(fail_status=503))
    with pytest.raises(StorageError):
        asyncio.run(storage.remove(["releases/1-fw.bin"]))


def test_progress_estimates():
    progress = UploadProgress(bytes_uploaded=25, total_bytes=100, elapsed_seconds=5.0)
    assert progress.percent == 25
    assert progress.bytes_per_second == 5.0
    assert progress.eta_seconds == 15.0
    assert UploadProgress(0, 100, 0.0).eta_seconds is None


def test_failed_chunk_terminates_server_upload():
    server = FakeTusServer(patch_status=500)
    with pytest.raises(StorageError):
        _upload(make_storage(server))
    assert server.terminated == ["u1"]


def test_malformed_offset_header_is_storage_error():
    server = FakeTusServer()

    def handler(request):
        response = server(request)
        if request.method == "PATCH":
            return httpx.Response(204, headers={"Upload-Offset": "garbage"})
        return response

    storage = StorageClient(STORAGE_URL, "service-key", BUCKET, chunk_size=4, transport=httpx.MockTransport(handler))
    with pytest.raises(StorageError):
        _upload(storage)
    assert server.terminated == ["u1"]
