import pytest
from conftest import auth_headers, make_user

from storage import UploadStorage, content_type_for


def _upload(app, name, data):
    uploads = app.extensions["suite.storage"].base_path
    uploads.mkdir(parents=True, exist_ok=True)
    (uploads / name).write_bytes(data)


@pytest.fixture()
def user_headers(app, db):
    return auth_headers(app, make_user(db, "viewer"))


def test_download_streams_inline(app, client, user_headers):
    _upload(app, "policy.pdf", b"%PDF-1.4 test")

    resp = client.get("/api/documents/download/policy.pdf", headers=user_headers)
    assert resp.status_code == 200
    assert resp.mimetype == "application/pdf"
    assert resp.headers["Content-Disposition"].startswith("inline")
    assert resp.data == b"%PDF-1.4 test"


def test_download_uses_basename_only(app, client, user_headers, tmp_path):
    (tmp_path / "secret.txt").write_text("top secret")
    _upload(app, "notes.txt", b"hello")

    resp = client.get("/api/documents/download/nested/dir/notes.txt", headers=user_headers)
    assert resp.status_code == 200
    assert resp.data == b"hello"

    resp = client.get("/api/documents/download/../secret.txt", headers=user_headers)
    assert resp.status_code == 404


def test_missing_file_is_404(client, user_headers):
    resp = client.get("/api/documents/download/nothing.docx", headers=user_headers)
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "File not found"}


def test_download_requires_session(client):
    assert client.get("/api/documents/download/policy.pdf").status_code == 401


@pytest.mark.parametrize(
    "name, expected",
    [
        ("a.PDF", "application/pdf"),
        ("a.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
        ("a.jpeg", "image/jpeg"),
        ("a.txt", "text/plain"),
        ("archive.zip", "application/octet-stream"),
        ("no-extension", "application/octet-stream"),
    ],
)
def test_content_types(name, expected):
    assert content_type_for(name) == expected


def test_resolve_rejects_dot_names(tmp_path):
    storage = UploadStorage(str(tmp_path))
    assert storage.resolve("..") is None
    assert storage.resolve("") is None
