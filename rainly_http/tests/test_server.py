import os
import logging
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_PASSWORD, MAX_TEST_UPLOAD, make_config, stored_files
from logger_config import LOGGER_NAME
from main import create_app


def upload(client, filename, content, headers=None, **kwargs):
    return client.post("/upload", files={"file": (filename, content)}, headers=headers, **kwargs)


def auth_header(password=TEST_PASSWORD):
    return {"X-Upload-Password": password}


def generate_random_content(size_bytes):
    """Generate random binary content of specified size."""
    return os.urandom(size_bytes)


def test_upload_then_download_report(client, storage_dir):
    """Upload report.pdf with the header secret and read it back."""
    response = upload(client, "report.pdf", b"hello data", headers=auth_header())
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    body = response.json()
    assert body["code"] == 200
    assert body["filename"] == "report.pdf"
    assert body["savePath"] == str(storage_dir / "report.pdf")
    assert body["message"]

    response = client.get("/report.pdf")
    assert response.status_code == 200
    assert response.content == b"hello data"
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-length"] == "10"
    assert response.headers["accept-ranges"] == "bytes"
    assert "last-modified" in response.headers


def test_binary_round_trip(client):
    content = generate_random_content(MAX_TEST_UPLOAD // 2)
    response = upload(client, "blob.bin", content, headers=auth_header())
    assert response.status_code == 200

    response = client.get("/blob.bin")
    assert response.status_code == 200
    assert response.content == content


def test_password_from_form_field(client, storage_dir):
    response = client.post(
        "/upload",
        files={"file": ("form.txt", b"via form")},
        data={"password": TEST_PASSWORD},
    )
    assert response.status_code == 200
    assert (storage_dir / "form.txt").read_bytes() == b"via form"


def test_password_from_query_parameter(client, storage_dir):
    response = upload(client, "query.txt", b"via query", params={"password": TEST_PASSWORD})
    assert response.status_code == 200
    assert (storage_dir / "query.txt").read_bytes() == b"via query"


def test_header_password_takes_priority(client, storage_dir):
    """A wrong header is not rescued by a correct form field or query parameter."""
    response = client.post(
        "/upload",
        files={"file": ("prio.txt", b"data")},
        data={"password": TEST_PASSWORD},
        params={"password": TEST_PASSWORD},
        headers=auth_header("wrong"),
    )
    assert response.status_code == 401
    assert stored_files(storage_dir) == []


def test_form_password_takes_priority_over_query(client, storage_dir):
    response = client.post(
        "/upload",
        files={"file": ("prio.txt", b"data")},
        data={"password": "wrong"},
        params={"password": TEST_PASSWORD},
    )
    assert response.status_code == 401
    assert stored_files(storage_dir) == []


def test_upload_without_password(client, storage_dir):
    response = upload(client, "nopass.txt", b"data")
    assert response.status_code == 401
    assert "not authorized" in response.text
    assert stored_files(storage_dir) == []


def test_wrong_password_does_not_modify_existing_file(client, storage_dir):
    assert upload(client, "keep.txt", b"original", headers=auth_header()).status_code == 200

    response = upload(client, "keep.txt", b"replaced", headers=auth_header("nope"))
    assert response.status_code == 401
    assert (storage_dir / "keep.txt").read_bytes() == b"original"


def test_wrong_password_is_audit_logged(client, caplog):
    with caplog.at_level(logging.WARNING, logger=LOGGER_NAME):
        response = upload(client, "audit.txt", b"data", headers=auth_header("guess123"))
    assert response.status_code == 401
    assert "wrong password" in caplog.text
    assert "guess123" in caplog.text
    assert "testclient" in caplog.text


def test_filename_separators_are_stripped(client, storage_dir):
    response = upload(client, "a/b/c.txt", b"nested name", headers=auth_header())
    assert response.status_code == 200
    assert response.json()["filename"] == "abc.txt"
    assert stored_files(storage_dir) == ["abc.txt"]

    response = client.get("/abc.txt")
    assert response.content == b"nested name"


def test_filename_whitespace_is_trimmed(client, storage_dir):
    response = upload(client, "  notes.txt  ", b"notes", headers=auth_header())
    assert response.status_code == 200
    assert response.json()["filename"] == "notes.txt"
    assert stored_files(storage_dir) == ["notes.txt"]


def test_empty_filename_after_sanitizing(client, storage_dir):
    response = upload(client, "  /  ", b"data", headers=auth_header())
    assert response.status_code == 400
    assert "must not be empty" in response.text
    assert stored_files(storage_dir) == []


def test_dot_dot_filename_is_forbidden(client, storage_dir):
    response = upload(client, "..", b"data", headers=auth_header())
    assert response.status_code == 403
    assert stored_files(storage_dir) == []


def test_missing_file_part(client, storage_dir):
    response = client.post(
        "/upload",
        files={"attachment": ("x.txt", b"data")},
        headers=auth_header(),
    )
    assert response.status_code == 400
    assert "no file part named 'file'" in response.text
    assert stored_files(storage_dir) == []


def test_upload_too_large(client, storage_dir):
    content = generate_random_content(MAX_TEST_UPLOAD + 1)
    response = upload(client, "big.bin", content, headers=auth_header())
    assert response.status_code == 413
    assert "too large" in response.text
    assert stored_files(storage_dir) == []


def test_upload_too_large_without_content_length(client, storage_dir, caplog):
    """A streamed body with no Content-Length is cut off by the size ceiling."""
    boundary = "rainlyboundary"
    head = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="file"; filename="stream.bin"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--\r\n".encode()

    def body():
        yield head
        for _ in range(MAX_TEST_UPLOAD // 1024 + 8):
            yield b"x" * 1024
        yield tail

    with caplog.at_level(logging.WARNING, logger=LOGGER_NAME):
        response = client.post(
            "/upload",
            content=body(),
            headers={
                "Content-Type": f"multipart/form-data; boundary={boundary}",
                "X-Upload-Password": TEST_PASSWORD,
            },
        )
    assert response.status_code == 413
    assert "file too large" in response.json()["detail"]
    assert f"streamed body exceeds {MAX_TEST_UPLOAD} bytes" in caplog.text
    assert "unparseable" not in caplog.text
    assert stored_files(storage_dir) == []


def test_wrong_password_checked_before_size(client, storage_dir):
    content = generate_random_content(MAX_TEST_UPLOAD + 1)
    response = upload(client, "big.bin", content, headers=auth_header("wrong"))
    assert response.status_code == 401


def test_not_multipart_body(client, storage_dir):
    response = client.post("/upload", json={"file": "data"}, headers=auth_header())
    assert response.status_code == 413
    assert "not multipart/form-data" in response.text
    assert stored_files(storage_dir) == []


def test_multipart_without_boundary(client, storage_dir):
    response = client.post(
        "/upload",
        content=b"garbage",
        headers={"Content-Type": "multipart/form-data", "X-Upload-Password": TEST_PASSWORD},
    )
    assert response.status_code == 413
    assert stored_files(storage_dir) == []


def test_reupload_overwrites(client, storage_dir):
    long_content = generate_random_content(4096)
    short_content = b"short"

    assert upload(client, "same.bin", long_content, headers=auth_header()).status_code == 200
    assert upload(client, "same.bin", short_content, headers=auth_header()).status_code == 200

    response = client.get("/same.bin")
    assert response.content == short_content
    assert (storage_dir / "same.bin").stat().st_size == len(short_content)


def test_create_failure_returns_500(client, storage_dir):
    (storage_dir / "taken.txt").mkdir()
    response = upload(client, "taken.txt", b"data", headers=auth_header())
    assert response.status_code == 500
    assert "Failed to create file" in response.text


def test_upload_wrong_method(client):
    response = client.get("/upload")
    assert response.status_code == 405
    assert "Only POST requests are supported" in response.text
    assert response.headers["allow"] == "POST"


def test_download_wrong_method(client, storage_dir):
    (storage_dir / "file.txt").write_bytes(b"data")
    for method in ["POST", "PUT", "DELETE", "PATCH"]:
        response = client.request(method, "/file.txt")
        assert response.status_code == 405
        assert "Only GET requests are supported" in response.text
        assert response.headers["allow"] == "GET"
    assert (storage_dir / "file.txt").read_bytes() == b"data"


@pytest.mark.parametrize("method", ["TRACE", "PROPFIND"])
def test_unrouted_methods_get_descriptive_405(client, storage_dir, method):
    (storage_dir / "file.txt").write_bytes(b"data")

    response = client.request(method, "/upload")
    assert response.status_code == 405
    assert "Only POST requests are supported" in response.text
    assert response.headers["allow"] == "POST"

    response = client.request(method, "/file.txt")
    assert response.status_code == 405
    assert "Only GET requests are supported" in response.text
    assert response.headers["allow"] == "GET"


def test_download_empty_filename(client):
    response = client.get("/")
    assert response.status_code == 400
    assert "specify a file name" in response.text


def test_download_nonexistent(client):
    response = client.get("/nonexistent.txt")
    assert response.status_code == 404


def test_download_directory_is_not_listed(client, storage_dir):
    (storage_dir / "sub").mkdir()
    (storage_dir / "sub" / "inner.txt").write_bytes(b"inner")
    response = client.get("/sub")
    assert response.status_code == 404
    assert "inner.txt" not in response.text


@pytest.mark.parametrize("path", [
    "/../../etc/passwd",
    "/..%2F..%2Fetc%2Fpasswd",
    "/%2E%2E/secret.txt",
])
def test_download_traversal(client, storage_dir, path):
    (storage_dir.parent / "secret.txt").write_bytes(b"top secret")
    response = client.get(path)
    assert response.status_code in (403, 404)
    assert b"top secret" not in response.content
    assert b"root:" not in response.content



def test_lifespan_creates_storage_dir(tmp_path):
    storage_dir = tmp_path / "deep" / "nested" / "download"
    app = create_app(make_config(storage_dir))
    with TestClient(app) as client:
        assert storage_dir.is_dir()
        assert client.get("/missing.txt").status_code == 404


def test_lifespan_fails_when_storage_dir_cannot_be_created(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_bytes(b"not a directory")
    app = create_app(make_config(blocker / "download"))
    with caplog.at_level(logging.CRITICAL, logger=LOGGER_NAME):
        with pytest.raises(OSError):
            with TestClient(app):
                pass
    assert "Failed to create storage directory" in caplog.text
