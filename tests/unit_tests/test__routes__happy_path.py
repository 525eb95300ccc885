from urllib.parse import urlparse

from fastapi import status
from fastapi.testclient import TestClient

# Constants for testing
TEST_IMAGE_NAME = "a.png"
TEST_IMAGE_CONTENT = b"\x00" * 10
TEST_IMAGE_CONTENT_TYPE = "image/png"
TEST_TEXT_NAME = "b.txt"
TEST_TEXT_CONTENT = b"Hello, world!"
TEST_TEXT_CONTENT_TYPE = "text/plain"


def upload(client: TestClient, name=TEST_IMAGE_NAME, content=TEST_IMAGE_CONTENT, content_type=TEST_IMAGE_CONTENT_TYPE):
    return client.post("/v1/files", files={"file": (name, content, content_type)})


def test_upload_file(client: TestClient, local_queue):
    response = upload(client)

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["message"] == "File uploaded successfully!"
    assert body["file"]["original_name"] == TEST_IMAGE_NAME
    assert body["file"]["size_bytes"] == len(TEST_IMAGE_CONTENT)
    assert body["file"]["mime_type"] == TEST_IMAGE_CONTENT_TYPE
    assert body["file"]["tags"] is None
    assert body["file"]["storage_key"].endswith(f"-{TEST_IMAGE_NAME}")
    assert local_queue.pending_count() == 1


def test_upload_text_file_is_not_queued(client: TestClient, local_queue):
    response = upload(client, TEST_TEXT_NAME, TEST_TEXT_CONTENT, TEST_TEXT_CONTENT_TYPE)

    assert response.status_code == status.HTTP_201_CREATED
    assert local_queue.pending_count() == 0


def test_upload_without_file(client: TestClient):
    response = client.post("/v1/files")
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_list_files(client: TestClient):
    first = upload(client).json()["file"]
    second = upload(client, TEST_TEXT_NAME, TEST_TEXT_CONTENT, TEST_TEXT_CONTENT_TYPE).json()["file"]

    response = client.get("/v1/files")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["total_count"] == 2
    assert {item["storage_key"] for item in body["files"]} == {first["storage_key"], second["storage_key"]}
    assert all("signature=" in item["url"] for item in body["files"])


def test_signed_url_serves_content(client: TestClient):
    upload(client)
    [item] = client.get("/v1/files").json()["files"]

    parsed = urlparse(item["url"])
    response = client.get(f"{parsed.path}?{parsed.query}")

    assert response.status_code == status.HTTP_200_OK
    assert response.content == TEST_IMAGE_CONTENT


def test_signed_url_with_bad_signature(client: TestClient):
    key = upload(client).json()["file"]["storage_key"]

    response = client.get(f"/v1/files/{key}/content", params={"expires": 9999999999, "signature": "forged"})

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["error"] == "invalid_signature"


def test_get_file_metadata(client: TestClient):
    uploaded = upload(client).json()["file"]

    response = client.get(f"/v1/files/{uploaded['storage_key']}/metadata")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == uploaded


def test_download_file(client: TestClient):
    key = upload(client).json()["file"]["storage_key"]

    response = client.get(f"/v1/files/{key}")

    assert response.status_code == status.HTTP_200_OK
    assert response.content == TEST_IMAGE_CONTENT
    assert response.headers["content-type"] == TEST_IMAGE_CONTENT_TYPE


def test_download_unknown_file(client: TestClient):
    response = client.get("/v1/files/1718000000000-deadbeef-ghost.png")

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["error"] == "not_found"
    assert response.json()["retryable"] is False


def test_delete_file(client: TestClient):
    key = upload(client).json()["file"]["storage_key"]

    response = client.delete(f"/v1/files/{key}")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["object_existed"] is True
    assert client.get(f"/v1/files/{key}").status_code == status.HTTP_404_NOT_FOUND
    assert client.delete(f"/v1/files/{key}").status_code == status.HTTP_404_NOT_FOUND


def test_delete_reports_orphaned_object(client: TestClient, local_storage, monkeypatch):
    from storage_api.errors import StorageDeleteFailed

    key = upload(client).json()["file"]["storage_key"]

    def failing_delete(storage_key):
        raise StorageDeleteFailed("access denied", storage_key=storage_key)

    monkeypatch.setattr(local_storage, "delete", failing_delete)
    response = client.delete(f"/v1/files/{key}")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    body = response.json()
    assert body["error"] == "orphaned_object"
    assert body["metadata_deleted"] is True
    assert client.get("/v1/files").json()["total_count"] == 0


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "ok"
    assert body["ready"] is True
    assert body["deployment_mode"] == "local-dev"
    assert set(body["components"]) == {"api", "storage", "queue", "database"}
