import pytest

pytestmark = [pytest.mark.api, pytest.mark.asyncio]


async def _ticket(async_client, headers) -> str:
    response = await async_client.post("/api/v1/tickets", json={"title": "Scanner offline"}, headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


async def test_upload_list_download_delete(async_client, auth_headers, storage):
    alice = auth_headers("alice")
    ticket_id = await _ticket(async_client, alice)

    response = await async_client.post(
        f"/api/v1/tickets/{ticket_id}/upload",
        files=[
            ("files", ("scan.pdf", b"%PDF-1.4", "application/pdf")),
            ("files", ("notes.txt", b"hello", "text/plain")),
        ],
        headers=alice,
    )
    assert response.status_code == 201, response.text
    uploaded = response.json()["attachments"]
    assert [a["filename"] for a in uploaded] == ["scan.pdf", "notes.txt"]
    assert all("storage_path" not in a for a in uploaded)

    listed = await async_client.get(f"/api/v1/tickets/{ticket_id}/attachments", headers=alice)
    assert len(listed.json()["attachments"]) == 2

    attachment_id = uploaded[1]["id"]
    download = await async_client.get(f"/api/v1/tickets/{ticket_id}/download/{attachment_id}", headers=alice)
    assert download.status_code == 200
    assert download.content == b"hello"
    assert 'filename="notes.txt"' in download.headers["Content-Disposition"]

    deleted = await async_client.delete(f"/api/v1/tickets/{ticket_id}/attachments/{attachment_id}", headers=alice)
    assert deleted.status_code == 204
    assert len(storage.objects) == 1


async def test_disallowed_type_is_rejected(async_client, auth_headers, storage):
    alice = auth_headers("alice")
    ticket_id = await _ticket(async_client, alice)

    response = await async_client.post(
        f"/api/v1/tickets/{ticket_id}/upload",
        files=[("files", ("run.exe", b"MZ", "application/x-msdownload"))],
        headers=alice,
    )

    assert response.status_code == 422
    assert storage.objects == {}


async def test_download_missing_file_is_404(async_client, auth_headers, storage):
    alice = auth_headers("alice")
    ticket_id = await _ticket(async_client, alice)
    response = await async_client.post(
        f"/api/v1/tickets/{ticket_id}/upload",
        files=[("files", ("notes.txt", b"hello", "text/plain"))],
        headers=alice,
    )
    attachment_id = response.json()["attachments"][0]["id"]
    storage.objects.clear()

    download = await async_client.get(f"/api/v1/tickets/{ticket_id}/download/{attachment_id}", headers=alice)

    assert download.status_code == 404
    assert download.json()["code"] == "attachment.file_missing"


async def test_download_non_latin1_filename(async_client, auth_headers):
    alice = auth_headers("alice")
    ticket_id = await _ticket(async_client, alice)
    response = await async_client.post(
        f"/api/v1/tickets/{ticket_id}/upload",
        files=[("files", ("报告.txt", b"hi", "text/plain"))],
        headers=alice,
    )
    assert response.status_code == 201, response.text
    attachment = response.json()["attachments"][0]
    assert attachment["filename"] == "报告.txt"

    download = await async_client.get(f"/api/v1/tickets/{ticket_id}/download/{attachment['id']}", headers=alice)

    assert download.status_code == 200
    assert download.content == b"hi"
    disposition = download.headers["Content-Disposition"]
    assert 'filename="__.txt"' in disposition
    assert "filename*=UTF-8''%E6%8A%A5%E5%91%8A.txt" in disposition


async def test_oversized_upload_is_rejected(async_client, auth_headers, services, storage):
    services.attachments.max_bytes = 8
    alice = auth_headers("alice")
    ticket_id = await _ticket(async_client, alice)

    response = await async_client.post(
        f"/api/v1/tickets/{ticket_id}/upload",
        files=[("files", ("big.txt", b"x" * 20, "text/plain"))],
        headers=alice,
    )

    assert response.status_code == 422
    assert response.json()["meta"]["max_bytes"] == 8
    assert storage.objects == {}
