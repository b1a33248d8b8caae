"""Tests for the bulk actions API: /api/v2/bulk-actions/*."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from web.backend.core.config import WebSettings

CONFIG = {"fieldsToUpdate": {"status": "active"}}
CSV_BODY = (
    b"id,name,email,age,status\n"
    b"1,Alice,a@x.com,30,active\n"
    b"2,Bob,b@x.com,41,inactive\n"
)


async def _create(client, entities=None, headers=None, **config):
    return await client.post(
        "/api/v2/bulk-actions",
        json={"actionType": "bulk-update", "config": {**CONFIG, **config}, "entities": entities or []},
        headers=headers or {},
    )


def _upload(client, body=CSV_BODY, filename="contacts.csv", content_type="text/csv", **form):
    data = {"actionType": "bulk-update", "fieldsToUpdate": '{"status": "active"}', **form}
    return client.post(
        "/api/v2/bulk-actions/upload",
        data=data,
        files={"file": (filename, body, content_type)},
    )


class TestCreateBulkAction:
    """POST /api/v2/bulk-actions."""

    @pytest.mark.asyncio
    async def test_create_success(self, client, work_queue):
        resp = await _create(client, [{"id": "1", "email": "a@x.com"}, {"_id": "2", "email": "b@x.com"}])

        assert resp.status_code == 201
        data = resp.json()
        assert data["actionType"] == "bulk-update"
        assert data["status"] == "queued"
        assert data["accountId"] == "default"
        assert data["stats"] == {"total": 2, "success": 0, "failed": 0, "skipped": 0}
        assert len(work_queue.jobs_for(data["id"])) == 1

    @pytest.mark.asyncio
    async def test_account_header(self, client):
        resp = await _create(client, headers={"X-Account-Id": "acme"})
        assert resp.json()["accountId"] == "acme"

    @pytest.mark.asyncio
    async def test_scheduled(self, client, work_queue):
        when = (datetime.now(timezone.utc) + timedelta(minutes=10)).isoformat()
        resp = await _create(client, [{"id": "1", "email": "a@x.com"}], scheduledFor=when)

        assert resp.status_code == 201
        assert resp.json()["status"] == "pending"
        assert resp.json()["scheduledFor"] is not None
        assert work_queue.jobs == []

    @pytest.mark.asyncio
    async def test_unsupported_type(self, client, action_store):
        resp = await client.post(
            "/api/v2/bulk-actions",
            json={"actionType": "bulk-delete", "config": CONFIG, "entities": []},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "UNSUPPORTED_ACTION_TYPE"
        assert action_store.actions == {}

    @pytest.mark.asyncio
    async def test_invalid_payload(self, client):
        resp = await client.post(
            "/api/v2/bulk-actions",
            json={"actionType": "bulk-update", "config": {}, "entities": []},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == {
            "detail": "config.fieldsToUpdate is required",
            "code": "INVALID_PAYLOAD",
        }

    @pytest.mark.asyncio
    async def test_entity_without_id(self, client):
        resp = await _create(client, [{"email": "a@x.com"}])
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_missing_action_type(self, client):
        resp = await client.post("/api/v2/bulk-actions", json={"config": CONFIG})
        assert resp.status_code == 422


class TestUpload:
    """POST /api/v2/bulk-actions/upload."""

    @pytest.mark.asyncio
    async def test_upload_success(self, client, entity_store):
        resp = await _upload(client)

        assert resp.status_code == 201
        data = resp.json()
        assert data["stats"]["total"] == 2
        assert data["config"] == {"fieldsToUpdate": {"status": "active"}}
        assert set(entity_store.statuses(data["id"])) == {"1", "2"}

    @pytest.mark.asyncio
    async def test_upload_by_extension(self, client):
        resp = await _upload(client, content_type="application/octet-stream")
        assert resp.status_code == 201

    @pytest.mark.asyncio
    async def test_undecodable_bytes_are_replaced(self, client, entity_store):
        body = b"id,name,email,age,status\n1,Jos\xe9,a@x.com,30,active\n"
        resp = await _upload(client, body=body)

        assert resp.status_code == 201
        (entity,) = entity_store.entities[resp.json()["id"]].values()
        assert entity.entity_data["name"] == "Jos\ufffd"

    @pytest.mark.asyncio
    async def test_wrong_file_type(self, client):
        resp = await _upload(client, filename="contacts.json", content_type="application/json")
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_FILE_TYPE"

    @pytest.mark.asyncio
    async def test_missing_file(self, client):
        resp = await client.post(
            "/api/v2/bulk-actions/upload",
            data={"actionType": "bulk-update", "fieldsToUpdate": "{}"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "FILE_REQUIRED"

    @pytest.mark.asyncio
    async def test_too_large(self, client):
        settings = WebSettings(UPLOAD_MAX_BYTES=16)
        with patch("web.backend.api.v2.bulk_actions.get_web_settings", return_value=settings):
            resp = await _upload(client)
        assert resp.status_code == 413
        assert resp.json()["detail"]["code"] == "CONTENT_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_bad_fields_json(self, client):
        resp = await _upload(client, fieldsToUpdate="{not json")
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_missing_fields_to_update(self, client, action_store):
        resp = await client.post(
            "/api/v2/bulk-actions/upload",
            data={"actionType": "bulk-update"},
            files={"file": ("contacts.csv", CSV_BODY, "text/csv")},
        )
        assert resp.status_code == 400
        assert action_store.actions == {}


class TestReadActions:
    """GET /api/v2/bulk-actions and /{action_id}."""

    @pytest.mark.asyncio
    async def test_list(self, client):
        await _create(client, headers={"X-Account-Id": "a"})
        await _create(client, headers={"X-Account-Id": "b"})

        resp = await client.get("/api/v2/bulk-actions")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        assert data["page"] == 1
        assert data["pages"] == 1

        resp = await client.get("/api/v2/bulk-actions", headers={"X-Account-Id": "a"})
        assert [i["accountId"] for i in resp.json()["items"]] == ["a"]

    @pytest.mark.asyncio
    async def test_list_unknown_status_ignored(self, client):
        await _create(client)
        resp = await client.get("/api/v2/bulk-actions", params={"status": "nonsense"})
        assert resp.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_get_by_id(self, client):
        created = (await _create(client)).json()
        resp = await client.get(f"/api/v2/bulk-actions/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["id"] == created["id"]

    @pytest.mark.asyncio
    async def test_get_not_found(self, client):
        resp = await client.get("/api/v2/bulk-actions/missing")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "ACTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_live_stats(self, client, processor):
        created = (await _create(client, [
            {"id": "1", "email": "a@x.com"},
            {"id": "2", "email": "a@x.com"},
            {"id": "3"},
        ])).json()
        await processor.process(created["id"])

        resp = await client.get(f"/api/v2/bulk-actions/{created['id']}/stats")
        assert resp.status_code == 200
        assert resp.json() == {"total": 3, "pending": 0, "processed": 1, "failed": 1, "skipped": 1}

        resp = await client.get(f"/api/v2/bulk-actions/{created['id']}")
        assert resp.json()["status"] == "completed_with_errors"
        assert resp.json()["stats"] == {"total": 3, "success": 1, "failed": 1, "skipped": 1}

    @pytest.mark.asyncio
    async def test_stats_not_found(self, client):
        resp = await client.get("/api/v2/bulk-actions/missing/stats")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_handlers(self, client):
        resp = await client.get("/api/v2/bulk-actions/handlers")
        assert resp.status_code == 200
        (handler,) = resp.json()
        assert handler["actionType"] == "bulk-update"
        assert handler["configSchema"]["required"] == ["fieldsToUpdate"]


class TestStatusEndpoints:
    """GET /api/v2/bulk-actions/status/*."""

    @pytest.mark.asyncio
    async def test_filter_by_status_and_account(self, client):
        later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        await _create(client, headers={"X-Account-Id": "a"})
        await _create(client, headers={"X-Account-Id": "a"}, scheduledFor=later)
        await _create(client, headers={"X-Account-Id": "b"}, scheduledFor=later)

        resp = await client.get("/api/v2/bulk-actions/status", params={"status": "pending"})
        assert resp.json()["total"] == 2

        resp = await client.get("/api/v2/bulk-actions/status", params={"status": "pending", "accountId": "a"})
        assert resp.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_summary(self, client):
        later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        await _create(client)
        await _create(client, scheduledFor=later)

        resp = await client.get("/api/v2/bulk-actions/status/summary")
        assert resp.status_code == 200
        assert resp.json() == {
            "pending": 1, "queued": 1, "processing": 0,
            "completed": 0, "completed_with_errors": 0, "failed": 0,
        }

    @pytest.mark.asyncio
    async def test_entities_page(self, client, processor):
        created = (await _create(client, [
            {"id": str(i), "email": f"e{i}@x.com" if i else None} for i in range(4)
        ])).json()
        await processor.process(created["id"])

        resp = await client.get(f"/api/v2/bulk-actions/status/{created['id']}/entities", params={"limit": 2, "page": 2})
        data = resp.json()
        assert data["total"] == 4
        assert data["pages"] == 2
        assert [e["entityId"] for e in data["items"]] == ["2", "3"]

        resp = await client.get(f"/api/v2/bulk-actions/status/{created['id']}/entities", params={"status": "failed"})
        (failed,) = resp.json()["items"]
        assert failed["entityId"] == "0"
        assert failed["errorMessage"] == "No email id found for the entity"

    @pytest.mark.asyncio
    async def test_entities_not_found(self, client):
        resp = await client.get("/api/v2/bulk-actions/status/missing/entities")
        assert resp.status_code == 404


class TestPipelineUnavailable:

    @pytest.mark.asyncio
    async def test_returns_503_without_database(self, bare_client):
        resp = await bare_client.get("/api/v2/bulk-actions")
        assert resp.status_code == 503
        assert resp.json()["detail"]["code"] == "DB_UNAVAILABLE"
