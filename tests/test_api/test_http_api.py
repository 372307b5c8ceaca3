"""
Tests for the HTTP API.
"""

import httpx
import pytest
import pytest_asyncio

from smart_upload.main import create_app
from smart_upload.schemas.metadata import ExtractedMetadata

BATCHES = "/api/v1/smart-upload/batches"
PROPOSALS = "/api/v1/smart-upload/proposals"
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


async def _upload(client, batch_id, name, data, mime="application/pdf", headers=ALICE):
    return await client.post(
        f"{BATCHES}/{batch_id}/files",
        files={"file": (name, data, mime)},
        headers=headers,
    )


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/health/ready")
        assert response.json() == {"ready": True}


class TestBatchEndpoints:
    """Test batch creation, upload and ownership."""

    @pytest.mark.asyncio
    async def test_identity_required(self, client):
        response = await client.post(BATCHES)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        created = await client.post(BATCHES, headers=ALICE)
        assert created.status_code == 201
        assert created.json()["status"] == "CREATED"

        listed = await client.get(BATCHES, headers=ALICE)
        assert [b["batch_id"] for b in listed.json()["batches"]] == [created.json()["batch_id"]]
        assert (await client.get(BATCHES, headers=BOB)).json()["batches"] == []

    @pytest.mark.asyncio
    async def test_other_users_batch_is_missing(self, client):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        response = await client.get(f"{BATCHES}/{batch_id}", headers=BOB)
        assert response.status_code == 404
        assert response.json()["error"] == "ERR_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_upload(self, client, single_part_pdf):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        response = await _upload(client, batch_id, "hymn.pdf", single_part_pdf)
        assert response.status_code == 201
        item = response.json()["item"]
        assert item["status"] == "VALIDATED"
        assert item["file_name"] == "hymn.pdf"

        detail = (await client.get(f"{BATCHES}/{batch_id}", headers=ALICE)).json()
        assert detail["batch"]["status"] == "PROCESSING"
        assert [i["item_id"] for i in detail["items"]] == [item["item_id"]]

    @pytest.mark.asyncio
    async def test_upload_rejected(self, client):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        response = await _upload(client, batch_id, "notes.txt", b"hello", mime="text/plain")
        assert response.status_code == 400
        assert response.json()["error"] == "ERR_VALIDATION"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, client):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        first = await client.post(f"{BATCHES}/{batch_id}/cancel", headers=ALICE)
        assert first.json()["status"] == "CANCELLED"
        second = await client.post(f"{BATCHES}/{batch_id}/cancel", headers=ALICE)
        assert second.status_code == 409
        assert second.json()["error"] == "ERR_INVALID_BATCH_STATE"

    @pytest.mark.asyncio
    async def test_cleanup_accepted(self, client):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        response = await client.post(f"{BATCHES}/{batch_id}/cleanup", headers=ALICE)
        assert response.status_code == 202
        assert response.json()["status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_ingest_retry_requires_review_state(self, client):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        response = await client.post(f"{BATCHES}/{batch_id}/ingest", headers=ALICE)
        assert response.status_code == 409


class TestReviewFlow:
    """Upload, correct, approve and ingest over HTTP."""

    @pytest.mark.asyncio
    async def test_full_flow(self, client, broker, backend, single_part_pdf):
        backend.respond(single_part_pdf, ExtractedMetadata(title="Evening Hymn", title_confidence=0.9))
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        await _upload(client, batch_id, "hymn.pdf", single_part_pdf)
        await broker.run_until_idle()

        listing = (await client.get(f"{BATCHES}/{batch_id}/proposals", headers=ALICE)).json()
        assert listing["total"] == 1
        proposal_id = listing["proposals"][0]["proposal_id"]

        assert (await client.get(f"{PROPOSALS}/{proposal_id}", headers=BOB)).status_code == 404

        corrected = await client.patch(
            f"{PROPOSALS}/{proposal_id}", json={"composer": "A. Composer"}, headers=ALICE,
        )
        assert corrected.status_code == 200
        assert corrected.json()["composer"] == "A. Composer"
        assert corrected.json()["corrections"] == {"composer": "A. Composer"}

        approved = await client.post(f"{PROPOSALS}/{proposal_id}/approve", headers=ALICE)
        assert approved.status_code == 200
        assert approved.json()["approved_by"] == "alice"

        await broker.run_until_idle()
        detail = (await client.get(f"{BATCHES}/{batch_id}", headers=ALICE)).json()
        assert detail["batch"]["status"] == "COMPLETE"
        assert detail["items"][0]["status"] == "COMPLETE"

    @pytest.mark.asyncio
    async def test_approve_with_corrections(self, client, broker, backend, single_part_pdf):
        backend.respond(single_part_pdf, ExtractedMetadata(title="Evening Hymn", title_confidence=0.9))
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        await _upload(client, batch_id, "hymn.pdf", single_part_pdf)
        await broker.run_until_idle()
        proposal_id = (await client.get(f"{BATCHES}/{batch_id}/proposals", headers=ALICE)).json()["proposals"][0]["proposal_id"]

        response = await client.post(
            f"{PROPOSALS}/{proposal_id}/approve",
            json={"corrections": {"title": "Evening Hymn (revised)"}},
            headers=ALICE,
        )
        assert response.json()["title"] == "Evening Hymn (revised)"

    @pytest.mark.asyncio
    async def test_reject(self, client, broker, single_part_pdf):
        batch_id = (await client.post(BATCHES, headers=ALICE)).json()["batch_id"]
        await _upload(client, batch_id, "hymn.pdf", single_part_pdf)
        await broker.run_until_idle()
        proposal_id = (await client.get(f"{BATCHES}/{batch_id}/proposals", headers=ALICE)).json()["proposals"][0]["proposal_id"]

        response = await client.post(
            f"{PROPOSALS}/{proposal_id}/reject", json={"reason": "duplicate"}, headers=ALICE,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "FAILED"
        assert response.json()["error_message"] == "Rejected by alice: duplicate"


class TestJobEndpoints:
    @pytest.mark.asyncio
    async def test_queue_stats(self, client):
        response = await client.get("/api/v1/jobs/queue/stats")
        assert response.status_code == 200
        assert response.json()["broker"] == "InMemoryBroker"
        assert "extract_text" in response.json()["queues"]

    @pytest.mark.asyncio
    async def test_dead_letters_empty(self, client):
        response = await client.get("/api/v1/jobs/dead-letters")
        assert response.json() == {"entries": [], "total": 0}

    @pytest.mark.asyncio
    async def test_replay_unknown(self, client):
        response = await client.post("/api/v1/jobs/dead-letters/nope/replay")
        assert response.status_code == 404
