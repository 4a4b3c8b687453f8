"""End-to-end tests through the HTTP API (dev auth: every call is DEV_USER)."""

import pytest
from httpx import ASGITransport, AsyncClient

from tenderdesk.core.auth import DEV_USER
from tenderdesk.factory import create_app

from conftest import BRIEF_REPLY, TENDER_TEXT, reload_settings

ORG = DEV_USER.org_id


@pytest.fixture
async def client(session_factory):
    transport = ASGITransport(app=create_app(), raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def upload(client, tender_id, filename="rfp.txt", data=TENDER_TEXT.encode(), content_type="text/plain"):
    resp = await client.post(
        "/v1/uploads",
        files={"file": (filename, data, content_type)},
        data={"tender_id": tender_id},
    )
    assert resp.status_code == 200, resp.text
    upload_id = resp.json()["upload_id"]

    resp = await client.post(f"/v1/uploads/{upload_id}/complete")
    assert resp.status_code == 200, resp.text

    resp = await client.get(f"/v1/uploads/{upload_id}/files")
    return resp.json()[0]


class TestHealth:
    """Tests for unauthenticated endpoints."""

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.json() == {"status": "ok", "service": "tenderdesk"}

    async def test_auth_config_dev_mode(self, client):
        resp = await client.get("/auth/config")
        assert resp.json()["auth_enabled"] is False


class TestIndexLifecycle:
    """Upload → ingest → poll → READY."""

    async def test_upload_to_ready(self, client, seed):
        await seed.org(org_id=ORG)
        tender = await seed.tender(ORG)
        f = await upload(client, tender)
        progress_url = f"/v1/tenders/{tender}/docs/{f['doc_hash']}/progress"

        resp = await client.get(progress_url)
        assert resp.json()["status"] == "PENDING"
        assert resp.json()["terminal"] is False

        await seed.run_jobs()

        body = (await client.get(progress_url)).json()
        assert (body["status"], body["terminal"]) == ("READY", True)

        resp = await client.post(f"/v1/files/{f['file_id']}/ensure-index")
        assert resp.json()["status"] == "READY"
        assert resp.json()["created"] is False

        resp = await client.get(f"/v1/tenders/{tender}/ingestion")
        assert resp.json()["status"] == "READY"

    async def test_unknown_progress_is_404(self, client, seed):
        await seed.org(org_id=ORG)
        tender = await seed.tender(ORG)
        resp = await client.get(f"/v1/tenders/{tender}/docs/{'0' * 64}/progress")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    async def test_media_file_is_415(self, client, seed):
        await seed.org(org_id=ORG)
        tender = await seed.tender(ORG)
        f = await upload(client, tender, "site.png", b"\x89PNG\r\n\x1a\n", "image/png")

        resp = await client.post(f"/v1/files/{f['file_id']}/ensure-index")
        assert resp.status_code == 415
        assert resp.json()["code"] == "UNSUPPORTED_FILE_TYPE"

    async def test_retry_failed_document(self, client, seed):
        await seed.org(org_id=ORG)
        tender = await seed.tender(ORG)
        f = await upload(client, tender, "blank.txt", b"   ")
        await seed.run_jobs()

        progress_url = f"/v1/tenders/{tender}/docs/{f['doc_hash']}/progress"
        body = (await client.get(progress_url)).json()
        assert body["status"] == "FAILED"
        assert body["error"]

        retry_url = f"/v1/tenders/{tender}/docs/{f['doc_hash']}/retry"
        resp = await client.post(retry_url)
        assert resp.json()["status"] == "PENDING"

        resp = await client.post(retry_url)
        assert resp.status_code == 409


class TestMeteredCalls:
    """Gate + generation through the API."""

    async def ready_file(self, client, seed, tier="FREE", expires_in_days=7):
        await seed.org(tier, expires_in_days=expires_in_days, org_id=ORG)
        tender = await seed.tender(ORG)
        f = await upload(client, tender)
        await seed.run_jobs()
        return tender, f

    async def test_chat_trial_limit(self, client, seed, fake_llm, monkeypatch):
        reload_settings(monkeypatch, RETRIEVAL_MIN_SIMILARITY="-1")
        tender, f = await self.ready_file(client, seed)
        url = f"/v1/tenders/{tender}/docs/{f['doc_hash']}/ask"
        payload = {"file_id": f["file_id"], "question": "What is the bid security?"}

        for _ in range(2):
            resp = await client.post(url, json=payload)
            assert resp.status_code == 200
            assert resp.json()["citations"][0]["page"] == 1

        resp = await client.post(url, json=payload)
        assert resp.status_code == 403
        assert resp.json()["code"] == "TRIAL_LIMIT"

    async def test_ask_before_ready_is_422_and_free(self, client, seed, fake_llm):
        await seed.org(org_id=ORG)
        tender = await seed.tender(ORG)
        f = await upload(client, tender)

        resp = await client.post(
            f"/v1/tenders/{tender}/docs/{f['doc_hash']}/ask",
            json={"file_id": f["file_id"], "question": "Deadline?"},
        )
        assert resp.status_code == 422
        assert resp.json() == {
            "code": "INDEX_NOT_READY",
            "message": "Document index is not ready (status=PENDING)",
            "status": "PENDING",
        }

        usage = (await client.get("/v1/usage", params={"tender_id": tender})).json()
        assert usage["tender"]["used_chats"] == 0

    async def test_expired_trial(self, client, seed, fake_llm):
        tender, f = await self.ready_file(client, seed, expires_in_days=-1)
        resp = await client.post(
            f"/v1/tenders/{tender}/docs/{f['doc_hash']}/ask",
            json={"file_id": f["file_id"], "question": "Deadline?"},
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "TRIAL_EXPIRED"

    async def test_failed_brief_is_refunded(self, client, seed, fake_llm):
        tender, f = await self.ready_file(client, seed)
        url = f"/v1/tenders/{tender}/docs/{f['doc_hash']}/brief"
        payload = {"file_id": f["file_id"], "length": "short"}

        fake_llm.error = RuntimeError("provider down")
        resp = await client.post(url, json=payload)
        assert resp.status_code == 500
        assert resp.json()["code"] == "INTERNAL_ERROR"

        fake_llm.error = None
        fake_llm.reply = "no json here"
        resp = await client.post(url, json=payload)
        assert resp.status_code == 502
        assert resp.json()["code"] == "GENERATION_FAILED"

        usage = (await client.get("/v1/usage", params={"tender_id": tender})).json()
        assert usage["trial_credits"] == 3
        assert usage["tender"]["used_briefs"] == 0

        fake_llm.reply = BRIEF_REPLY
        resp = await client.post(url, json=payload)
        assert resp.status_code == 200
        assert resp.json()["brief_json"]["key_requirements"] == ["ISO 13485 certification"]
        assert resp.json()["markdown"].startswith("# Tender brief: rfp.txt")

        resp = await client.post(url, json=payload)
        assert resp.status_code == 403
        assert resp.json()["code"] == "TENDER_BRIEF_LIMIT"

    async def test_page_preview(self, client, seed):
        tender, f = await self.ready_file(client, seed)
        resp = await client.get(f"/v1/files/{f['file_id']}/pages/1")
        assert resp.status_code == 200
        assert resp.json()["pages"] == 1
        assert resp.json()["text"].startswith("Invitation to tender")

        resp = await client.get(f"/v1/files/{f['file_id']}/pages/2")
        assert resp.status_code == 404

    async def test_page_preview_limit(self, client, seed, monkeypatch):
        reload_settings(monkeypatch, PLAN_OVERRIDES='{"FREE": {"page_limit": 1}}')
        tender, f = await self.ready_file(client, seed)
        resp = await client.get(f"/v1/files/{f['file_id']}/pages/2")
        assert resp.status_code == 403
        assert resp.json()["code"] == "PREVIEW_LIMIT"


class TestPublicPreview:
    """Page previews for visitors without a token on published tenders."""

    async def public_file(self, seed, monkeypatch, published=True):
        owner = await seed.org("STANDARD", expires_in_days=None)
        tender = await seed.tender(owner, published=published)
        tender_file = await seed.ready_document(owner, tender)
        reload_settings(monkeypatch, FF_USE_AUTH0="true")
        return tender_file

    async def test_visitor_reads_published_page(self, client, seed, monkeypatch):
        tender_file = await self.public_file(seed, monkeypatch)
        resp = await client.get(f"/v1/files/{tender_file.id}/pages/1")
        assert resp.status_code == 200
        assert resp.json()["text"].startswith("Invitation to tender")

        resp = await client.get(f"/v1/files/{tender_file.id}/pages/2")
        assert resp.status_code == 404

    async def test_visitor_capped_at_free_page_limit(self, client, seed, monkeypatch):
        tender_file = await self.public_file(seed, monkeypatch)
        reload_settings(monkeypatch, PLAN_OVERRIDES='{"FREE": {"page_limit": 1}}')
        resp = await client.get(f"/v1/files/{tender_file.id}/pages/2")
        assert resp.status_code == 403
        assert resp.json()["code"] == "PREVIEW_LIMIT"

    async def test_visitor_refused_on_unpublished_tender(self, client, seed, monkeypatch):
        tender_file = await self.public_file(seed, monkeypatch, published=False)
        resp = await client.get(f"/v1/files/{tender_file.id}/pages/1")
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"


class TestPlans:
    """Tests for plan-only features and usage views."""

    async def test_cover_letter_by_plan(self, client, seed, fake_llm):
        await seed.org("FREE", org_id=ORG)
        tender = await seed.tender(ORG)
        resp = await client.post(f"/v1/tenders/{tender}/cover-letter", json={"company_name": "Acme Beds"})
        assert resp.status_code == 403
        assert resp.json()["code"] == "FEATURE_NOT_AVAILABLE"

    async def test_cover_letter_on_paid_plan(self, client, seed, fake_llm):
        await seed.org("STANDARD", expires_in_days=None, org_id=ORG)
        tender = await seed.tender(ORG)
        fake_llm.reply = "Dear Sir or Madam, ..."
        resp = await client.post(f"/v1/tenders/{tender}/cover-letter", json={"company_name": "Acme Beds"})
        assert resp.status_code == 200
        assert resp.json()["letter"] == "Dear Sir or Madam, ..."
        assert "Acme Beds" in fake_llm.prompts[0]["prompt"]

    async def test_entitlements(self, client, seed):
        await seed.org("PREMIUM", expires_in_days=None, org_id=ORG)
        body = (await client.get("/v1/me/entitlements")).json()
        assert body["plan"] == "PREMIUM"
        assert body["features"] == {"cover_letter": True, "folder_chat": True}
        assert body["limits"]["ai_monthly_limit"] == 300
