"""Shared fixtures: per-test SQLite database, local storage, no Redis, dev auth."""

import io
import json
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from tenderdesk.core.config import get_settings
from tenderdesk.core.database import close_db, get_session_factory, init_db
from tenderdesk.core.flags import get_flags
from tenderdesk.core.storage import get_storage, upload_key
from tenderdesk.models.base import new_uuid
from tenderdesk.models.organization import Organization
from tenderdesk.models.tender import Tender
from tenderdesk.models.upload import Upload
from tenderdesk.services import pipeline
from tenderdesk.services.queue import get_queue, reset_queue
from tenderdesk.services.worker import IndexWorker

TENDER_TEXT = (
    "Invitation to tender for the supply of hospital beds to the regional health authority. "
    "The purpose of this procurement is to replace 120 ageing beds across three sites. "
    "Bidders must hold ISO 13485 certification and have delivered at least two similar contracts. "
    "The bid security amount is 5,000 USD in the form of a bank guarantee. "
    "Submissions must be uploaded to the e-procurement portal before 15 March at 12:00 noon. "
    "Late delivery incurs liquidated damages of 0.5 percent per week."
)

BRIEF_REPLY = json.dumps({
    "purpose": ["Replace 120 hospital beds", "Cover three sites", "Standardise models", "Cut maintenance"],
    "key_requirements": ["ISO 13485 certification"],
    "eligibility": [],
    "submission": {"deadline": "15 March, 12:00", "method": "", "bid_security": "5,000 USD bank guarantee"},
    "risks": ["Liquidated damages of 0.5% per week", "I couldn't find that in this file."],
})


@pytest.fixture(autouse=True)
def env(tmp_path, monkeypatch):
    """Isolated settings: sqlite file DB, local storage, every remote dependency off."""
    values = {
        "ENV": "test",
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        "LOCAL_STORAGE_PATH": str(tmp_path / "storage"),
        "FF_USE_AUTH0": "false",
        "FF_USE_S3": "false",
        "FF_USE_REDIS": "false",
        "FF_USE_OCR": "false",
        "FF_RUN_INDEX_WORKER": "false",
        "FF_LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "",
        "AIML_API_KEY": "",
        "GEMINI_API_KEY": "",
        "PLAN_OVERRIDES": "{}",
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)

    get_settings.cache_clear()
    get_flags.cache_clear()
    reset_queue()
    yield values
    get_settings.cache_clear()
    get_flags.cache_clear()
    reset_queue()


def reload_settings(monkeypatch, **env):
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    get_flags.cache_clear()


@pytest.fixture
async def session_factory():
    await init_db()
    yield get_session_factory()
    await close_db()


@pytest.fixture
def fake_llm(monkeypatch):
    """Replace completions with a canned reply. Set .reply or .error per test."""

    class FakeLLM:
        reply = "The bid security is 5,000 USD as a bank guarantee."
        error: Optional[Exception] = None
        prompts: list = []

        async def complete(self, prompt, system=None, json_mode=False, max_tokens=None):
            self.prompts.append({"prompt": prompt, "system": system, "json_mode": json_mode})
            if self.error:
                raise self.error
            return self.reply

    fake = FakeLLM()
    fake.prompts = []
    monkeypatch.setattr("tenderdesk.services.llm.complete", fake.complete)
    return fake


@pytest.fixture
def stage_events(monkeypatch):
    """Capture document stage notifications as (doc_hash, status, stage)."""
    events = []

    async def capture(org_id, tender_id, doc_hash, status, stage, error=None):
        events.append((doc_hash, status, stage))

    monkeypatch.setattr("tenderdesk.services.realtime.document_stage", capture)
    return events


class Seeder:
    def __init__(self, factory):
        self.factory = factory

    async def org(self, tier: str = "FREE", expires_in_days: Optional[int] = 7, org_id: Optional[str] = None) -> str:
        org_id = org_id or new_uuid()
        expires = None
        if expires_in_days is not None:
            expires = datetime.now(timezone.utc) + timedelta(days=expires_in_days)
        async with self.factory() as s:
            s.add(Organization(id=org_id, name=f"org-{org_id[:6]}", plan_tier=tier, plan_expires_at=expires))
            await s.commit()
        return org_id

    async def tender(self, org_id: str, published: bool = False, title: str = "Hospital beds") -> str:
        tender_id = new_uuid()
        async with self.factory() as s:
            s.add(Tender(id=tender_id, org_id=org_id, title=title, is_published=published))
            await s.commit()
        return tender_id

    async def upload(
        self, org_id: Optional[str], tender_id: Optional[str], filename: str, data: bytes,
        mime_type: Optional[str] = None,
    ) -> str:
        upload_id = new_uuid()
        key = await get_storage().put(upload_key(org_id or "anonymous", upload_id, filename), data)
        async with self.factory() as s:
            s.add(Upload(
                id=upload_id, org_id=org_id, tender_id=tender_id,
                filename=filename, mime_type=mime_type, size=len(data), storage_key=key,
            ))
            await s.commit()
        return upload_id

    async def ingest(
        self, org_id: str, tender_id: str, filename: str = "tender.txt", data: bytes = TENDER_TEXT.encode(),
        mime_type: Optional[str] = None,
    ):
        """Upload + trigger_ingestion. Returns (upload_id, IngestionResult)."""
        upload_id = await self.upload(org_id, tender_id, filename, data, mime_type)
        async with self.factory() as s:
            result = await pipeline.trigger_ingestion(s, upload_id)
        return upload_id, result

    async def files(self, upload_id: str):
        from sqlalchemy import select
        from tenderdesk.models.upload import TenderFile

        async with self.factory() as s:
            rows = await s.execute(select(TenderFile).where(TenderFile.upload_id == upload_id).order_by(TenderFile.path))
            return rows.scalars().all()

    async def run_jobs(self) -> int:
        return await IndexWorker(queue=get_queue(), concurrency=1).drain()

    async def ready_document(self, org_id: str, tender_id: str, filename: str = "tender.txt", data: bytes = TENDER_TEXT.encode()):
        """Ingest and index a document. Returns its TenderFile."""
        upload_id, _ = await self.ingest(org_id, tender_id, filename, data)
        await self.run_jobs()
        return (await self.files(upload_id))[0]


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


def make_zip(entries: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buf.getvalue()
