"""Tests for grounded Q&A and tender briefs."""

import pytest

from tenderdesk.core.auth import AuthenticatedUser
from tenderdesk.core.errors import GenerationError, IndexNotReadyError
from tenderdesk.services import retrieval
from tenderdesk.services.resolver import resolve_file
from tenderdesk.services.retrieval import (
    SENTINEL, ScoredChunk, _citations, build_context, parse_brief, render_markdown,
)

from conftest import BRIEF_REPLY, reload_settings


async def resolved_for(seed, session_factory, run=True, **kwargs):
    org = await seed.org()
    tender = await seed.tender(org)
    if run:
        tender_file = await seed.ready_document(org, tender, **kwargs)
    else:
        upload_id, _ = await seed.ingest(org, tender, **kwargs)
        tender_file = (await seed.files(upload_id))[0]
    async with session_factory() as s:
        return await resolve_file(s, tender_file.id, AuthenticatedUser(user_id="u1", org_id=org))


class TestAsk:
    """Tests for ask()."""

    async def test_answer_with_citations(self, seed, session_factory, fake_llm, monkeypatch):
        reload_settings(monkeypatch, RETRIEVAL_MIN_SIMILARITY="-1")
        resolved = await resolved_for(seed, session_factory)

        async with session_factory() as s:
            result = await retrieval.ask(s, resolved, "What is the bid security amount?")

        assert result.found
        assert result.answer == fake_llm.reply
        assert [(c.doc_name, c.page) for c in result.citations] == [("tender.txt", 1)]
        assert result.citations[0].snippet.startswith("Invitation to tender")
        assert "[tender.txt p.1]" in fake_llm.prompts[0]["prompt"]

    async def test_nothing_relevant_returns_sentinel(self, seed, session_factory, fake_llm, monkeypatch):
        reload_settings(monkeypatch, RETRIEVAL_MIN_SIMILARITY="0.99")
        resolved = await resolved_for(seed, session_factory)

        async with session_factory() as s:
            result = await retrieval.ask(s, resolved, "Who won the football match?")

        assert result.answer == SENTINEL
        assert not result.found
        assert result.citations == []
        assert fake_llm.prompts == []

    async def test_model_not_found_returns_sentinel(self, seed, session_factory, fake_llm, monkeypatch):
        reload_settings(monkeypatch, RETRIEVAL_MIN_SIMILARITY="-1")
        fake_llm.reply = "NOT_FOUND"
        resolved = await resolved_for(seed, session_factory)

        async with session_factory() as s:
            result = await retrieval.ask(s, resolved, "What colour are the beds?")
        assert result.answer == SENTINEL
        assert result.citations == []

    async def test_not_ready(self, seed, session_factory, fake_llm):
        resolved = await resolved_for(seed, session_factory, run=False)
        async with session_factory() as s:
            with pytest.raises(IndexNotReadyError) as exc:
                await retrieval.ask(s, resolved, "Anything?")
        assert exc.value.status == "PENDING"
        assert exc.value.status_code == 422

    async def test_only_this_documents_chunks(self, seed, session_factory, fake_llm, monkeypatch):
        reload_settings(monkeypatch, RETRIEVAL_MIN_SIMILARITY="-1")
        await resolved_for(seed, session_factory, filename="other.txt", data=b"Catering services for schools.")
        resolved = await resolved_for(seed, session_factory)

        async with session_factory() as s:
            await retrieval.ask(s, resolved, "catering services schools")
        assert "Catering" not in fake_llm.prompts[0]["prompt"]


class TestBrief:
    """Tests for brief()."""

    async def test_structured_brief(self, seed, session_factory, fake_llm):
        fake_llm.reply = BRIEF_REPLY
        resolved = await resolved_for(seed, session_factory)

        async with session_factory() as s:
            result = await retrieval.brief(s, resolved, "short")

        data = result.brief_json
        assert data["purpose"] == ["Replace 120 hospital beds", "Cover three sites", "Standardise models"]
        assert "eligibility" not in data
        assert data["submission"] == {"deadline": "15 March, 12:00", "bid_security": "5,000 USD bank guarantee"}
        assert data["risks"] == ["Liquidated damages of 0.5% per week"]
        assert fake_llm.prompts[0]["json_mode"] is True

        md = result.markdown
        assert md.startswith("# Tender brief: tender.txt")
        assert "## Purpose" in md and "## Eligibility" not in md
        assert "- **Bid security:** 5,000 USD bank guarantee" in md
        assert "**Method:**" not in md

    async def test_long_keeps_every_item(self, seed, session_factory, fake_llm):
        fake_llm.reply = BRIEF_REPLY
        resolved = await resolved_for(seed, session_factory)
        async with session_factory() as s:
            result = await retrieval.brief(s, resolved, "long")
        assert len(result.brief_json["purpose"]) == 4

    async def test_invalid_length(self, seed, session_factory, fake_llm):
        resolved = await resolved_for(seed, session_factory)
        async with session_factory() as s:
            with pytest.raises(ValueError):
                await retrieval.brief(s, resolved, "epic")

    async def test_unparseable_reply(self, seed, session_factory, fake_llm):
        fake_llm.reply = "Sorry, I cannot help with that."
        resolved = await resolved_for(seed, session_factory)
        async with session_factory() as s:
            with pytest.raises(GenerationError):
                await retrieval.brief(s, resolved, "medium")


class TestBriefParsing:
    """Tests for brief JSON cleanup and rendering."""

    def test_json_inside_prose(self):
        brief = parse_brief('Here you go:\n{"purpose": "Supply beds", "risks": null} Thanks!')
        assert brief.purpose == ["Supply beds"]
        assert brief.risks == []

    def test_bullets_and_objects_cleaned(self):
        brief = parse_brief('{"key_requirements": ["- ISO 13485", {"text": "Two references"}, "  "]}')
        assert brief.key_requirements == ["ISO 13485", "Two references"]

    def test_broken_json(self):
        with pytest.raises(GenerationError):
            parse_brief('{"purpose": [')

    def test_empty_brief_renders_sentinel(self):
        assert SENTINEL in render_markdown(parse_brief("{}"), "rfp.pdf")


class TestContext:
    """Tests for context packing and citations."""

    def test_headers_and_budget(self):
        chunks = [
            ScoredChunk(position=0, text="a" * 50, page=1, score=0.9),
            ScoredChunk(position=1, text="b" * 50, page=2, score=0.8),
            ScoredChunk(position=2, text="c" * 50, page=3, score=0.7),
        ]
        context, used = build_context(chunks, "rfp.pdf", max_chars=140)
        assert context.startswith("[rfp.pdf p.1]\n")
        assert "[rfp.pdf p.2]" in context
        assert len(used) == 2

    def test_citations_one_per_page(self):
        chunks = [
            ScoredChunk(position=4, text="deadline text", page=2, score=0.9),
            ScoredChunk(position=5, text="more deadline text", page=2, score=0.8),
            ScoredChunk(position=0, text="intro", page=1, score=0.5),
        ]
        citations = _citations(chunks, "rfp.pdf")
        assert [(c.page, c.snippet) for c in citations] == [(2, "deadline text"), (1, "intro")]
