"""Tests for file resolution and public read-only access."""

import pytest
from sqlalchemy import func, select

from tenderdesk.core.auth import ANONYMOUS_USER, AuthenticatedUser
from tenderdesk.core.errors import ResolverError
from tenderdesk.models.document import Document
from tenderdesk.services import pipeline
from tenderdesk.services.queue import get_queue
from tenderdesk.services.resolver import MEMBER, PUBLIC, resolve_file, resolve_for_document

from conftest import make_zip


def member_of(org_id: str) -> AuthenticatedUser:
    return AuthenticatedUser(user_id=f"user-{org_id}", email="bidder@example.com", org_id=org_id)


async def resolve_error(factory, file_ref, user, write=False) -> str:
    async with factory() as s:
        with pytest.raises(ResolverError) as exc:
            await resolve_file(s, file_ref, user, write=write)
    return exc.value.code


class TestResolveFile:
    """Tests for member and public resolution."""

    async def test_member_by_file_or_upload_id(self, seed, session_factory):
        org = await seed.org()
        tender = await seed.tender(org)
        upload_id, _ = await seed.ingest(org, tender)
        tender_file = (await seed.files(upload_id))[0]

        async with session_factory() as s:
            by_file = await resolve_file(s, tender_file.id, member_of(org), write=True)
            by_prefixed = await resolve_file(s, f"file:{tender_file.id}", member_of(org))
            by_upload = await resolve_file(s, upload_id, member_of(org))

        assert by_file.access == MEMBER and by_file.writable
        assert by_file.doc_hash == tender_file.doc_hash
        assert by_prefixed.file_id == by_upload.file_id == tender_file.id

    async def test_upload_id_ambiguous_for_bundles(self, seed, session_factory):
        org = await seed.org()
        tender = await seed.tender(org)
        bundle = make_zip({"a.txt": b"first document", "b.txt": b"second document"})
        upload_id, _ = await seed.ingest(org, tender, "bundle.zip", bundle)
        assert await resolve_error(session_factory, upload_id, member_of(org)) == "NOT_FOUND"

    async def test_missing(self, seed, session_factory):
        assert await resolve_error(session_factory, "no-such-file", member_of("x")) == "NOT_FOUND"

    async def test_public_fallback_is_read_only(self, seed, session_factory):
        owner = await seed.org()
        tender = await seed.tender(owner, published=True)
        upload_id, _ = await seed.ingest(owner, tender)
        tender_file = (await seed.files(upload_id))[0]
        visitor = member_of(await seed.org())

        async with session_factory() as s:
            resolved = await resolve_file(s, tender_file.id, visitor)
        assert resolved.access == PUBLIC
        assert not resolved.writable

        assert await resolve_error(session_factory, tender_file.id, visitor, write=True) == "FORBIDDEN"
        assert await resolve_error(session_factory, tender_file.id, ANONYMOUS_USER, write=True) == "FORBIDDEN"

    async def test_unpublished_tender_forbidden(self, seed, session_factory):
        owner = await seed.org()
        tender = await seed.tender(owner, published=False)
        upload_id, _ = await seed.ingest(owner, tender)
        tender_file = (await seed.files(upload_id))[0]

        assert await resolve_error(session_factory, tender_file.id, member_of("someone-else")) == "FORBIDDEN"
        assert await resolve_error(session_factory, tender_file.id, ANONYMOUS_USER) == "FORBIDDEN"

    async def test_media_is_unsupported(self, seed, session_factory):
        org = await seed.org()
        tender = await seed.tender(org)
        upload_id, result = await seed.ingest(org, tender, "site-visit.mp4", b"\x00\x00\x00\x18ftypmp42")
        tender_file = (await seed.files(upload_id))[0]

        assert result.skipped == 1
        assert await resolve_error(session_factory, tender_file.id, member_of(org)) == "UNSUPPORTED_FILE_TYPE"

    async def test_for_document_checks_scope(self, seed, session_factory):
        org = await seed.org()
        tender = await seed.tender(org)
        upload_id, _ = await seed.ingest(org, tender)
        tender_file = (await seed.files(upload_id))[0]

        async with session_factory() as s:
            resolved = await resolve_for_document(s, tender_file.id, member_of(org), tender, tender_file.doc_hash)
            assert resolved.file_id == tender_file.id
            with pytest.raises(ResolverError):
                await resolve_for_document(s, tender_file.id, member_of(org), tender, "0" * 64)


class TestEnsureIndexAccess:
    """Tests for who may create an index."""

    async def test_public_caller_never_creates(self, seed, session_factory):
        owner = await seed.org()
        tender = await seed.tender(owner, published=True)
        upload_id, _ = await seed.ingest(owner, tender, "notice.txt", b"Public notice of tender.")
        tender_file = (await seed.files(upload_id))[0]

        # Drop the index ingestion created so the visitor sees a blank slate.
        async with session_factory() as s:
            doc = (await s.execute(select(Document))).scalar_one()
            await s.delete(doc)
            await s.commit()
        before = await get_queue().size()

        async with session_factory() as s:
            state = await pipeline.ensure_index_for_file(s, tender_file.id, member_of("visitor"))
        assert state.to_dict()["status"] == "NOT_STARTED"
        assert await get_queue().size() == before

        async with session_factory() as s:
            assert (await s.execute(select(func.count()).select_from(Document))).scalar_one() == 0

    async def test_public_caller_sees_existing_state(self, seed, session_factory):
        owner = await seed.org()
        tender = await seed.tender(owner, published=True)
        tender_file = await seed.ready_document(owner, tender)

        async with session_factory() as s:
            state = await pipeline.ensure_index_for_file(s, tender_file.id, ANONYMOUS_USER)
        assert state.status == "READY"
        assert state.created is False

    async def test_public_caller_cannot_retry(self, seed, session_factory):
        owner = await seed.org()
        tender = await seed.tender(owner, published=True)
        tender_file = await seed.ready_document(owner, tender, "blank.txt", b"  ")

        async with session_factory() as s:
            with pytest.raises(ResolverError) as exc:
                await pipeline.ensure_index_for_file(s, tender_file.id, member_of("visitor"), retry_failed=True)
        assert exc.value.code == "FORBIDDEN"

    async def test_unsupported_file_creates_nothing(self, seed, session_factory):
        org = await seed.org()
        tender = await seed.tender(org)
        upload_id, _ = await seed.ingest(org, tender, "drawing.png", b"\x89PNG\r\n")
        tender_file = (await seed.files(upload_id))[0]

        async with session_factory() as s:
            with pytest.raises(ResolverError):
                await pipeline.ensure_index_for_file(s, tender_file.id, member_of(org))
        async with session_factory() as s:
            assert (await s.execute(select(func.count()).select_from(Document))).scalar_one() == 0
