"""
Indexing pipeline. extract → chunk → embed → (summary) → READY.

ensure_index() is the only entry point that creates a Document. It is an
atomic insert-if-absent on (org_id, tender_id, doc_hash): the caller whose
insert lands enqueues the job, every other caller attaches to the row.

run_pipeline() is executed by the worker. Each stage moves the Document
forward with a conditional UPDATE on the expected status; any failure is
terminal (FAILED + reason) until an explicit retry.
"""

import hashlib
import io
import json
import logging
import zipfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.config import get_settings
from ..core.database import get_session_factory, insert_ignore
from ..core.errors import InvalidTransitionError, NotFoundError, ResolverError
from ..core.flags import get_flags
from ..core.storage import document_key, get_storage, guess_content_type
from ..models.base import utcnow
from ..models.document import (
    Chunk, ChunkEmbedding, Document, DocumentSummary,
    CHUNKING, EMBEDDING, EXTRACTING, FAILED, NEXT_STATUS, PENDING, READY, TERMINAL_STATUSES,
)
from ..models.upload import TenderFile, Upload
from . import embedding, realtime
from .chunking import chunk_pages
from .extraction import extract_pages, is_text_bearing
from .queue import get_queue
from .resolver import resolve_file

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500
NO_TEXT_ERROR = "no text extracted; probably scanned PDF"
INTERRUPTED_ERROR = "index worker interrupted; retry to index again"
SUMMARY_SECTIONS = 3
ABSTRACT_CHARS = 800


@dataclass
class IndexState:
    doc_hash: str
    status: Optional[str]          # None → no Document exists (read-only callers)
    stage: Optional[str]
    error: Optional[str] = None
    created: bool = False
    document_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "doc_hash": self.doc_hash,
            "status": self.status or "NOT_STARTED",
            "stage": self.stage,
            "error": self.error,
            "created": self.created,
            "document_id": self.document_id,
        }


def _state(doc: Document, created: bool = False) -> IndexState:
    return IndexState(
        doc_hash=doc.doc_hash,
        status=doc.status,
        stage=doc.stage,
        error=doc.error,
        created=created,
        document_id=doc.id,
    )


def _job(doc: Document) -> dict:
    return {
        "document_id": doc.id,
        "org_id": doc.org_id,
        "tender_id": doc.tender_id,
        "doc_hash": doc.doc_hash,
    }


async def _load_scoped(db: AsyncSession, org_id: str, tender_id: str, doc_hash: str) -> Optional[Document]:
    return (await db.execute(
        select(Document)
        .where(
            Document.org_id == org_id,
            Document.tender_id == tender_id,
            Document.doc_hash == doc_hash,
        )
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


# ── ensure_index ─────────────────────────────────────────────────────

async def ensure_index(
    db: AsyncSession,
    *,
    org_id: str,
    tender_id: str,
    doc_hash: str,
    upload_id: Optional[str] = None,
    file_id: Optional[str] = None,
    title: Optional[str] = None,
    size_bytes: Optional[int] = None,
    retry_failed: bool = False,
) -> IndexState:
    """
    Create the Document for (org, tender, hash) if absent and enqueue its job.
    Commits before enqueuing so the worker always finds the row.
    """
    result = await db.execute(insert_ignore(
        db, Document,
        {
            "org_id": org_id,
            "tender_id": tender_id,
            "doc_hash": doc_hash,
            "upload_id": upload_id,
            "file_id": file_id,
            "title": title,
            "size_bytes": size_bytes,
            "status": PENDING,
            "stage": "queued",
            "attempts": 1,
        },
        ["org_id", "tender_id", "doc_hash"],
    ))
    created = result.rowcount == 1
    doc = await _load_scoped(db, org_id, tender_id, doc_hash)
    await db.commit()

    if created:
        await get_queue().enqueue(_job(doc))
        logger.info("Index created: doc=%s hash=%s tender=%s", doc.id, doc_hash[:12], tender_id)
        await realtime.document_stage(org_id, tender_id, doc_hash, PENDING, "queued")
        return _state(doc, created=True)

    if retry_failed and doc.status == FAILED:
        return await _retry(db, doc)

    return _state(doc)


async def _retry(db: AsyncSession, doc: Document) -> IndexState:
    """FAILED → PENDING for one winner, partial artifacts cleared, one new job."""
    result = await db.execute(
        update(Document)
        .where(Document.id == doc.id, Document.status == FAILED)
        .values(status=PENDING, stage="queued", error=None, attempts=Document.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.commit()
        doc = await _load_scoped(db, doc.org_id, doc.tender_id, doc.doc_hash)
        return _state(doc)

    await _clear_artifacts(db, doc.id)
    await db.commit()
    doc = await _load_scoped(db, doc.org_id, doc.tender_id, doc.doc_hash)

    await get_queue().enqueue(_job(doc))
    logger.info("Index retry queued: doc=%s attempt=%d", doc.id, doc.attempts)
    await realtime.document_stage(doc.org_id, doc.tender_id, doc.doc_hash, PENDING, "queued")
    return _state(doc, created=True)


async def _clear_artifacts(db: AsyncSession, document_id: str) -> None:
    chunk_ids = select(Chunk.id).where(Chunk.document_id == document_id)
    await db.execute(delete(ChunkEmbedding).where(ChunkEmbedding.chunk_id.in_(chunk_ids)))
    await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
    await db.execute(delete(DocumentSummary).where(DocumentSummary.document_id == document_id))


async def lookup_state(db: AsyncSession, org_id: str, tender_id: str, doc_hash: str) -> IndexState:
    """Read-only view: never creates, never enqueues."""
    doc = await _load_scoped(db, org_id, tender_id, doc_hash)
    if doc is None:
        return IndexState(doc_hash=doc_hash, status=None, stage=None)
    return _state(doc)


async def ensure_index_for_file(
    db: AsyncSession,
    file_ref: str,
    user: AuthenticatedUser,
    retry_failed: bool = False,
) -> IndexState:
    """
    Resolver + ensure_index. Members may create; visitors to a published
    tender get the current state without side effects.
    """
    try:
        resolved = await resolve_file(db, file_ref, user, write=True)
    except ResolverError as e:
        if e.code != "FORBIDDEN" or retry_failed:
            raise
        resolved = await resolve_file(db, file_ref, user, write=False)
        return await lookup_state(db, resolved.org_id, resolved.tender_id, resolved.doc_hash)

    tender_file = await db.get(TenderFile, resolved.file_id)
    return await ensure_index(
        db,
        org_id=resolved.org_id,
        tender_id=resolved.tender_id,
        doc_hash=resolved.doc_hash,
        upload_id=resolved.upload_id,
        file_id=resolved.file_id,
        title=resolved.filename,
        size_bytes=tender_file.size if tender_file else None,
        retry_failed=retry_failed,
    )


# ── Stage transitions ────────────────────────────────────────────────

async def _advance(db: AsyncSession, doc: Document, from_status: str, stage: str, **values) -> None:
    """Move one step forward along NEXT_STATUS, only if still at from_status."""
    to_status = NEXT_STATUS[from_status]
    result = await db.execute(
        update(Document)
        .where(Document.id == doc.id, Document.status == from_status)
        .values(status=to_status, stage=stage, **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        raise InvalidTransitionError(f"Document {doc.id} is no longer {from_status}")
    await realtime.document_stage(doc.org_id, doc.tender_id, doc.doc_hash, to_status, stage)


async def _set_stage(db: AsyncSession, doc: Document, status: str, stage: str) -> None:
    """Stage label change within one status (e.g. EMBEDDING/summary)."""
    result = await db.execute(
        update(Document)
        .where(Document.id == doc.id, Document.status == status)
        .values(stage=stage)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        raise InvalidTransitionError(f"Document {doc.id} is no longer {status}")


async def _fail(db: AsyncSession, doc: Document, reason: str) -> None:
    reason = (reason or "unknown error")[:MAX_ERROR_CHARS]
    result = await db.execute(
        update(Document)
        .where(Document.id == doc.id, Document.status.not_in(TERMINAL_STATUSES))
        .values(status=FAILED, stage="failed", error=reason)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 1:
        logger.warning("Index failed: doc=%s hash=%s: %s", doc.id, doc.doc_hash[:12], reason)
        await realtime.document_stage(doc.org_id, doc.tender_id, doc.doc_hash, FAILED, "failed", reason)


# ── Stages ───────────────────────────────────────────────────────────

async def _source(db: AsyncSession, doc: Document) -> tuple[bytes, str, str]:
    tender_file = await db.get(TenderFile, doc.file_id) if doc.file_id else None
    if tender_file is None or tender_file.org_id != doc.org_id:
        raise FileNotFoundError(f"source file for document {doc.id} is missing")
    data = await get_storage().get(tender_file.storage_key)
    return data, tender_file.filename, tender_file.mime_type or ""


async def _extract(db: AsyncSession, doc: Document) -> list[str]:
    data, filename, mime_type = await _source(db, doc)
    if hashlib.sha256(data).hexdigest() != doc.doc_hash:
        raise ValueError("stored bytes do not match the document hash")

    pages, metadata = await extract_pages(data, filename, mime_type)
    if not any(p.strip() for p in pages):
        raise ValueError(NO_TEXT_ERROR)

    await get_storage().put(
        document_key(doc.org_id, doc.tender_id, doc.doc_hash, "extracted.json"),
        json.dumps({"pages": pages, "metadata": metadata}).encode("utf-8"),
        "application/json",
    )
    logger.info(
        "Extracted doc=%s: %d pages, %d chars (%s)",
        doc.id, len(pages), metadata["char_count"], metadata["extractor"],
    )
    return pages


async def _chunk(db: AsyncSession, doc: Document, pages: list[str]) -> int:
    settings = get_settings()
    specs = chunk_pages(pages, settings.chunk_size, settings.chunk_overlap)
    if not specs:
        raise ValueError(NO_TEXT_ERROR)

    db.add_all([
        Chunk(
            org_id=doc.org_id,
            document_id=doc.id,
            doc_hash=doc.doc_hash,
            position=spec.position,
            text=spec.text,
            page=spec.page,
            offset=spec.offset,
        )
        for spec in specs
    ])
    await db.commit()
    return len(specs)


async def _embed(db: AsyncSession, doc: Document) -> str:
    chunks = (await db.execute(
        select(Chunk).where(Chunk.document_id == doc.id).order_by(Chunk.position)
    )).scalars().all()

    vectors, model = await embedding.embed_texts([c.text for c in chunks])
    if len(vectors) != len(chunks):
        raise ValueError(f"embedding count mismatch: {len(vectors)} for {len(chunks)} chunks")

    db.add_all([
        ChunkEmbedding(chunk_id=chunk.id, model=model, vector=vector)
        for chunk, vector in zip(chunks, vectors)
    ])
    await db.commit()
    logger.info("Embedded doc=%s: %d chunks (%s)", doc.id, len(chunks), model)
    return model


async def _summarize(db: AsyncSession, doc: Document, pages: list[str]) -> None:
    sections = []
    for number, text in enumerate(pages, start=1):
        text = text.strip()
        if not text:
            continue
        heading = text.splitlines()[0][:120]
        sections.append({"page": number, "heading": heading, "chars": len(text)})

    lead = " ".join(p.strip() for p in pages[:SUMMARY_SECTIONS] if p.strip())
    abstract = lead[:ABSTRACT_CHARS].rsplit(" ", 1)[0] if len(lead) > ABSTRACT_CHARS else lead

    db.add(DocumentSummary(document_id=doc.id, abstract=abstract, sections=sections))
    await db.commit()


async def run_pipeline(job: dict) -> Optional[str]:
    """
    Run every stage for one job. Returns the terminal status, or None when
    the job was stale (document gone or already picked up).
    """
    factory = get_session_factory()
    async with factory() as db:
        doc = await db.get(Document, job["document_id"])
        if doc is None:
            logger.warning("Index job for missing document %s dropped", job.get("document_id"))
            return None
        if doc.status != PENDING:
            logger.info("Index job for doc=%s skipped (status=%s)", doc.id, doc.status)
            return None
        # Detached: rollbacks below must not expire it.
        db.expunge(doc)

        try:
            await _advance(db, doc, PENDING, "extract")
            pages = await _extract(db, doc)

            await _advance(db, doc, EXTRACTING, "chunk", pages=len(pages))
            count = await _chunk(db, doc, pages)

            await _advance(db, doc, CHUNKING, "embed")
            model = await _embed(db, doc)

            if get_flags().precompute_summary:
                await _set_stage(db, doc, EMBEDDING, "summary")
                await _summarize(db, doc, pages)

            await _advance(db, doc, EMBEDDING, "done", embedding_model=model)
            logger.info("Index ready: doc=%s hash=%s chunks=%d", doc.id, doc.doc_hash[:12], count)
            return READY

        except InvalidTransitionError as e:
            # Another actor moved the document; its state wins.
            logger.warning("Index run for doc=%s abandoned: %s", doc.id, e)
            return None
        except Exception as e:
            logger.exception("Index stage failed for doc=%s", doc.id)
            await db.rollback()
            await _fail(db, doc, str(e) or type(e).__name__)
            return FAILED


# ── Recovery ─────────────────────────────────────────────────────────

async def recover_jobs(db: AsyncSession) -> tuple[int, int]:
    """
    Startup sweep for jobs lost with a previous worker. Every PENDING document
    is enqueued again (run_pipeline drops the duplicates), and documents stuck
    mid-pipeline for longer than INDEX_STALE_AFTER_SECONDS are failed.
    Returns (requeued, failed).
    """
    cutoff = utcnow() - timedelta(seconds=get_settings().index_stale_after_seconds)
    stranded = (await db.execute(
        select(Document).where(
            Document.status.in_([EXTRACTING, CHUNKING, EMBEDDING]),
            Document.updated_at < cutoff,
        )
    )).scalars().all()
    for doc in stranded:
        await _fail(db, doc, INTERRUPTED_ERROR)

    pending = (await db.execute(
        select(Document).where(Document.status == PENDING).order_by(Document.created_at)
    )).scalars().all()
    queue = get_queue()
    for doc in pending:
        await queue.enqueue(_job(doc))

    if stranded or pending:
        logger.info(
            "Index recovery: %d jobs requeued, %d interrupted documents failed",
            len(pending), len(stranded),
        )
    return len(pending), len(stranded)


# ── Upload ingestion ─────────────────────────────────────────────────

@dataclass
class IngestionResult:
    upload_id: str
    status: str
    files: int = 0
    queued: int = 0
    skipped: int = 0
    error: Optional[str] = None


def _expand(filename: str, data: bytes, max_entries: int) -> list[tuple[str, str, bytes]]:
    """(path, filename, bytes) per indexable unit. Zips expand to their file entries."""
    if Path(filename).suffix.lower() != ".zip":
        return [(filename, filename, data)]

    entries = []
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            name = Path(info.filename).name
            if not name or name.startswith(".") or info.filename.startswith("__MACOSX/"):
                continue
            if len(entries) >= max_entries:
                logger.warning("Zip %s has more than %d entries; rest ignored", filename, max_entries)
                break
            entries.append((info.filename, name, archive.read(info)))
    return entries


async def _fail_upload(db: AsyncSession, upload_id: str, reason: str) -> None:
    await db.execute(
        update(Upload)
        .where(Upload.id == upload_id)
        .values(status="FAILED", error=reason[:MAX_ERROR_CHARS])
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def trigger_ingestion(db: AsyncSession, upload_id: str) -> IngestionResult:
    """
    Hash an upload's files, record them, and ensure an index for each
    text-bearing one. Uploads without an organization are left alone.
    """
    upload = await db.get(Upload, upload_id)
    if upload is None:
        raise NotFoundError(f"Upload {upload_id} not found")

    if not upload.org_id or not upload.tender_id:
        logger.info("Upload %s has no organization/tender; ingestion skipped", upload_id)
        return IngestionResult(upload_id=upload_id, status=upload.status)

    settings = get_settings()
    storage = get_storage()
    org_id = upload.org_id
    upload.status = "PROCESSING"
    await db.commit()

    result = IngestionResult(upload_id=upload_id, status="PROCESSING")
    try:
        data = await storage.get(upload.storage_key)
        entries = _expand(upload.filename, data, settings.max_zip_entries)
        archived = Path(upload.filename).suffix.lower() == ".zip"

        for path, name, payload in entries:
            doc_hash = hashlib.sha256(payload).hexdigest()
            key = upload.storage_key
            if archived:
                key = await storage.put(
                    document_key(upload.org_id, upload.tender_id, doc_hash, f"raw{Path(name).suffix.lower()}"),
                    payload,
                    guess_content_type(name),
                )

            await db.execute(insert_ignore(
                db, TenderFile,
                {
                    "org_id": upload.org_id,
                    "tender_id": upload.tender_id,
                    "upload_id": upload.id,
                    "filename": name,
                    "path": path,
                    "mime_type": guess_content_type(name) if archived else (upload.mime_type or guess_content_type(name)),
                    "size": len(payload),
                    "storage_key": key,
                    "doc_hash": doc_hash,
                },
                ["upload_id", "path"],
            ))
            tender_file = (await db.execute(
                select(TenderFile).where(TenderFile.upload_id == upload.id, TenderFile.path == path)
            )).scalar_one()
            result.files += 1

            if not is_text_bearing(name, tender_file.mime_type or ""):
                logger.info("Upload %s: %s is not text-bearing, not indexed", upload_id, name)
                result.skipped += 1
                continue

            await ensure_index(
                db,
                org_id=upload.org_id,
                tender_id=upload.tender_id,
                doc_hash=doc_hash,
                upload_id=upload.id,
                file_id=tender_file.id,
                title=name,
                size_bytes=len(payload),
            )
            result.queued += 1

        upload.status = result.status = "COMPLETED"
        upload.error = None

    except (zipfile.BadZipFile, FileNotFoundError, ValueError) as e:
        logger.error("Upload %s ingestion failed: %s", upload_id, e)
        await db.rollback()
        upload = await db.get(Upload, upload_id)
        upload.status = result.status = "FAILED"
        upload.error = result.error = str(e)[:MAX_ERROR_CHARS]
    except Exception as e:
        logger.exception("Upload %s ingestion crashed", upload_id)
        await db.rollback()
        await _fail_upload(db, upload_id, f"{type(e).__name__}: {e}")
        await realtime.upload_processed(org_id, upload_id, "FAILED", result.files)
        raise

    await db.commit()
    await realtime.upload_processed(upload.org_id, upload_id, result.status, result.files)
    return result
