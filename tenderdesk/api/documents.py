"""
Document index endpoints.

POST /v1/files/{file_ref}/ensure-index          create-or-attach the index
GET  /v1/tenders/{tid}/docs/{hash}/progress     poll pipeline state
POST /v1/tenders/{tid}/docs/{hash}/retry        restart a FAILED index (admin)
GET  /v1/tenders/{tid}/ingestion                tender readiness summary
POST /v1/tenders/{tid}/docs/{hash}/ask          grounded Q&A (metered)
POST /v1/tenders/{tid}/docs/{hash}/brief        structured brief (metered)
GET  /v1/files/{file_ref}/pages/{page}          page text preview (page-view gate)
"""

import json
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_caller, get_db, get_storage_dep, require_admin
from ..core.errors import NotFoundError
from ..core.storage import StorageBackend, document_key
from ..models.document import Document, FAILED
from ..models.tender import Tender
from ..services import gate, pipeline, progress, retrieval
from ..services.gate import GateContext
from ..services.resolver import resolve_file, resolve_for_document

logger = logging.getLogger(__name__)

documents_router = APIRouter(tags=["documents"])


# ── Schemas ──────────────────────────────────────────────────────────

class EnsureIndexRequest(BaseModel):
    retry_failed: bool = False


class IndexStateResponse(BaseModel):
    doc_hash: str
    status: str
    stage: Optional[str] = None
    error: Optional[str] = None
    created: bool = False
    document_id: Optional[str] = None


class ProgressResponse(BaseModel):
    doc_hash: str
    status: str
    stage: str
    error: Optional[str] = None
    updated_at: Optional[str] = None
    terminal: bool = False


class IngestionResponse(BaseModel):
    tender_id: str
    status: str
    ready_docs: int
    total_docs: int
    by_status: dict[str, int] = {}


class AskRequest(BaseModel):
    file_id: str
    question: str = Field(min_length=1, max_length=2000)


class CitationResponse(BaseModel):
    doc_name: str
    page: Optional[int] = None
    snippet: Optional[str] = None


class AskResponse(BaseModel):
    answer: str
    citations: list[CitationResponse] = []
    found: bool = True


class BriefRequest(BaseModel):
    file_id: str
    length: Literal["short", "medium", "long"] = "medium"


class BriefResponse(BaseModel):
    brief_json: dict
    markdown: str


class PageResponse(BaseModel):
    file_id: str
    page: int
    pages: int
    text: str


# ── Helpers ──────────────────────────────────────────────────────────

async def _tender_org(db: AsyncSession, tender_id: str, user: AuthenticatedUser) -> str:
    """Owning org of a tender the caller may read (member or published)."""
    tender = await db.get(Tender, tender_id)
    if tender is None:
        raise NotFoundError(f"Tender {tender_id} not found")
    if user.org_id and user.org_id == tender.org_id:
        return tender.org_id
    if tender.is_published:
        return tender.org_id
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This tender is not public")


# ── Index lifecycle ──────────────────────────────────────────────────

@documents_router.post("/files/{file_ref}/ensure-index", response_model=IndexStateResponse)
async def ensure_index(
    file_ref: str,
    request: Optional[EnsureIndexRequest] = None,
    user: AuthenticatedUser = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Idempotent: any number of callers get one index and one pipeline run."""
    retry_failed = bool(request and request.retry_failed)
    if retry_failed and not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required to retry")

    state = await pipeline.ensure_index_for_file(db, file_ref, user, retry_failed=retry_failed)
    return IndexStateResponse(**state.to_dict())


@documents_router.get("/tenders/{tender_id}/docs/{doc_hash}/progress", response_model=ProgressResponse)
async def get_progress(
    tender_id: str,
    doc_hash: str,
    user: AuthenticatedUser = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    org_id = await _tender_org(db, tender_id, user)
    snapshot = await progress.progress(db, org_id=org_id, tender_id=tender_id, doc_hash=doc_hash)
    return ProgressResponse(**snapshot.to_dict())


@documents_router.post("/tenders/{tender_id}/docs/{doc_hash}/retry", response_model=IndexStateResponse)
async def retry_index(
    tender_id: str,
    doc_hash: str,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Restart a FAILED index. 409 for any other state."""
    doc = (await db.execute(
        select(Document).where(
            Document.org_id == user.org_id,
            Document.tender_id == tender_id,
            Document.doc_hash == doc_hash,
        )
    )).scalar_one_or_none()
    if doc is None:
        raise NotFoundError(f"No index for document {doc_hash}")
    if doc.status != FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only FAILED documents can be retried (status={doc.status})",
        )

    state = await pipeline.ensure_index(
        db,
        org_id=doc.org_id,
        tender_id=doc.tender_id,
        doc_hash=doc.doc_hash,
        retry_failed=True,
    )
    return IndexStateResponse(**state.to_dict())


@documents_router.get("/tenders/{tender_id}/ingestion", response_model=IngestionResponse)
async def get_ingestion(
    tender_id: str,
    user: AuthenticatedUser = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    org_id = await _tender_org(db, tender_id, user)
    return IngestionResponse(**await progress.tender_ingestion(db, org_id, tender_id))


# ── Retrieval (metered) ──────────────────────────────────────────────

@documents_router.post("/tenders/{tender_id}/docs/{doc_hash}/ask", response_model=AskResponse)
async def ask_document(
    tender_id: str,
    doc_hash: str,
    request: AskRequest,
    user: AuthenticatedUser = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    resolved = await resolve_for_document(db, request.file_id, user, tender_id, doc_hash)
    await retrieval.ready_document(db, resolved)

    grant = await gate.enforce_access(
        db, user.org_id, "chat",
        GateContext(tender_id=tender_id, document_id=resolved.file_id),
    )
    await db.commit()

    try:
        result = await retrieval.ask(db, resolved, request.question)
    except Exception:
        await gate.refund(db, grant)
        await db.commit()
        raise

    return AskResponse(
        answer=result.answer,
        citations=[CitationResponse(**c.to_dict()) for c in result.citations],
        found=result.found,
    )


@documents_router.post("/tenders/{tender_id}/docs/{doc_hash}/brief", response_model=BriefResponse)
async def brief_document(
    tender_id: str,
    doc_hash: str,
    request: BriefRequest,
    user: AuthenticatedUser = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    resolved = await resolve_for_document(db, request.file_id, user, tender_id, doc_hash)
    await retrieval.ready_document(db, resolved)

    grant = await gate.enforce_access(
        db, user.org_id, "brief",
        GateContext(tender_id=tender_id, document_id=resolved.file_id),
    )
    await db.commit()

    try:
        result = await retrieval.brief(db, resolved, request.length)
    except Exception:
        # Generation failed: the trial credit and tender slot go back.
        await gate.refund(db, grant)
        await db.commit()
        raise

    return BriefResponse(brief_json=result.brief_json, markdown=result.markdown)


# ── Page preview ─────────────────────────────────────────────────────

@documents_router.get("/files/{file_ref}/pages/{page}", response_model=PageResponse)
async def get_page(
    file_ref: str,
    page: int,
    user: AuthenticatedUser = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_dep),
):
    if page < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="page starts at 1")

    resolved = await resolve_file(db, file_ref, user)
    context = GateContext(tender_id=resolved.tender_id, document_id=resolved.file_id, page=page)
    if user.org_id:
        await gate.enforce_access(db, user.org_id, "page_view", context)
    else:
        # Visitor of a published tender (the resolver only lets those through).
        gate.enforce_public_preview(context)

    key = document_key(resolved.org_id, resolved.tender_id, resolved.doc_hash, "extracted.json")
    try:
        extracted = json.loads(await storage.get(key))
    except FileNotFoundError:
        raise NotFoundError("Document text has not been extracted yet")

    pages = extracted.get("pages", [])
    if page > len(pages):
        raise NotFoundError(f"Page {page} does not exist ({len(pages)} pages)")

    return PageResponse(file_id=resolved.file_id, page=page, pages=len(pages), text=pages[page - 1])
