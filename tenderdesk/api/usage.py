"""
Plan & usage endpoints, plus the cover-letter call site of the gate.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_db, require_org
from ..core.errors import NotFoundError
from ..models.document import Document, DocumentSummary, READY
from ..models.tender import Tender
from ..services import gate, llm
from ..services.gate import GateContext

logger = logging.getLogger(__name__)

usage_router = APIRouter(tags=["usage"])


class CoverLetterRequest(BaseModel):
    company_name: str = Field(min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=4000)


class CoverLetterResponse(BaseModel):
    tender_id: str
    letter: str


@usage_router.get("/usage")
async def get_usage(
    tender_id: Optional[str] = None,
    user: AuthenticatedUser = Depends(require_org),
    db: AsyncSession = Depends(get_db),
):
    """Plan limits and current counters for the caller's org."""
    return await gate.entitlements_for(db, user.org_id, tender_id)


@usage_router.get("/me/entitlements")
async def get_entitlements(
    user: AuthenticatedUser = Depends(require_org),
    db: AsyncSession = Depends(get_db),
):
    data = await gate.entitlements_for(db, user.org_id)
    return {k: data[k] for k in ("plan", "trial_expired", "plan_expires_at", "limits", "features")}


@usage_router.post("/tenders/{tender_id}/cover-letter", response_model=CoverLetterResponse)
async def cover_letter(
    tender_id: str,
    request: CoverLetterRequest,
    user: AuthenticatedUser = Depends(require_org),
    db: AsyncSession = Depends(get_db),
):
    tender = await db.get(Tender, tender_id)
    if tender is None or (tender.org_id != user.org_id and not tender.is_published):
        raise NotFoundError(f"Tender {tender_id} not found")

    await gate.enforce_access(db, user.org_id, "cover_letter", GateContext(tender_id=tender_id))

    abstracts = (await db.execute(
        select(Document.title, DocumentSummary.abstract)
        .join(DocumentSummary, DocumentSummary.document_id == Document.id)
        .where(
            Document.org_id == tender.org_id,
            Document.tender_id == tender_id,
            Document.status == READY,
        )
        .limit(5)
    )).all()
    context = "\n\n".join(f"[{title}]\n{abstract}" for title, abstract in abstracts if abstract)

    letter = await llm.complete(
        f"Tender: {tender.title}\nBidder: {request.company_name}\n"
        f"Notes from the bidder: {request.notes or '-'}\n\n"
        f"Tender document summaries:\n{context or '(none indexed yet)'}",
        system=(
            "Write a formal, one-page cover letter for a bid on this tender. "
            "Use only facts from the summaries and the bidder's notes."
        ),
    )
    logger.info("Cover letter generated: org=%s tender=%s", user.org_id, tender_id)
    return CoverLetterResponse(tender_id=tender_id, letter=letter)
