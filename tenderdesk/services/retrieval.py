"""
Retrieval & generation over ONE document's chunks.

ask()   → grounded answer + citations, or the not-found sentinel
brief() → structured tender brief (JSON) + markdown rendered from it

Nothing here reads outside the resolved document's chunk set.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.errors import GenerationError, IndexNotReadyError
from ..models.document import Chunk, ChunkEmbedding, Document, READY
from . import embedding, llm
from .resolver import ResolvedFile

logger = logging.getLogger(__name__)

SENTINEL = "I couldn't find that in this file."
NOT_FOUND_TOKEN = "NOT_FOUND"
BRIEF_QUESTION = (
    "Provide a structured tender brief covering purpose, key requirements, "
    "eligibility, submission details, and risks."
)
SCAN_CAP = 3000
SNIPPET_CHARS = 240
BRIEF_ITEM_CAPS = {"short": 3, "medium": 6, "long": None}


# ── Types ────────────────────────────────────────────────────────────

@dataclass
class ScoredChunk:
    position: int
    text: str
    page: Optional[int]
    score: float


@dataclass
class Citation:
    doc_name: str
    page: Optional[int] = None
    snippet: Optional[str] = None

    def to_dict(self) -> dict:
        return {"doc_name": self.doc_name, "page": self.page, "snippet": self.snippet}


@dataclass
class AskResult:
    answer: str
    citations: list[Citation] = field(default_factory=list)
    found: bool = True


class Submission(BaseModel):
    deadline: Optional[str] = None
    method: Optional[str] = None
    bid_security: Optional[str] = None

    @field_validator("deadline", "method", "bid_security", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v if v and v != SENTINEL else None


class BriefJson(BaseModel):
    purpose: list[str] = []
    key_requirements: list[str] = []
    eligibility: list[str] = []
    submission: Optional[Submission] = None
    risks: list[str] = []

    @field_validator("purpose", "key_requirements", "eligibility", "risks", mode="before")
    @classmethod
    def _clean_items(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        items = []
        for item in v:
            if isinstance(item, dict):
                item = item.get("text") or item.get("item") or ""
            item = str(item).strip().lstrip("-• ").strip()
            if item and item != SENTINEL:
                items.append(item)
        return items

    def capped(self, cap: Optional[int]) -> "BriefJson":
        if cap is None:
            return self
        return self.model_copy(update={
            name: getattr(self, name)[:cap]
            for name in ("purpose", "key_requirements", "eligibility", "risks")
        })

    def to_dict(self) -> dict:
        """Empty sections omitted."""
        data = self.model_dump(exclude_none=True)
        if not data.get("submission"):
            data.pop("submission", None)
        return {k: v for k, v in data.items() if v}


@dataclass
class BriefResult:
    brief_json: dict
    markdown: str


# ── Retrieval ────────────────────────────────────────────────────────

async def ready_document(db: AsyncSession, resolved: ResolvedFile) -> Document:
    doc = (await db.execute(
        select(Document).where(
            Document.org_id == resolved.org_id,
            Document.tender_id == resolved.tender_id,
            Document.doc_hash == resolved.doc_hash,
        )
    )).scalar_one_or_none()
    if doc is None or doc.status != READY:
        raise IndexNotReadyError(doc.status if doc else None)
    return doc


async def retrieve(
    db: AsyncSession,
    doc: Document,
    query: str,
    top_k: int,
    min_similarity: Optional[float] = None,
) -> list[ScoredChunk]:
    """Top-k chunks of this document by cosine similarity to the query."""
    query_vector = await embedding.embed_query(query, doc.embedding_model)

    rows = (await db.execute(
        select(Chunk.position, Chunk.text, Chunk.page, ChunkEmbedding.vector)
        .join(ChunkEmbedding, ChunkEmbedding.chunk_id == Chunk.id)
        .where(Chunk.document_id == doc.id, Chunk.org_id == doc.org_id)
        .order_by(Chunk.position)
        .limit(SCAN_CAP)
    )).all()

    scores = embedding.cosine_scores(query_vector, [r.vector for r in rows])
    order = np.argsort(-scores, kind="stable")
    if min_similarity is not None:
        order = order[scores[order] >= min_similarity]

    return [
        ScoredChunk(position=rows[i].position, text=rows[i].text, page=rows[i].page, score=float(scores[i]))
        for i in order[:top_k]
    ]


def build_context(chunks: list[ScoredChunk], doc_name: str, max_chars: int) -> tuple[str, list[ScoredChunk]]:
    """Pack chunks under [doc p.N] headers until max_chars. Returns (context, used)."""
    blocks, used, total = [], [], 0
    for chunk in chunks:
        header = f"[{doc_name} p.{chunk.page}]" if chunk.page else f"[{doc_name}]"
        block = f"{header}\n{chunk.text}"
        if used and total + len(block) > max_chars:
            break
        blocks.append(block[:max_chars])
        used.append(chunk)
        total += len(block) + 2
    return "\n\n".join(blocks), used


def _citations(chunks: list[ScoredChunk], doc_name: str) -> list[Citation]:
    seen, citations = set(), []
    for chunk in chunks:
        if chunk.page in seen:
            continue
        seen.add(chunk.page)
        snippet = chunk.text[:SNIPPET_CHARS].rstrip()
        citations.append(Citation(doc_name=doc_name, page=chunk.page, snippet=snippet))
    return citations


# ── ask ──────────────────────────────────────────────────────────────

ASK_SYSTEM = (
    "You answer questions about a single tender document using only the excerpts provided. "
    "Each excerpt starts with [document p.N]. Be concise and mention page numbers where relevant. "
    f"If the excerpts do not contain the answer, reply with exactly {NOT_FOUND_TOKEN}."
)


async def ask(db: AsyncSession, resolved: ResolvedFile, question: str) -> AskResult:
    settings = get_settings()
    doc = await ready_document(db, resolved)
    doc_name = doc.title or resolved.filename

    chunks = await retrieve(
        db, doc, question,
        top_k=settings.retrieval_top_k,
        min_similarity=settings.retrieval_min_similarity,
    )
    if not chunks:
        logger.info("ask doc=%s: no chunk above %.2f", doc.id, settings.retrieval_min_similarity)
        return AskResult(answer=SENTINEL, found=False)

    context, used = build_context(chunks, doc_name, settings.max_context_chars)
    answer = await llm.complete(
        f"Excerpts:\n{context}\n\nQuestion: {question}",
        system=ASK_SYSTEM,
    )

    if not answer or answer.strip().upper().startswith(NOT_FOUND_TOKEN):
        return AskResult(answer=SENTINEL, found=False)

    return AskResult(answer=answer, citations=_citations(used, doc_name))


# ── brief ────────────────────────────────────────────────────────────

BRIEF_SYSTEM = (
    "You write structured briefs of tender documents using only the excerpts provided. "
    "Respond with one JSON object with keys: purpose (list of strings), key_requirements "
    "(list of strings), eligibility (list of strings), submission (object with deadline, "
    "method, bid_security; strings or null), risks (list of strings). Leave a list empty "
    "or a field null when the excerpts say nothing about it. Do not invent facts."
)


def parse_brief(raw: str) -> BriefJson:
    """First JSON object in the model output, normalised. GenerationError if none."""
    start = raw.find("{")
    if start < 0:
        raise GenerationError("Brief response contained no JSON object")
    try:
        data, _ = json.JSONDecoder().raw_decode(raw[start:])
        return BriefJson.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise GenerationError(f"Brief response was not valid JSON: {e}") from e


LIST_SECTIONS = [
    ("purpose", "Purpose"),
    ("key_requirements", "Key requirements"),
    ("eligibility", "Eligibility"),
]


def render_markdown(brief: BriefJson, title: str) -> str:
    lines = [f"# Tender brief: {title}", ""]
    for key, heading in LIST_SECTIONS:
        items = getattr(brief, key)
        if items:
            lines += [f"## {heading}", *[f"- {item}" for item in items], ""]

    sub = brief.submission
    if sub and (sub.deadline or sub.method or sub.bid_security):
        lines.append("## Submission")
        if sub.deadline:
            lines.append(f"- **Deadline:** {sub.deadline}")
        if sub.method:
            lines.append(f"- **Method:** {sub.method}")
        if sub.bid_security:
            lines.append(f"- **Bid security:** {sub.bid_security}")
        lines.append("")

    if brief.risks:
        lines += ["## Risks", *[f"- {item}" for item in brief.risks], ""]

    if len(lines) == 2:
        lines += [SENTINEL, ""]
    return "\n".join(lines).rstrip() + "\n"


async def brief(db: AsyncSession, resolved: ResolvedFile, length: str = "medium") -> BriefResult:
    if length not in BRIEF_ITEM_CAPS:
        raise ValueError(f"length must be one of {', '.join(BRIEF_ITEM_CAPS)}")

    settings = get_settings()
    doc = await ready_document(db, resolved)
    doc_name = doc.title or resolved.filename

    chunks = await retrieve(db, doc, BRIEF_QUESTION, top_k=settings.brief_top_k)
    if not chunks:
        raise IndexNotReadyError(doc.status, "Document has no indexed text to brief")

    # Reading order reads better than similarity order for a brief.
    chunks.sort(key=lambda c: c.position)
    context, _ = build_context(chunks, doc_name, settings.max_context_chars)

    raw = await llm.complete(
        f"Excerpts:\n{context}\n\nTask: {BRIEF_QUESTION} Target length: {length}.",
        system=BRIEF_SYSTEM,
        json_mode=True,
    )
    parsed = parse_brief(raw).capped(BRIEF_ITEM_CAPS[length])

    logger.info("brief doc=%s length=%s chunks=%d", doc.id, length, len(chunks))
    return BriefResult(brief_json=parsed.to_dict(), markdown=render_markdown(parsed, doc_name))
