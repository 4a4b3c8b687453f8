"""
Progress tracker. Read-only views over Document rows; the row is the single
source of truth, so any number of pollers see the same state.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFoundError
from ..models.document import Document, READY, TERMINAL_STATUSES


@dataclass
class ProgressSnapshot:
    doc_hash: str
    status: str
    stage: str
    error: Optional[str]
    updated_at: Optional[datetime]

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> dict:
        return {
            "doc_hash": self.doc_hash,
            "status": self.status,
            "stage": self.stage,
            "error": self.error,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "terminal": self.terminal,
        }


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


async def progress(db: AsyncSession, *, org_id: str, tender_id: str, doc_hash: str) -> ProgressSnapshot:
    row = (await db.execute(
        select(
            Document.doc_hash, Document.status, Document.stage,
            Document.error, Document.updated_at,
        ).where(
            Document.org_id == org_id,
            Document.tender_id == tender_id,
            Document.doc_hash == doc_hash,
        )
    )).one_or_none()
    if row is None:
        raise NotFoundError(f"No index for document {doc_hash}")
    return ProgressSnapshot(
        doc_hash=row.doc_hash,
        status=row.status,
        stage=row.stage,
        error=row.error,
        updated_at=row.updated_at,
    )


async def tender_ingestion(db: AsyncSession, org_id: str, tender_id: str) -> dict:
    """READY when every document is READY, PARTIAL when some are, PENDING otherwise."""
    rows = (await db.execute(
        select(Document.status, func.count())
        .where(Document.org_id == org_id, Document.tender_id == tender_id)
        .group_by(Document.status)
    )).all()
    counts = {status: n for status, n in rows}
    total = sum(counts.values())
    ready = counts.get(READY, 0)

    if total and ready == total:
        status = "READY"
    elif ready:
        status = "PARTIAL"
    else:
        status = "PENDING"

    return {
        "tender_id": tender_id,
        "status": status,
        "ready_docs": ready,
        "total_docs": total,
        "by_status": counts,
    }
