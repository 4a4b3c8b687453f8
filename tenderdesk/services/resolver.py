"""
Document resolver. Turns a client file reference into (upload, file, doc_hash)
plus the org/tender scope every later step filters on.

Member lookup first. When the caller is not in the owning org, a read-only
public lookup succeeds only for published tenders; writes never take that path.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.errors import ResolverError
from ..models.tender import Tender
from ..models.upload import TenderFile, Upload
from .extraction import is_text_bearing, media_kind

logger = logging.getLogger(__name__)

MEMBER = "member"
PUBLIC = "public"


@dataclass
class ResolvedFile:
    upload_id: str
    file_id: str
    doc_hash: str
    org_id: str
    tender_id: str
    filename: str
    access: str  # member | public

    @property
    def writable(self) -> bool:
        return self.access == MEMBER


async def _load_file(db: AsyncSession, file_ref: str) -> Optional[TenderFile]:
    ref = file_ref.removeprefix("file:")

    tender_file = await db.get(TenderFile, ref)
    if tender_file is not None:
        return tender_file

    # An upload id stands for its file when it expanded to exactly one.
    upload = await db.get(Upload, ref)
    if upload is None:
        return None
    files = (await db.execute(
        select(TenderFile).where(TenderFile.upload_id == upload.id).limit(2)
    )).scalars().all()
    return files[0] if len(files) == 1 else None


async def _is_published(db: AsyncSession, org_id: str, tender_id: str) -> bool:
    published = (await db.execute(
        select(Tender.is_published).where(
            Tender.id == tender_id,
            Tender.org_id == org_id,
        )
    )).scalar_one_or_none()
    return bool(published)


async def resolve_file(
    db: AsyncSession,
    file_ref: str,
    user: AuthenticatedUser,
    write: bool = False,
) -> ResolvedFile:
    """
    Resolve a file reference for `user`.

    Raises ResolverError NOT_FOUND / FORBIDDEN / UNSUPPORTED_FILE_TYPE.
    With write=True only member access is accepted.
    """
    tender_file = await _load_file(db, file_ref)
    if tender_file is None:
        raise ResolverError("NOT_FOUND", f"File {file_ref} not found")

    if user.org_id and user.org_id == tender_file.org_id:
        access = MEMBER
    elif write:
        logger.info(
            "Write on %s refused for org=%s (owner=%s)",
            tender_file.id, user.org_id or "-", tender_file.org_id,
        )
        raise ResolverError("FORBIDDEN", "Only members of the owning organization can index this file")
    elif await _is_published(db, tender_file.org_id, tender_file.tender_id):
        access = PUBLIC
    else:
        raise ResolverError("FORBIDDEN", "This tender is not public")

    if not is_text_bearing(tender_file.filename, tender_file.mime_type or ""):
        kind = media_kind(tender_file.filename, tender_file.mime_type or "")
        raise ResolverError(
            "UNSUPPORTED_FILE_TYPE",
            f"{tender_file.filename} is {kind} content and cannot be indexed",
        )

    if not tender_file.doc_hash:
        raise ResolverError("NOT_FOUND", f"File {tender_file.id} has not been ingested yet")

    return ResolvedFile(
        upload_id=tender_file.upload_id,
        file_id=tender_file.id,
        doc_hash=tender_file.doc_hash,
        org_id=tender_file.org_id,
        tender_id=tender_file.tender_id,
        filename=tender_file.filename,
        access=access,
    )


async def resolve_for_document(
    db: AsyncSession,
    file_ref: str,
    user: AuthenticatedUser,
    tender_id: str,
    doc_hash: str,
) -> ResolvedFile:
    """Resolve and check the file really is that tender's document with that hash."""
    resolved = await resolve_file(db, file_ref, user)
    if resolved.tender_id != tender_id or resolved.doc_hash != doc_hash:
        raise ResolverError("NOT_FOUND", "File does not belong to this document")
    return resolved
