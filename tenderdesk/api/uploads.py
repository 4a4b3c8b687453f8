"""
Upload endpoints.

POST /v1/uploads                        multipart upload of a tender file or zip
POST /v1/uploads/{upload_id}/complete   hash, expand and queue indexing
GET  /v1/uploads/{upload_id}/files      files the upload expanded into
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_db, get_storage_dep, require_org
from ..core.errors import NotFoundError
from ..core.storage import StorageBackend, guess_content_type, upload_key
from ..models.base import new_uuid
from ..models.tender import Tender
from ..models.upload import TenderFile, Upload
from ..services import pipeline

logger = logging.getLogger(__name__)

uploads_router = APIRouter(tags=["uploads"])

# ── Size limits ───────────────────────────────────────────────────────

MAX_UPLOAD_SIZE = 200 * 1024 * 1024   # 200 MB (zips of tender packs)


# ── Schemas ──────────────────────────────────────────────────────────

class UploadResponse(BaseModel):
    upload_id: str
    filename: str
    size: int = 0
    content_type: str = ""
    status: str


class IngestionResponse(BaseModel):
    upload_id: str
    status: str
    files: int = 0
    queued: int = 0
    skipped: int = 0
    error: Optional[str] = None


class TenderFileResponse(BaseModel):
    file_id: str
    filename: str
    path: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    doc_hash: Optional[str] = None


# ── Routes ───────────────────────────────────────────────────────────

@uploads_router.post("/uploads", response_model=UploadResponse)
async def create_upload(
    file: UploadFile = File(...),
    tender_id: str = Form(...),
    user: AuthenticatedUser = Depends(require_org),
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_dep),
):
    tender = await db.get(Tender, tender_id)
    if tender is None or tender.org_id != user.org_id:
        raise NotFoundError(f"Tender {tender_id} not found")

    data = await file.read()
    if len(data) > MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large ({len(data) // (1024 * 1024)}MB). Max {MAX_UPLOAD_SIZE // (1024 * 1024)}MB.",
        )

    filename = Path(file.filename or "document").name
    content_type = file.content_type or guess_content_type(filename)
    upload_id = new_uuid()
    key = await storage.put(upload_key(user.org_id, upload_id, filename), data, content_type)

    upload = Upload(
        id=upload_id,
        org_id=user.org_id,
        tender_id=tender_id,
        filename=filename,
        mime_type=content_type,
        size=len(data),
        storage_key=key,
    )
    db.add(upload)
    await db.flush()

    logger.info("Upload stored: %s (%d bytes) tender=%s", filename, len(data), tender_id)
    return UploadResponse(
        upload_id=upload.id,
        filename=filename,
        size=len(data),
        content_type=content_type,
        status=upload.status,
    )


@uploads_router.post("/uploads/{upload_id}/complete", response_model=IngestionResponse)
async def complete_upload(
    upload_id: str,
    user: AuthenticatedUser = Depends(require_org),
    db: AsyncSession = Depends(get_db),
):
    upload = await db.get(Upload, upload_id)
    if upload is None or (upload.org_id and upload.org_id != user.org_id):
        raise NotFoundError(f"Upload {upload_id} not found")

    result = await pipeline.trigger_ingestion(db, upload_id)
    return IngestionResponse(**result.__dict__)


@uploads_router.get("/uploads/{upload_id}/files", response_model=list[TenderFileResponse])
async def list_upload_files(
    upload_id: str,
    user: AuthenticatedUser = Depends(require_org),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(TenderFile)
        .where(TenderFile.upload_id == upload_id, TenderFile.org_id == user.org_id)
        .order_by(TenderFile.path)
    )
    return [
        TenderFileResponse(
            file_id=f.id,
            filename=f.filename,
            path=f.path,
            mime_type=f.mime_type,
            size=f.size,
            doc_hash=f.doc_hash,
        )
        for f in result.scalars().all()
    ]
