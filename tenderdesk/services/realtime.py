"""
Pipeline events pushed to subscribers of the org and tender channels.
"""

from typing import Optional

from ..core import redis as _redis


async def document_stage(
    org_id: str,
    tender_id: str,
    doc_hash: str,
    status: str,
    stage: str,
    error: Optional[str] = None,
):
    await _redis.notify_tender(
        org_id, tender_id, "document.stage",
        {"doc_hash": doc_hash, "status": status, "stage": stage, "error": error},
    )


async def upload_processed(org_id: str, upload_id: str, status: str, files: int = 0):
    await _redis.notify_org(
        org_id, "upload.processed",
        {"upload_id": upload_id, "status": status, "files": files},
    )
