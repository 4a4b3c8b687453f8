"""
Uploads and the files they expand into.

An Upload is one PUT of raw bytes (external). Ingestion turns it into one
TenderFile per indexable unit: the file itself, or every entry of a zip.
"""

from typing import Optional

from sqlalchemy import String, Text, BigInteger, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import OrgScopedBase, TimestampedBase


class Upload(TimestampedBase):
    __tablename__ = "uploads"

    # Nullable: anonymous/orphan uploads exist and are never ingested.
    org_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    tender_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="PENDING"
    )  # PENDING, PROCESSING, COMPLETED, FAILED
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TenderFile(OrgScopedBase):
    __tablename__ = "tender_files"
    __table_args__ = (
        Index("ix_tender_files_upload_path", "upload_id", "path", unique=True),
    )

    tender_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    upload_id: Mapped[str] = mapped_column(
        String, ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False
    )
    filename: Mapped[str] = mapped_column(String, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)  # entry path inside a zip, else filename
    mime_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    doc_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
