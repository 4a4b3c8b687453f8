"""
Indexed documents and their pipeline artifacts.

One Document per (org, tender, doc_hash). Chunks, embeddings and the summary
are written only by the pipeline and hang off the Document.
"""

from typing import Optional

from sqlalchemy import (
    String, Text, Integer, BigInteger, JSON, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import OrgScopedBase, TimestampedBase

# ── Status machine ───────────────────────────────────────────────────

PENDING = "PENDING"
EXTRACTING = "EXTRACTING"
CHUNKING = "CHUNKING"
EMBEDDING = "EMBEDDING"
READY = "READY"
FAILED = "FAILED"

# Forward-only. FAILED is reachable from every non-terminal status.
NEXT_STATUS = {
    PENDING: EXTRACTING,
    EXTRACTING: CHUNKING,
    CHUNKING: EMBEDDING,
    EMBEDDING: READY,
}
TERMINAL_STATUSES = {READY, FAILED}


class Document(OrgScopedBase):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("org_id", "tender_id", "doc_hash", name="uq_documents_scope_hash"),
    )

    tender_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    doc_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    upload_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    file_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=PENDING)
    stage: Mapped[str] = mapped_column(
        String, nullable=False, default="queued"
    )  # queued, extract, chunk, embed, summary, done, failed
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    embedding_model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    chunks = relationship(
        "Chunk", back_populates="document", cascade="all, delete-orphan",
        order_by="Chunk.position",
    )


class Chunk(OrgScopedBase):
    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "position", name="uq_chunks_document_position"),
    )

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doc_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    page: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    document = relationship("Document", back_populates="chunks")
    embedding = relationship(
        "ChunkEmbedding", uselist=False, cascade="all, delete-orphan",
    )


class ChunkEmbedding(TimestampedBase):
    __tablename__ = "chunk_embeddings"

    chunk_id: Mapped[str] = mapped_column(
        String, ForeignKey("chunks.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    model: Mapped[str] = mapped_column(String, nullable=False)
    vector: Mapped[list] = mapped_column(JSON, nullable=False)


class DocumentSummary(TimestampedBase):
    __tablename__ = "document_summaries"

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    abstract: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sections: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
