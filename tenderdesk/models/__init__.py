"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TimestampedBase, OrgScopedBase
from .organization import Organization
from .tender import Tender
from .upload import Upload, TenderFile
from .document import Document, Chunk, ChunkEmbedding, DocumentSummary
from .usage import OrgTenderUsage, OrgMonthlyUsage, OrgTrialUsage

__all__ = [
    "TimestampedBase", "OrgScopedBase",
    "Organization",
    "Tender",
    "Upload", "TenderFile",
    "Document", "Chunk", "ChunkEmbedding", "DocumentSummary",
    "OrgTenderUsage", "OrgMonthlyUsage", "OrgTrialUsage",
]
