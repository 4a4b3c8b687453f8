"""
Page-level text extraction.
- pdfplumber for normal PDFs (free, local), tables flattened into the page text
- python-docx for Word documents
- AIML OCR (Google Document AI) for scanned PDFs (flagged)
"""

import base64
import logging
import mimetypes
import re
from io import BytesIO
from pathlib import Path
from typing import Optional

import httpx

from ..core.config import get_settings
from ..core.flags import get_flags

logger = logging.getLogger(__name__)

# ── File types ───────────────────────────────────────────────────────

PDF_EXTENSIONS = {".pdf"}
DOCX_EXTENSIONS = {".docx"}
PLAINTEXT_EXTENSIONS = {".txt", ".md", ".csv", ".json"}

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".bmp", ".tiff", ".heic"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".flv", ".wmv", ".m4v", ".3gp"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".aac", ".ogg", ".flac"}

ARCHIVE_EXTENSIONS = {".zip"}

# Fewer extracted chars than this across a PDF → probably scanned → try OCR
OCR_THRESHOLD = 100


DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def text_format(filename: str, mime_type: str = "") -> Optional[str]:
    """
    "pdf", "docx" or "text" for formats the pipeline can pull text from,
    else None. The extension decides; the MIME type only when there is none.
    """
    ext = Path(filename).suffix.lower()
    if ext:
        if ext in PDF_EXTENSIONS:
            return "pdf"
        if ext in DOCX_EXTENSIONS:
            return "docx"
        if ext in PLAINTEXT_EXTENSIONS:
            return "text"
        return None

    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime == "application/pdf":
        return "pdf"
    if mime == DOCX_MIME:
        return "docx"
    if mime.startswith("text/"):
        return "text"
    return None


def is_text_bearing(filename: str, mime_type: str = "") -> bool:
    return text_format(filename, mime_type) is not None


def media_kind(filename: str, mime_type: str = "") -> str:
    """Coarse kind for logging and rejection messages."""
    ext = Path(filename).suffix.lower()
    mime = (mime_type or "").lower()
    if ext in IMAGE_EXTENSIONS or mime.startswith("image/"):
        return "image"
    if ext in VIDEO_EXTENSIONS or mime.startswith("video/"):
        return "video"
    if ext in AUDIO_EXTENSIONS or mime.startswith("audio/"):
        return "audio"
    if ext in ARCHIVE_EXTENSIONS:
        return "archive"
    if is_text_bearing(filename, mime_type):
        return "document"
    return "binary"


# ── Extraction ───────────────────────────────────────────────────────

def normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


async def extract_pages(file_bytes: bytes, filename: str, mime_type: str = "") -> tuple[list[str], dict]:
    """
    Extract text per page. Returns (pages, metadata); pages[0] is page 1.
    Formats without real pages come back as a single page.
    """
    kind = text_format(filename, mime_type)
    metadata = {"filename": filename, "used_ocr": False}

    if kind == "pdf":
        pages = _extract_pdf(file_bytes)
        metadata["extractor"] = "pdfplumber"

        # Too little text → probably scanned → try OCR
        flags = get_flags()
        total = sum(len(p.strip()) for p in pages)
        if flags.use_ocr and total < OCR_THRESHOLD:
            ocr_pages = await _ocr_extract(file_bytes, filename)
            if sum(len(p.strip()) for p in ocr_pages) > total:
                pages = ocr_pages
                metadata["used_ocr"] = True
                metadata["extractor"] = "aiml_ocr"

    elif kind == "docx":
        pages = [_extract_docx(file_bytes)]
        metadata["extractor"] = "python-docx"

    elif kind == "text":
        pages = [file_bytes.decode("utf-8", errors="replace")]
        metadata["extractor"] = "plaintext"

    else:
        raise ValueError(f"unsupported file type: {Path(filename).suffix.lower() or mime_type or 'unknown'}")

    pages = [normalize_whitespace(p) for p in pages]
    metadata["page_count"] = len(pages)
    metadata["char_count"] = sum(len(p) for p in pages)
    return pages, metadata


def _extract_pdf(file_bytes: bytes) -> list[str]:
    """Extract text per page from PDF using pdfplumber (local, free)."""
    import pdfplumber

    pages_text = []
    try:
        with pdfplumber.open(BytesIO(file_bytes)) as pdf:
            for page in pdf.pages:
                text = page.extract_text() or ""
                for table in page.extract_tables() or []:
                    for row in table:
                        if row:
                            text += "\n" + " | ".join(
                                str(cell) if cell else "" for cell in row
                            )
                pages_text.append(text)
    except Exception as e:
        raise ValueError(f"PDF could not be parsed: {e}") from e
    return pages_text


def _extract_docx(file_bytes: bytes) -> str:
    """Extract text from DOCX, paragraphs then tables."""
    import docx

    try:
        doc = docx.Document(BytesIO(file_bytes))
    except Exception as e:
        raise ValueError(f"DOCX could not be parsed: {e}") from e

    parts = [para.text for para in doc.paragraphs if para.text]
    for table in doc.tables:
        for row in table.rows:
            parts.append(" | ".join(cell.text for cell in row.cells))
    return "\n\n".join(parts)


def _ocr_pages(result: dict) -> list[str]:
    pages = [p.get("markdown") or p.get("text") or "" for p in result.get("pages") or []]
    if not pages and result.get("text"):
        pages = [result["text"]]
    return pages


async def _ocr_extract(file_bytes: bytes, filename: str) -> list[str]:
    """Scanned PDF → per-page text via the AIML OCR endpoint. Empty list on any failure."""
    settings = get_settings()
    if not settings.aiml_api_key:
        logger.warning("Skipping OCR for %s: AIML_API_KEY is not set", filename)
        return []

    body = {
        "model": settings.aiml_ocr_model,
        "document": base64.b64encode(file_bytes).decode("ascii"),
        "mimeType": mimetypes.guess_type(filename)[0] or "application/pdf",
    }
    url = f"{settings.aiml_base_url.rstrip('/')}/ocr"

    try:
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(url, json=body, headers={"Authorization": f"Bearer {settings.aiml_api_key}"})
    except httpx.HTTPError as e:
        logger.error("OCR request for %s failed: %s", filename, e)
        return []

    if resp.status_code >= 300:
        logger.error("OCR rejected %s, HTTP %d: %s", filename, resp.status_code, resp.text[:200])
        return []
    return _ocr_pages(resp.json())
