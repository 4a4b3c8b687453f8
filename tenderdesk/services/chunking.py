"""
Fixed-size character windows with overlap, computed per page so every
chunk can cite the page it came from.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ChunkSpec:
    position: int
    text: str
    page: Optional[int]
    offset: int  # char offset within the page


def chunk_text(text: str, chunk_size: int, overlap: int) -> list[tuple[int, str]]:
    """Split text into (offset, chunk) windows. Whitespace-only windows are dropped."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = max(0, min(overlap, chunk_size - 1))

    windows = []
    start = 0
    while start < len(text):
        end = min(len(text), start + chunk_size)
        raw = text[start:end]
        chunk = raw.strip()
        if chunk:
            windows.append((start + (len(raw) - len(raw.lstrip())), chunk))
        if end == len(text):
            break
        next_start = end - overlap
        start = end if next_start <= start else next_start
    return windows


def chunk_pages(pages: list[str], chunk_size: int, overlap: int) -> list[ChunkSpec]:
    """Chunk each page independently. Positions run across the whole document."""
    specs = []
    for page_number, page_text in enumerate(pages, start=1):
        for offset, text in chunk_text(page_text, chunk_size, overlap):
            specs.append(ChunkSpec(
                position=len(specs),
                text=text,
                page=page_number,
                offset=offset,
            ))
    return specs
