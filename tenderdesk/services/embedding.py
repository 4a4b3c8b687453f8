"""
Embeddings for chunks and queries.

Provider embeddings via services.llm, with a deterministic hashing embedder
used when the provider is unreachable or not configured (FF_USE_FALLBACK_EMBEDDING).
A document is embedded entirely with one model; queries against it must use
that same model.
"""

import hashlib
import logging
import re
from typing import Optional

import httpx
import numpy as np

from ..core.config import get_settings
from ..core.flags import get_flags
from . import llm

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "fallback/text-embedding-v1"
FALLBACK_DIMS = 256

_TOKEN_RE = re.compile(r"[a-z0-9]+")


# ── Hashing fallback ─────────────────────────────────────────────────

def _digest(token: str, salt: int = 0) -> bytes:
    h = hashlib.sha256(token.encode("utf-8"))
    if salt:
        h.update(bytes([salt]))
    return h.digest()


def _bucket(digest: bytes) -> tuple[int, float]:
    index = int.from_bytes(digest[:4], "big") % FALLBACK_DIMS
    sign = 1.0 if digest[4] & 1 == 0 else -1.0
    return index, sign


def fallback_vector(text: str) -> list[float]:
    """Token + bigram feature hashing, L2-normalised. Empty text → zero vector."""
    vector = np.zeros(FALLBACK_DIMS)
    tokens = _TOKEN_RE.findall(text.lower())

    for i, token in enumerate(tokens):
        index, sign = _bucket(_digest(token))
        vector[index] += sign
        if i < len(tokens) - 1:
            index, sign = _bucket(_digest(f"{token}_{tokens[i + 1]}", salt=1))
            vector[index] += sign * 0.5

    norm = np.linalg.norm(vector)
    if norm > 0:
        vector /= norm
    return vector.tolist()


def cosine(a: list[float], b: list[float]) -> float:
    if not len(a) or len(a) != len(b):
        return 0.0
    return float(cosine_scores(a, [b])[0])


def cosine_scores(query: list[float], vectors: list[list[float]]) -> np.ndarray:
    """Cosine similarity of query against each row. Zero vectors and dimension mismatches score 0."""
    q = np.asarray(query, dtype=np.float64)
    if not len(vectors) or any(len(v) != len(q) for v in vectors):
        return np.zeros(len(vectors))
    matrix = np.asarray(vectors, dtype=np.float64)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


# ── Provider with fallback ───────────────────────────────────────────

def _provider_configured() -> bool:
    _, api_key, _ = llm._get_provider_config()
    return bool(api_key)


async def embed_texts(texts: list[str]) -> tuple[list[list[float]], str]:
    """
    Embed texts in batches of EMBED_BATCH_SIZE. Returns (vectors, model).
    If any batch hits a network failure the whole set is re-embedded with
    the fallback so one document never mixes vector spaces.
    """
    if not texts:
        return [], get_settings().embedding_model

    settings = get_settings()
    flags = get_flags()

    if not _provider_configured():
        if not flags.use_fallback_embedding:
            raise ValueError("No embedding provider configured and fallback disabled")
        logger.info("No embedding provider key, using %s", FALLBACK_MODEL)
        return [fallback_vector(t) for t in texts], FALLBACK_MODEL

    batch_size = max(1, min(settings.embed_batch_size, 512))
    vectors: list[list[float]] = []
    try:
        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            vectors.extend(await llm.embed(batch, model=settings.embedding_model))
    except (httpx.TransportError, httpx.TimeoutException) as e:
        if not flags.use_fallback_embedding:
            raise
        logger.warning("Embedding provider unreachable (%s), using %s", e, FALLBACK_MODEL)
        return [fallback_vector(t) for t in texts], FALLBACK_MODEL

    return vectors, settings.embedding_model


async def embed_query(text: str, model: Optional[str]) -> list[float]:
    """Embed a query in the same space as the document it searches."""
    if model == FALLBACK_MODEL or (model is None and not _provider_configured()):
        return fallback_vector(text)
    vectors = await llm.embed([text], model=model)
    return vectors[0]
