"""
Model calls for briefs, answers, cover letters and chunk embeddings.

All providers speak the OpenAI wire format. Completions walk a provider
chain (active provider first, then any other provider with a key);
embeddings stay on the active provider so one document never mixes
vector spaces. Transient failures (429/5xx, timeouts, dropped
connections) are retried with jittered exponential backoff.
"""

import asyncio
import logging
import random
import time
from typing import Any, Optional

import httpx

from ..core.config import get_settings
from ..core.flags import get_flags

logger = logging.getLogger(__name__)

GEMINI_OPENAI_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
PROVIDERS = ("openai", "aiml", "gemini")

TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})
ATTEMPTS = 4
BACKOFF_BASE = 1.0
BACKOFF_CAP = 16.0

_http: Optional[httpx.AsyncClient] = None


def _client() -> httpx.AsyncClient:
    global _http
    if _http is None or _http.is_closed:
        _http = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=120, write=30, pool=10),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _http


async def close_client():
    """Release pooled connections (app and worker shutdown)."""
    global _http
    if _http is not None and not _http.is_closed:
        await _http.aclose()
    _http = None


# ── Providers ────────────────────────────────────────────────────────

def _get_provider_config(provider: Optional[str] = None) -> tuple[str, str, str]:
    """(base_url, api_key, chat_model) for a provider, default the flagged one."""
    settings = get_settings()
    name = (provider or get_flags().llm_provider).lower()
    endpoints = {
        "gemini": (GEMINI_OPENAI_URL, settings.gemini_api_key),
        "aiml": (settings.aiml_base_url, settings.aiml_api_key),
    }
    base_url, api_key = endpoints.get(name, (settings.openai_base_url, settings.openai_api_key))
    return base_url, api_key, settings.default_llm_model


def _provider_chain() -> list[str]:
    active = get_flags().llm_provider.lower()
    chain = [active]
    for name in PROVIDERS:
        if name != active and _get_provider_config(name)[1]:
            chain.append(name)
    return chain


def _endpoint(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path}"


# ── Transport ────────────────────────────────────────────────────────

def _backoff(attempt: int, retry_after: Optional[str] = None) -> float:
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass
    return min(BACKOFF_CAP, BACKOFF_BASE * 2 ** attempt + random.uniform(0, 1))


async def _post(url: str, api_key: str, body: dict) -> dict:
    """POST JSON, retrying transient failures. Returns the decoded body."""
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    failure: Optional[Exception] = None

    for attempt in range(ATTEMPTS):
        last = attempt == ATTEMPTS - 1
        try:
            resp = await _client().post(url, json=body, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            failure = e
            logger.warning("Model call %s on %s (try %d/%d)", type(e).__name__, url, attempt + 1, ATTEMPTS)
            if not last:
                await asyncio.sleep(_backoff(attempt))
            continue

        if resp.status_code in TRANSIENT_STATUS:
            failure = httpx.HTTPStatusError(str(resp.status_code), request=resp.request, response=resp)
            delay = _backoff(attempt, resp.headers.get("retry-after"))
            logger.warning("Model call HTTP %d (try %d/%d)", resp.status_code, attempt + 1, ATTEMPTS)
            if not last:
                await asyncio.sleep(delay)
            continue

        if resp.status_code >= 400:
            logger.error("Model call rejected, HTTP %d: %s", resp.status_code, resp.text[:500])
        resp.raise_for_status()
        return resp.json()

    raise failure or RuntimeError(f"Model call to {url} failed")


# ── Completions ──────────────────────────────────────────────────────

async def _chat_once(provider: str, body: dict) -> dict:
    base_url, api_key, default_model = _get_provider_config(provider)
    if not api_key:
        raise ValueError(
            f"LLM provider '{provider}' has no API key "
            "(set OPENAI_API_KEY, AIML_API_KEY or GEMINI_API_KEY)"
        )
    body = {**body, "model": body.get("model") or default_model}

    started = time.monotonic()
    data = await _post(_endpoint(base_url, "chat/completions"), api_key, body)
    usage = data.get("usage") or {}
    logger.info(
        "Completion via %s/%s in %dms (prompt=%d, completion=%d tokens)",
        provider, body["model"], int((time.monotonic() - started) * 1000),
        usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0),
    )
    return data


async def complete(
    prompt: str,
    system: Optional[str] = None,
    json_mode: bool = False,
    max_tokens: Optional[int] = None,
) -> str:
    """One user turn, optional system prompt. Returns the reply text."""
    settings = get_settings()
    messages = [{"role": "system", "content": system}] if system else []
    messages.append({"role": "user", "content": prompt})

    body: dict[str, Any] = {
        "messages": messages,
        "temperature": settings.default_llm_temperature,
        "max_tokens": max_tokens or settings.default_llm_max_tokens,
    }
    if json_mode:
        body["response_format"] = {"type": "json_object"}

    chain = _provider_chain()
    for position, provider in enumerate(chain):
        try:
            data = await _chat_once(provider, body)
            break
        except Exception as e:
            if position == len(chain) - 1:
                raise
            logger.error("Completion via %s failed (%s), trying %s", provider, e, chain[position + 1])

    choice = (data.get("choices") or [{}])[0]
    return ((choice.get("message") or {}).get("content") or "").strip()


# ── Embeddings ───────────────────────────────────────────────────────

async def embed(texts: list[str], model: Optional[str] = None) -> list[list[float]]:
    """
    Vectors for a batch of texts, in input order, from the active provider.
    Failures propagate; the embedding service owns the fallback policy.
    """
    base_url, api_key, _ = _get_provider_config()
    if not api_key:
        raise ValueError("Embeddings need an API key for the active LLM provider")
    model = model or get_settings().embedding_model

    started = time.monotonic()
    data = await _post(_endpoint(base_url, "embeddings"), api_key, {"model": model, "input": texts})
    rows = sorted(data.get("data") or [], key=lambda row: row.get("index", 0))
    if len(rows) != len(texts):
        raise ValueError(f"Provider returned {len(rows)} embeddings for {len(texts)} inputs")

    logger.info("Embedded %d texts with %s in %dms", len(texts), model, int((time.monotonic() - started) * 1000))
    return [row["embedding"] for row in rows]
