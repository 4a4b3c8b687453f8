"""
Central feature flags. One file controls every external dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system uses a local/mock fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth0: bool = Field(default=True, alias="FF_USE_AUTH0")
    # ON  → JWT validated via Auth0 JWKS. Needs AUTH0_DOMAIN, AUTH0_AUDIENCE.
    # OFF → Dev user injected (org_id="dev-org"). No token needed.

    # ── Storage ──────────────────────────────────────────────────────
    use_s3: bool = Field(default=True, alias="FF_USE_S3")
    # ON  → Raw files and artifacts in AWS S3. Needs AWS creds + S3_BUCKET_NAME.
    # OFF → Saved under LOCAL_STORAGE_PATH/{key}.

    # ── Cache / Realtime / Queue ─────────────────────────────────────
    use_redis: bool = Field(default=True, alias="FF_USE_REDIS")
    # ON  → Redis pub/sub for stage notifications + Redis list as index queue.
    # OFF → Notifications skipped. In-process asyncio queue.

    # ── OCR ──────────────────────────────────────────────────────────
    use_ocr: bool = Field(default=True, alias="FF_USE_OCR")
    # ON  → Scanned PDFs processed via AIML OCR. Needs AIML_API_KEY.
    # OFF → Only pdfplumber. Scanned PDFs → FAILED (no text).

    # ── LLM Provider ─────────────────────────────────────────────────
    llm_provider: str = Field(default="openai", alias="FF_LLM_PROVIDER")
    # "openai" → Direct OpenAI (default). Needs OPENAI_API_KEY.
    # "aiml"   → AIML API proxy. Needs AIML_API_KEY.
    # "gemini" → Google Gemini OpenAI-compatible endpoint. Needs GEMINI_API_KEY.

    # ── Embeddings ───────────────────────────────────────────────────
    use_fallback_embedding: bool = Field(default=True, alias="FF_USE_FALLBACK_EMBEDDING")
    # ON  → Provider network failure → local hashing embedder.
    # OFF → Provider failure fails the EMBEDDING stage.

    # ── Plans ────────────────────────────────────────────────────────
    plan_enforcement: bool = Field(default=True, alias="FF_PLAN_ENFORCEMENT")
    # ON  → Quotas and feature tiers enforced by the gate.
    # OFF → Every org allowed (expired trials still blocked). No usage debited.

    # ── Pipeline ─────────────────────────────────────────────────────
    precompute_summary: bool = Field(default=True, alias="FF_PRECOMPUTE_SUMMARY")
    # ON  → Summary stage runs after embedding.
    # OFF → Document goes READY straight after embedding.

    run_index_worker: bool = Field(default=True, alias="FF_RUN_INDEX_WORKER")
    # ON  → API process also consumes index jobs.
    # OFF → Jobs consumed only by `python worker.py`.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
