from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for AI backends, commerce credentials, and session limits."""
    sovereign_mode: str
    openai_api_key: str
    openai_model: str
    gemini_api_key: str
    gemini_model: str
    cloudflare_account_id: str
    cloudflare_api_token: str
    cloudflare_model: str
    vertex_endpoint: str
    vertex_project: str
    vertex_location: str
    vertex_model: str
    vertex_access_token: str
    local_endpoint: str
    local_model: str
    shop_url: str
    shopify_access_token: str
    data_dir: Path
    prompts_dir: Path
    stale_after_ms: int
    catalog_cache_ttl_ms: int
    max_sessions: int


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid STALE_AFTER_MS/CATALOG_CACHE_TTL_MS/MAX_SESSIONS values raise ValueError.
    If Removed: App cannot pick an AI backend or reach the shop and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve data and prompt paths, then build Settings.
    data_dir = os.getenv("DATA_DIR")
    if data_dir:
        data_path = Path(data_dir)
    else:
        data_path = (BASE_DIR / "data").resolve()

    return Settings(
        sovereign_mode=os.getenv("SOVEREIGN_MODE", "COMMERCIAL").strip().upper(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", ""),
        cloudflare_account_id=os.getenv("CLOUDFLARE_ACCOUNT_ID", ""),
        cloudflare_api_token=os.getenv("CLOUDFLARE_API_TOKEN", ""),
        cloudflare_model=os.getenv("CLOUDFLARE_MODEL", "@cf/meta/llama-3-8b-instruct"),
        vertex_endpoint=os.getenv("VERTEX_AI_ENDPOINT", "https://aiplatform.googleapis.com/v1"),
        vertex_project=os.getenv("VERTEX_AI_PROJECT", ""),
        vertex_location=os.getenv("VERTEX_AI_LOCATION", "asia-southeast1"),
        vertex_model=os.getenv("VERTEX_AI_MODEL", "gemini-pro"),
        vertex_access_token=os.getenv("VERTEX_AI_ACCESS_TOKEN", ""),
        local_endpoint=os.getenv("LOCAL_LLAMA_ENDPOINT", "http://localhost:8080/v1/chat/completions"),
        local_model=os.getenv("LOCAL_LLAMA_MODEL", "llama-3.1-70b"),
        shop_url=os.getenv("SHOP_URL", ""),
        shopify_access_token=os.getenv("SHOPIFY_ACCESS_TOKEN", ""),
        data_dir=data_path,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        stale_after_ms=int(os.getenv("STALE_AFTER_MS", "3600000")),
        catalog_cache_ttl_ms=int(os.getenv("CATALOG_CACHE_TTL_MS", "300000")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "1000")),
    )
