from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .commerce import CatalogProvider, OrderService, Storefront
from .config import Settings, load_settings
from .consultation import ConsultationRunner
from .decisions import DecisionGate
from .engine import SessionEngine
from .flows import build_flow_handlers
from .matcher import DiscoveryMatcher, VariantMatcher
from .oracle import DecisionOracle, GeminiBackend, build_backend, rank_models
from .quote import QuoteDesk
from .session_store import SessionStore

SERVICE_NAME = "packageha-agent"
SERVICE_VERSION = "1.0.0"

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("packageha").setLevel(log_level)
logger = logging.getLogger("packageha.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def build_engine(settings: Settings) -> SessionEngine:
    """Purpose: Compose the session engine and its collaborators from settings.
    Inputs/Outputs: Input is Settings; output is a ready SessionEngine.
    Side Effects / State: Creates the data directory and the session store file.
    Dependencies: SessionStore, Storefront, DecisionOracle, matchers, QuoteDesk.
    Failure Modes: Filesystem errors on the data directory propagate at startup.
    If Removed: The app cannot serve chat requests.
    Testing Notes: Build with a temporary DATA_DIR and no credentials.
    """
    # Wire leaf collaborators first, then the per-flow handlers.
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    store = SessionStore(settings.data_dir / "sessions.json", max_sessions=settings.max_sessions)
    storefront = Storefront(
        CatalogProvider(),
        OrderService(),
        store,
        settings.shop_url,
        settings.shopify_access_token,
        ttl_ms=settings.catalog_cache_ttl_ms,
    )
    oracle = DecisionOracle(build_backend(settings))
    gate = DecisionGate(oracle)
    handlers = build_flow_handlers(
        ConsultationRunner(),
        DiscoveryMatcher(gate, storefront, settings.prompts_dir),
        VariantMatcher(gate, settings.prompts_dir),
        QuoteDesk(storefront),
    )
    logger.info("engine ready provider=%s shop=%s", oracle.provider, settings.shop_url or "unset")
    return SessionEngine(store, handlers, stale_after_ms=settings.stale_after_ms)


app = FastAPI(title="Packageha Sales Agent")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

settings = load_settings()
engine = build_engine(settings)


def session_key(request: Request) -> str:
    """Purpose: Derive the session key from the caller's network address.
    Inputs/Outputs: Input is the HTTP request; output is the key string.
    Side Effects / State: None.
    Dependencies: CF-Connecting-IP and X-Forwarded-For headers, socket peer.
    Failure Modes: Falls back to "anonymous" when nothing identifies the caller.
    If Removed: All callers would share one conversation.
    Testing Notes: CF-Connecting-IP wins over X-Forwarded-For.
    """
    # Proxy headers first, then the socket peer.
    cf_ip = (request.headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


@app.post("/api/chat")
async def chat(request: Request) -> JSONResponse:
    """Purpose: Handle one chat turn.
    Inputs/Outputs: Input is the raw request (JSON body optional); output is the
        response envelope with the engine's status code.
    Side Effects / State: Reads and writes the caller's session memory.
    Dependencies: SessionEngine.handle, run in the thread pool.
    Failure Modes: Engine errors come back as a 500 envelope, never as a crash.
    If Removed: Core chat functionality is unavailable.
    Testing Notes: Post {"message": "hi"} and verify reply and flowState.
    """
    # The engine owns body parsing so malformed JSON is treated as an empty message.
    body = await request.body()
    status_code, response = await run_in_threadpool(engine.handle, session_key(request), body)
    return JSONResponse(status_code=status_code, content=response.to_json_dict())


@app.post("/")
async def chat_root(request: Request) -> JSONResponse:
    return await chat(request)


@app.get("/")
def service_info() -> dict:
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "status": "ok"}


@app.get("/models")
def list_models() -> JSONResponse:
    """Purpose: Show the Gemini models discovered for this key and the one selected.
    Inputs/Outputs: No inputs; returns {"models": [...], "selected": str}.
    Side Effects / State: Calls the Gemini model catalog.
    Dependencies: GeminiBackend.list_models/select_model and rank_models.
    Failure Modes: 400 when no Gemini key is configured.
    If Removed: Operators cannot see which model discovery picks.
    Testing Notes: Without GEMINI_API_KEY expect 400.
    """
    # Discovery is only meaningful with a Gemini key.
    if not settings.gemini_api_key:
        return JSONResponse(status_code=400, content={"error": "GEMINI_API_KEY is not configured"})
    backend = GeminiBackend(settings.gemini_api_key, settings.gemini_model)
    models = rank_models(backend.list_models())
    return JSONResponse(content={"models": models, "selected": backend.select_model()})
