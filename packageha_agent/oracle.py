"""Decision oracle adapter: one ``generate(prompt, system_prompt)`` over five AI backends.

Each backend only knows how to build its provider's request and pull the text
out of the response. The backend is chosen from ``SOVEREIGN_MODE``:

    COMMERCIAL         small hosted model (Cloudflare Workers AI)
    COMMERCIAL_OPENAI  OpenAI chat completions
    COMMERCIAL_GEMINI  Google Gemini (model discovered from the model catalog)
    SOVEREIGN          Vertex AI endpoint
    AIR_GAPPED         local OpenAI-compatible server
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Type

import google.generativeai as genai
import httpx

from .config import Settings
from .errors import DecisionOracleError

logger = logging.getLogger("packageha.oracle")

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]

EXCLUDED_MODEL_MARKERS = ("interactive", "interaction", "live", "preview", "experimental", "-exp", "deep-research")
NON_TEXT_MODEL_MARKERS = ("image", "tts", "embedding", "aqa")
VERSION_RE = re.compile(r"gemini-(\d+(?:\.\d+)?)")


def build_messages(prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
    """Chat-style message list shared by the OpenAI-shaped backends."""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


class OracleBackend:
    """Strategy interface: turn a prompt into plain text."""

    provider = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "OracleBackend":
        raise NotImplementedError

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        raise NotImplementedError

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float = 120.0) -> Dict[str, Any]:
        """POST a JSON payload and return the decoded body, raising DecisionOracleError on failure."""
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DecisionOracleError(f"{self.provider} request failed: {exc}", provider=self.provider) from exc
        if response.status_code != 200:
            raise DecisionOracleError(
                f"{self.provider} API error: {response.status_code} - {response.text[:500]}", provider=self.provider
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise DecisionOracleError(f"{self.provider} returned non-JSON body", provider=self.provider) from exc
        if not isinstance(data, dict):
            raise DecisionOracleError(f"{self.provider} returned unexpected body", provider=self.provider)
        return data


class CloudflareBackend(OracleBackend):
    """Small hosted model served by Cloudflare Workers AI."""

    provider = "cloudflare"

    def __init__(self, account_id: str, api_token: str, model: str) -> None:
        self.account_id = account_id
        self.api_token = api_token
        self.model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> "CloudflareBackend":
        return cls(settings.cloudflare_account_id, settings.cloudflare_api_token, settings.cloudflare_model)

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.account_id or not self.api_token:
            raise DecisionOracleError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN are required", provider=self.provider)
        url = f"https://api.cloudflare.com/client/v4/accounts/{self.account_id}/ai/run/{self.model}"
        data = self._post_json(
            url,
            {"messages": build_messages(prompt, system_prompt)},
            {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"},
        )
        result = data.get("result") or {}
        return str(result.get("response") or "")


class OpenAIBackend(OracleBackend):
    provider = "openai"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini") -> None:
        self.api_key = api_key
        self.model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIBackend":
        return cls(settings.openai_api_key, settings.openai_model)

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.api_key:
            raise DecisionOracleError("OPENAI_API_KEY is required for COMMERCIAL_OPENAI mode", provider=self.provider)
        payload = {
            "model": self.model or "gpt-4o-mini",
            "messages": build_messages(prompt, system_prompt),
            "temperature": DEFAULT_TEMPERATURE,
            "max_tokens": DEFAULT_MAX_TOKENS,
        }
        data = self._post_json(
            self.endpoint,
            payload,
            {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        return _first_choice_text(data)


class GeminiBackend(OracleBackend):
    """Google Gemini through the google-generativeai SDK, with model discovery."""

    provider = "gemini"

    def __init__(self, api_key: str, model: str = "") -> None:
        self.api_key = api_key
        self.model = _normalize_model_name(model)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiBackend":
        return cls(settings.gemini_api_key, settings.gemini_model)

    def _configure(self) -> None:
        if not self.api_key:
            raise DecisionOracleError("GEMINI_API_KEY is required for COMMERCIAL_GEMINI mode", provider=self.provider)
        genai.configure(api_key=self.api_key)

    def list_models(self) -> List[str]:
        """Purpose: List Gemini models usable for text generation.
        Inputs/Outputs: No inputs; returns model names without the "models/" prefix.
        Side Effects / State: Configures the SDK key and calls the model catalog.
        Dependencies: genai.list_models and filter_text_models.
        Failure Modes: Catalog errors are logged and yield an empty list.
        If Removed: The backend can only use a hardcoded model.
        Testing Notes: Patch genai.list_models with fake model objects.
        """
        # Collect every model that supports generateContent, then drop unsuitable ones.
        self._configure()
        try:
            available = [
                _normalize_model_name(getattr(model, "name", ""))
                for model in genai.list_models()
                if "generateContent" in (getattr(model, "supported_generation_methods", None) or [])
            ]
        except Exception as exc:
            logger.warning("gemini model discovery failed error=%s", exc)
            return []
        return filter_text_models([name for name in available if name])

    def select_model(self) -> str:
        """Return the configured model, else the best discovered one, else the default."""
        if self.model:
            return self.model
        ranked = rank_models(self.list_models())
        if not ranked:
            logger.info("gemini model discovery empty, using default model=%s", DEFAULT_GEMINI_MODEL)
            return DEFAULT_GEMINI_MODEL
        return ranked[0]

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        self._configure()
        model_name = self.select_model()
        logger.debug("gemini generate model=%s prompt_chars=%s", model_name, len(prompt))
        try:
            model = genai.GenerativeModel(model_name, system_instruction=system_prompt or None)
            response = model.generate_content(
                prompt,
                generation_config={"temperature": DEFAULT_TEMPERATURE, "max_output_tokens": DEFAULT_MAX_TOKENS},
                safety_settings=SAFETY_SETTINGS,
            )
            text: Optional[str] = getattr(response, "text", None)
        except Exception as exc:
            raise DecisionOracleError(f"gemini call failed model={model_name}: {exc}", provider=self.provider) from exc
        return (text or "").strip()


class VertexBackend(OracleBackend):
    """Sovereign deployment: Gemini on Vertex AI behind a regional endpoint."""

    provider = "vertex"

    def __init__(self, endpoint: str, project: str, location: str, model: str, access_token: str) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.project = project
        self.location = location or "asia-southeast1"
        self.model = model
        self.access_token = access_token

    @classmethod
    def from_settings(cls, settings: Settings) -> "VertexBackend":
        return cls(
            settings.vertex_endpoint,
            settings.vertex_project,
            settings.vertex_location,
            settings.vertex_model,
            settings.vertex_access_token,
        )

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.project:
            raise DecisionOracleError("VERTEX_AI_PROJECT is required for SOVEREIGN mode", provider=self.provider)
        url = (
            f"{self.endpoint}/projects/{self.project}/locations/{self.location}"
            f"/publishers/google/models/{self.model}:predict"
        )
        payload = {
            "instances": [{"messages": build_messages(prompt, system_prompt)}],
            "parameters": {"temperature": DEFAULT_TEMPERATURE, "maxOutputTokens": DEFAULT_MAX_TOKENS},
        }
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        data = self._post_json(url, payload, headers)
        predictions = data.get("predictions") or [{}]
        first = predictions[0] if isinstance(predictions[0], dict) else {}
        return str(first.get("content") or "")


class LocalBackend(OracleBackend):
    """Air-gapped Llama server exposing an OpenAI-compatible endpoint."""

    provider = "local"

    def __init__(self, endpoint: str, model: str) -> None:
        self.endpoint = endpoint
        self.model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalBackend":
        return cls(settings.local_endpoint, settings.local_model)

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        payload = {
            "model": self.model,
            "messages": build_messages(prompt, system_prompt),
            "temperature": DEFAULT_TEMPERATURE,
        }
        data = self._post_json(self.endpoint, payload, {"Content-Type": "application/json"})
        return _first_choice_text(data)


def _first_choice_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or [{}]
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    return str((message or {}).get("content") or "")


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip the "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned


def filter_text_models(names: Sequence[str]) -> List[str]:
    """Drop interaction-only, preview, experimental and non-text models.

    When nothing survives the strict filter the unfiltered list is returned.
    """
    strict = []
    for name in names:
        lowered = name.lower()
        if any(marker in lowered for marker in EXCLUDED_MODEL_MARKERS + NON_TEXT_MODEL_MARKERS):
            continue
        strict.append(name)
    return sorted(strict or names)


def _model_version(name: str) -> float:
    match = VERSION_RE.search(name.lower())
    return float(match.group(1)) if match else 0.0


def rank_models(names: Sequence[str]) -> List[str]:
    """Purpose: Order candidate models by preference.
    Inputs/Outputs: Input is model names; output is the same names best-first.
    Side Effects / State: None.
    Dependencies: _model_version.
    Failure Modes: Unversioned names sort after versioned ones within their family.
    If Removed: Discovery picks an arbitrary model.
    Testing Notes: flash beats pro; 2.5-flash beats 1.5-flash.
    """
    # Fast family first, then newest version, then name for stability.
    return sorted(names, key=lambda name: ("flash" not in name.lower(), -_model_version(name), name))


BACKENDS: Dict[str, Type[OracleBackend]] = {
    "COMMERCIAL": CloudflareBackend,
    "COMMERCIAL_OPENAI": OpenAIBackend,
    "COMMERCIAL_GEMINI": GeminiBackend,
    "SOVEREIGN": VertexBackend,
    "AIR_GAPPED": LocalBackend,
}


def build_backend(settings: Settings) -> OracleBackend:
    """Purpose: Instantiate the backend selected by settings.sovereign_mode.
    Inputs/Outputs: Input is Settings; output is an OracleBackend.
    Side Effects / State: None; credentials are checked at call time.
    Dependencies: BACKENDS registry and each backend's from_settings.
    Failure Modes: Unknown modes fall back to Gemini when a key exists, else Cloudflare.
    If Removed: The oracle has no provider to call.
    Testing Notes: Each mode yields the matching backend class.
    """
    # Resolve unknown modes before constructing the strategy.
    mode = settings.sovereign_mode
    if mode not in BACKENDS:
        mode = "COMMERCIAL_GEMINI" if settings.gemini_api_key else "COMMERCIAL"
        logger.warning("unknown SOVEREIGN_MODE=%s, falling back to %s", settings.sovereign_mode, mode)
    return BACKENDS[mode].from_settings(settings)


class DecisionOracle:
    """Single entry point used by the matchers."""

    def __init__(self, backend: OracleBackend) -> None:
        self._backend = backend

    @property
    def provider(self) -> str:
        return self._backend.provider

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Purpose: Run one oracle call and return plain text.
        Inputs/Outputs: Inputs are user prompt and system prompt; output is text.
        Side Effects / State: One network call through the backend.
        Dependencies: OracleBackend.generate.
        Failure Modes: Any backend failure is raised as DecisionOracleError.
        If Removed: Discovery and variant matching cannot consult the model.
        Testing Notes: A backend raising ValueError surfaces as DecisionOracleError.
        """
        # Normalise every failure into the oracle error kind.
        try:
            text = self._backend.generate(prompt, system_prompt)
        except DecisionOracleError as exc:
            logger.error("oracle call failed provider=%s error=%s", self.provider, exc)
            raise
        except Exception as exc:
            logger.error("oracle call failed provider=%s error=%s", self.provider, exc)
            raise DecisionOracleError(f"AI call failed: {exc}", provider=self.provider) from exc
        logger.debug("oracle call ok provider=%s response_chars=%s", self.provider, len(text))
        return text
