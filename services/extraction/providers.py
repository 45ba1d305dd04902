"""
Structured-extraction providers.

Every provider has the same single method:

    await provider.extract_structured(text, ctx) -> dict   (raises ProviderError)

and is picked by EXTRACTION_PROVIDER through the PROVIDERS registry, so the
pipeline never knows which backend it is talking to. All calls go through
httpx with a per-call timeout; nothing is retried in-process.
"""

import json
import logging
import re
from datetime import date
from typing import Any, Dict, Optional, Protocol

import httpx

from common.config import Settings
from .models import ExtractionContext

logger = logging.getLogger("extraction.providers")

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class ProviderError(Exception):
    """The provider call failed or returned something that is not a JSON object."""


class ExtractionProvider(Protocol):
    name: str
    model: str

    async def extract_structured(self, text: str, ctx: ExtractionContext) -> Dict[str, Any]:
        ...


# ----------------------------
# Prompt
# ----------------------------
_SCHEMA = """{
  "name": "string (full exam name)",
  "short_name": "string|null (e.g. SSC CGL 2025)",
  "notification_number": "string|null",
  "conducting_body": "string",
  "category": "SSC|RAILWAY|BANKING|UPSC_CIVIL|STATE_PSC|DEFENCE|POLICE|TEACHING|PSU|OTHER",
  "level": "CENTRAL|STATE|PSU|DEFENCE|BANKING",
  "state_code": "2-letter state code|null",
  "notification_date": "YYYY-MM-DD|null",
  "application_start": "YYYY-MM-DD|null",
  "application_end": "YYYY-MM-DD",
  "last_date_fee_payment": "YYYY-MM-DD|null",
  "correction_window_start": "YYYY-MM-DD|null",
  "correction_window_end": "YYYY-MM-DD|null",
  "official_notification_url": "string",
  "syllabus_url": "string|null",
  "previous_papers_url": "string|null",
  "extraction_confidence": "HIGH|MEDIUM|LOW",
  "extraction_notes": "string|null",
  "posts": [
    {
      "post_name": "string",
      "post_code": "string|null",
      "total_vacancies": "number|null",
      "vacancies_by_category": {"general": 10, "obc": 5, "sc": 3, "st": 1, "ews": 2, "pwd": 1},
      "min_age": "number|null",
      "max_age_general": "number|null",
      "max_age_obc": "number|null",
      "max_age_sc_st": "number|null",
      "max_age_ews": "number|null",
      "max_age_pwd_general": "number|null",
      "max_age_pwd_obc": "number|null",
      "max_age_pwd_sc_st": "number|null",
      "max_age_ex_serviceman": "number|null",
      "age_cutoff_date": "YYYY-MM-DD|null",
      "required_qualification": "CLASS_10|CLASS_12|ITI|DIPLOMA|GRADUATE_ANY|GRADUATE_SPECIFIC|POST_GRADUATE|DOCTORATE|PROFESSIONAL|ANY",
      "required_streams": "string[]|null",
      "min_marks_percentage": "number|null",
      "allows_final_year": "boolean",
      "nationality_requirement": "INDIAN|NEPAL_BHUTAN|PIO|OCI",
      "domicile_required": "2-letter state code|null",
      "gender_restriction": "MALE|FEMALE|THIRD_GENDER|PREFER_NOT_TO_SAY|null",
      "marital_status_requirement": "UNMARRIED|MARRIED|DIVORCED|WIDOWED|null",
      "application_fee_general": "number|null",
      "application_fee_obc": "number|null",
      "application_fee_sc_st": "number|null",
      "application_fee_ews": "number|null",
      "application_fee_pwd": "number|null",
      "application_fee_women": "number|null",
      "exam_mode": "ONLINE|OFFLINE|BOTH|null",
      "exam_date": "YYYY-MM-DD|null",
      "apply_online_url": "string|null",
      "pay_scale": "string|null"
    }
  ]
}"""


def build_prompt(ctx: ExtractionContext, today: Optional[date] = None) -> str:
    today = today or date.today()
    safe_url = re.sub(r"[\r\n`]", "", ctx.source_url)
    return (
        "You are an Indian government exam data extraction engine. Read the recruitment "
        "notification text below and return ONLY a JSON object matching the schema.\n"
        "Shared fields go in the root; anything that can differ per post goes in 'posts'.\n\n"
        "RULES:\n"
        "- If a field is not stated in the document, return null. Never guess.\n"
        "- Bilingual/Hindi documents: read both languages, answer in English.\n"
        "- Not a recruitment notification (syllabus, admit card, result, circular): return "
        '{"name": null, "extraction_confidence": "LOW", "extraction_notes": "Not a recruitment '
        'notification - <reason>", "posts": []}.\n'
        "- One post: still return exactly one object in 'posts'. Several posts with different "
        "eligibility: one object per post, never merged.\n"
        "- Age relaxation when only the General limit is stated: OBC +3, SC/ST +5, EWS +0, "
        "PwD-General +10, PwD-OBC +13, PwD-SC/ST +15. age_cutoff_date defaults to application_end.\n"
        "- Fees are integers in INR (strip the currency sign and '/-'). Explicitly free = 0, "
        "not mentioned = null.\n\n"
        "CONTEXT:\n"
        f"- Source: {ctx.source_name} ({ctx.source_id})\n"
        f"- Category hint: {ctx.category}\n"
        f"- State: {ctx.state or 'Central / All India'}\n"
        f"- Link text: {ctx.anchor_text or 'N/A'}\n"
        f"- Surrounding text: {ctx.context_text or 'N/A'}\n"
        f"- Document URL: {safe_url} (use as official_notification_url)\n"
        f"- Today: {today.isoformat()}\n\n"
        f"SCHEMA:\n{_SCHEMA}"
    )


def full_prompt(text: str, ctx: ExtractionContext) -> str:
    return f"{build_prompt(ctx)}\n\nDOCUMENT TEXT:\n-----\n{text}\n-----"


_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def parse_json_object(content: str) -> Dict[str, Any]:
    """Unwrap ```json fences and parse. Anything but a JSON object is a ProviderError."""
    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", (content or "").strip())).strip()
    if not cleaned:
        raise ProviderError("provider returned an empty response")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ProviderError(f"provider returned malformed JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError(f"provider returned {type(data).__name__}, expected an object")
    return data


async def _post(client: httpx.AsyncClient, url: str, *, timeout: float, **kwargs) -> Dict[str, Any]:
    try:
        r = await client.post(url, timeout=timeout, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderError(f"provider timed out after {timeout}s") from e
    except httpx.HTTPError as e:
        raise ProviderError(f"provider unreachable: {e}") from e
    if r.status_code >= 400:
        logger.error("Provider error %s: %s", r.status_code, r.text[:500])
        raise ProviderError(f"provider returned HTTP {r.status_code}")
    try:
        body = r.json()
    except ValueError as e:
        raise ProviderError("provider response is not JSON") from e
    if not isinstance(body, dict):
        raise ProviderError(f"provider response is a {type(body).__name__}, expected an object")
    return body


# ----------------------------
# Implementations
# ----------------------------
class OpenAIProvider:
    """OpenAI-compatible chat completions (also OpenRouter via OPENAI_BASE_URL)."""

    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, client: httpx.AsyncClient, cfg: Settings):
        self.client = client
        self.api_key = cfg.openai_api_key
        self.base_url = cfg.openai_base_url.rstrip("/")
        self.model = cfg.ai_model or self.default_model
        self.timeout = cfg.provider_timeout_ms / 1000

    async def extract_structured(self, text: str, ctx: ExtractionContext) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY not configured")
        data = await _post(
            self.client,
            f"{self.base_url}/chat/completions",
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": full_prompt(text, ctx)}],
                "response_format": {"type": "json_object"},
                "temperature": 0.1,
            },
        )
        choice = (data.get("choices") or [{}])[0]
        return parse_json_object((choice.get("message") or {}).get("content") or "")


class AnthropicProvider:
    """Anthropic Messages API."""

    name = "anthropic"
    default_model = "claude-3-haiku-20240307"

    def __init__(self, client: httpx.AsyncClient, cfg: Settings):
        self.client = client
        self.api_key = cfg.anthropic_api_key
        self.model = cfg.ai_model or self.default_model
        self.timeout = cfg.provider_timeout_ms / 1000

    async def extract_structured(self, text: str, ctx: ExtractionContext) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError("ANTHROPIC_API_KEY not configured")
        data = await _post(
            self.client,
            ANTHROPIC_URL,
            timeout=self.timeout,
            headers={"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION},
            json={
                "model": self.model,
                "max_tokens": 4096,
                "temperature": 0.1,
                "messages": [
                    {"role": "user", "content": full_prompt(text, ctx) + "\n\nRespond with ONLY valid JSON."}
                ],
            },
        )
        blocks = data.get("content") or []
        content = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        return parse_json_object(content)


class GeminiProvider:
    """Google Gemini generateContent REST endpoint, JSON response mode."""

    name = "gemini"
    default_model = "gemini-2.0-flash"

    def __init__(self, client: httpx.AsyncClient, cfg: Settings):
        self.client = client
        self.api_key = cfg.gemini_api_key
        self.model = cfg.ai_model or self.default_model
        self.timeout = cfg.provider_timeout_ms / 1000

    async def extract_structured(self, text: str, ctx: ExtractionContext) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError("GEMINI_API_KEY not configured")
        data = await _post(
            self.client,
            GEMINI_URL.format(model=self.model),
            timeout=self.timeout,
            headers={"x-goog-api-key": self.api_key},
            json={
                "contents": [{"role": "user", "parts": [{"text": full_prompt(text, ctx)}]}],
                "generationConfig": {
                    "responseMimeType": "application/json",
                    "temperature": 0.1,
                    "topP": 0.8,
                    # a 20-post notification easily exceeds 8k output tokens
                    "maxOutputTokens": 16384,
                },
            },
        )
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise ProviderError(f"provider returned no candidates (blockReason={reason})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return parse_json_object("".join(p.get("text", "") for p in parts))


class FakeProvider:
    """
    Deterministic local stub (no network), for development and tests.
    Picks the first YYYY-MM-DD or DD/MM/YYYY date in the text as the deadline and
    the first "upper age limit: NN" as the general age limit.
    """

    name = "fake"
    default_model = "fake-llm"

    _DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{2}[/.-]\d{2}[/.-]\d{4})\b")
    _AGE = re.compile(r"upper age limit\D{0,10}(\d{2})", re.IGNORECASE)

    def __init__(self, client: Optional[httpx.AsyncClient] = None, cfg: Optional[Settings] = None):
        self.model = (cfg.ai_model if cfg and cfg.ai_model else None) or self.default_model

    async def extract_structured(self, text: str, ctx: ExtractionContext) -> Dict[str, Any]:
        deadline = self._DATE.search(text)
        age = self._AGE.search(text)
        return {
            "name": ctx.anchor_text or f"{ctx.source_name} Recruitment",
            "conducting_body": ctx.source_name,
            "category": ctx.category,
            "application_end": deadline.group(1) if deadline else None,
            "official_notification_url": ctx.source_url,
            "extraction_confidence": "MEDIUM",
            "extraction_notes": "[FAKE LLM] local stub extraction",
            "posts": [
                {
                    "post_name": "General Positions",
                    "max_age_general": int(age.group(1)) if age else None,
                }
            ],
        }


PROVIDERS = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "fake": FakeProvider,
}


def get_provider(cfg: Settings, client: httpx.AsyncClient) -> ExtractionProvider:
    """Instantiate the provider named by EXTRACTION_PROVIDER."""
    try:
        cls = PROVIDERS[cfg.extraction_provider]
    except KeyError:
        raise ValueError(
            f"Unknown EXTRACTION_PROVIDER {cfg.extraction_provider!r}; expected one of {sorted(PROVIDERS)}"
        ) from None
    provider = cls(client, cfg)
    logger.info("Extraction provider: %s (%s)", provider.name, provider.model)
    return provider
