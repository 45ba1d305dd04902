# Centralised configuration and logging setup for all services.

# What this module provides:
#   1) A Settings dataclass holding all env-driven configuration
#   2) get_settings(): reads env vars once, configures logging once
#   3) settings: a module-level singleton (import and use anywhere)

import os
import logging
from functools import lru_cache
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

# Bundled site registry, used when SITES_FILE is not set
_DEFAULT_SITES_FILE = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "ingestion", "sites.json"
)


# ----------------------------
# Env helpers
# ----------------------------
def _env_str(key: str, default: str) -> str:
    val = os.getenv(key)
    return val.strip() if val and val.strip() else default

def _env_opt(key: str) -> Optional[str]:
    """Like _env_str but returns None for unset/blank values (secrets, optional URLs)."""
    val = os.getenv(key)
    return val.strip() if val and val.strip() else None

def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default

def _env_list(key: str, default: str) -> Tuple[str, ...]:
    """Comma separated list, e.g. PRIORITY_FILTER=P0,P1"""
    raw = _env_str(key, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# ----------------------------
# Logging
# ----------------------------
def setup_logging(level: str) -> None:
    """Configure root + uvicorn loggers once."""
    if getattr(setup_logging, "_configured", False):
        return
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        level=lvl,
    )
    # keep uvicorn loggers aligned
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(lvl)
    # httpx logs every request at INFO, too chatty for 100+ sources
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))
    setup_logging._configured = True


# ----------------------------
# Settings model
# ----------------------------
@dataclass(frozen=True)
class Settings:
    # service identity
    service_name: str
    log_level: str

    # storage
    data_root: str
    database_url: str
    storage_dir: str
    sites_file: str

    # scraping
    scrape_concurrency: int
    request_delay_ms: int
    request_timeout_ms: int
    priority_filter: Tuple[str, ...]
    site_id: Optional[str]
    user_agent: str

    # handoff (ingestion -> extraction)
    handoff_url: Optional[str]
    scraper_webhook_secret: Optional[str]
    handoff_timeout_ms: int

    # extraction
    extraction_provider: str
    ai_model: Optional[str]
    openai_api_key: Optional[str]
    openai_base_url: str
    anthropic_api_key: Optional[str]
    gemini_api_key: Optional[str]
    provider_timeout_ms: int
    min_text_chars: int
    max_pdf_bytes: int
    max_prompt_tokens: int
    matching_webhook_url: Optional[str]

    # notifications
    notify_webhook_secret: Optional[str]
    notify_batch_size: int
    notify_send_delay_ms: int
    notify_lock_ttl_seconds: int
    notify_max_attempts: int
    resend_api_key: Optional[str]
    resend_from: str
    app_base_url: str


def _mask_url(url: str) -> str:
    """Mask password in a URL for logging."""
    try:
        parts = urlsplit(url)
        if parts.password:
            user = parts.username or ""
            host = parts.hostname or ""
            port = f":{parts.port}" if parts.port else ""
            netloc = f"{user}:****@{host}{port}"
            return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        pass
    return url


def _ensure_dirs(*paths: str) -> None:
    for p in paths:
        os.makedirs(p, exist_ok=True)


# ----------------------------
# Factory (cached)
# ----------------------------
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    service_name = _env_str("SERVICE_NAME", "examwatch")
    log_level    = _env_str("LOG_LEVEL", "INFO")

    data_root    = _env_str("DATA_ROOT", "/data")
    storage_dir  = _env_str("STORAGE_DIR", os.path.join(data_root, "raw-pdfs"))
    database_url = _env_str(
        "DATABASE_URL", "sqlite+aiosqlite:///" + os.path.join(data_root, "examwatch.db")
    )
    _ensure_dirs(data_root, storage_dir)

    setup_logging(log_level)

    s = Settings(
        service_name=service_name,
        log_level=log_level,
        data_root=data_root,
        database_url=database_url,
        storage_dir=storage_dir,
        sites_file=_env_str("SITES_FILE", _DEFAULT_SITES_FILE),
        scrape_concurrency=max(1, _env_int("SCRAPE_CONCURRENCY", 3)),
        request_delay_ms=_env_int("REQUEST_DELAY_MS", 2000),
        request_timeout_ms=_env_int("REQUEST_TIMEOUT_MS", 30000),
        priority_filter=_env_list("PRIORITY_FILTER", "P0,P1"),
        site_id=_env_opt("SITE_ID"),
        user_agent=_env_str("USER_AGENT", "ExamWatchBot/1.0 (+https://examwatch.in/bot)"),
        handoff_url=_env_opt("HANDOFF_URL"),
        scraper_webhook_secret=_env_opt("SCRAPER_WEBHOOK_SECRET"),
        handoff_timeout_ms=_env_int("HANDOFF_TIMEOUT_MS", 60000),
        extraction_provider=_env_str("EXTRACTION_PROVIDER", "gemini").lower(),
        ai_model=_env_opt("AI_MODEL"),
        openai_api_key=_env_opt("OPENAI_API_KEY"),
        openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        anthropic_api_key=_env_opt("ANTHROPIC_API_KEY"),
        gemini_api_key=_env_opt("GEMINI_API_KEY"),
        provider_timeout_ms=_env_int("PROVIDER_TIMEOUT_MS", 60000),
        min_text_chars=_env_int("MIN_TEXT_CHARS", 200),
        max_pdf_bytes=_env_int("MAX_PDF_BYTES", 40 * 1024 * 1024),
        max_prompt_tokens=_env_int("MAX_PROMPT_TOKENS", 24000),
        matching_webhook_url=_env_opt("MATCHING_WEBHOOK_URL"),
        notify_webhook_secret=_env_opt("NOTIFY_WEBHOOK_SECRET"),
        notify_batch_size=max(1, _env_int("NOTIFY_BATCH_SIZE", 50)),
        notify_send_delay_ms=_env_int("NOTIFY_SEND_DELAY_MS", 600),
        notify_lock_ttl_seconds=_env_int("NOTIFY_LOCK_TTL_SECONDS", 300),
        notify_max_attempts=max(1, _env_int("NOTIFY_MAX_ATTEMPTS", 5)),
        resend_api_key=_env_opt("RESEND_API_KEY"),
        resend_from=_env_str("RESEND_FROM", "ExamWatch <alerts@examwatch.in>"),
        app_base_url=_env_str("APP_BASE_URL", "https://examwatch.in"),
    )

    logging.getLogger("config").info(
        "Loaded settings service=%s data_root=%s database=%s storage=%s priorities=%s site=%s provider=%s",
        s.service_name, s.data_root, _mask_url(s.database_url), s.storage_dir,
        ",".join(s.priority_filter), s.site_id or "all", s.extraction_provider,
    )
    return s


# Public singleton
settings = get_settings()
