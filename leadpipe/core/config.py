"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from leadpipe.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "LeadPipelineBot/1.0 (+https://leadpipe.app/bot)"
_PROVIDERS = {"google_places", "serpapi"}


@dataclass(frozen=True)
class Settings:
    google_api_key: str = ""
    serpapi_api_key: str = ""
    discovery_provider: str = "google_places"
    database_url: str = ""
    worker_port: int = 9000
    page_delay_seconds: float = 2.0
    fetch_timeout: float = 8.0
    extraction_workers: int = 4
    max_concurrent_jobs: int = 2
    default_phone_region: Optional[str] = "US"
    default_profile: str = "generic"
    profiles_path: str = ""
    pattern_catalogue_path: str = ""
    persistence_retries: int = 3
    persistence_backoff: float = 0.5
    user_agent: str = DEFAULT_USER_AGENT


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    discovery_provider = os.getenv("DISCOVERY_PROVIDER", "google_places").strip().lower() or "google_places"
    if discovery_provider not in _PROVIDERS:
        raise ConfigError(f"DISCOVERY_PROVIDER must be one of {sorted(_PROVIDERS)}, got {discovery_provider!r}")

    database_url = os.getenv("DATABASE_URL", "")
    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION", "US")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw.strip() else None

    if not database_url:
        logger.warning("DATABASE_URL is not set; leads will be kept in memory only.")
    if discovery_provider == "google_places" and not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; Google Places requests will fail.")
    if discovery_provider == "serpapi" and not serpapi_api_key:
        logger.warning("SERPAPI_API_KEY is not configured; SerpAPI requests will fail.")

    return Settings(
        google_api_key=google_api_key,
        serpapi_api_key=serpapi_api_key,
        discovery_provider=discovery_provider,
        database_url=database_url,
        worker_port=_int_env("WORKER_PORT", 9000, minimum=1),
        page_delay_seconds=_float_env("DISCOVERY_PAGE_DELAY", 2.0),
        fetch_timeout=_float_env("FETCH_TIMEOUT", 8.0),
        extraction_workers=_int_env("EXTRACTION_WORKERS", 4, minimum=1),
        max_concurrent_jobs=_int_env("MAX_CONCURRENT_JOBS", 2, minimum=1),
        default_phone_region=default_phone_region,
        default_profile=os.getenv("DEFAULT_PROFILE", "generic").strip() or "generic",
        profiles_path=os.getenv("PROFILES_PATH", ""),
        pattern_catalogue_path=os.getenv("PATTERN_CATALOGUE_PATH", ""),
        persistence_retries=_int_env("PERSISTENCE_RETRIES", 3),
        persistence_backoff=_float_env("PERSISTENCE_BACKOFF", 0.5),
        user_agent=os.getenv("USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
    )
