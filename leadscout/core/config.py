"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from leadscout.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "LeadScoutAuditor/1.0 (+https://leadscout.app/bot)"
DISCOVERY_PROVIDERS = ("google_places", "serpapi")


@dataclass(frozen=True)
class Settings:
    google_api_key: str = ""
    serpapi_api_key: str = ""
    openai_api_key: str = ""
    planner_model: str = "gpt-4o-mini"
    synthesis_model: str = "gpt-4o"
    discovery_provider: str = "google_places"
    request_timeout: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT
    max_candidates: int = 10
    audit_concurrency: int = 4
    pipeline_deadline_seconds: Optional[float] = 120.0
    enable_synthesis: bool = True
    default_city: Optional[str] = None
    default_state: Optional[str] = None
    worker_port: int = 9000


def _int_env(name: str, default: int, *, minimum: int = 1) -> int:
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


def _float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    if raw.strip().lower() in {"none", "off", "0"}:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    openai_api_key = os.getenv("OPENAI_API_KEY", "")
    discovery_provider = os.getenv("DISCOVERY_PROVIDER", "google_places").strip().lower()
    if discovery_provider not in DISCOVERY_PROVIDERS:
        raise ConfigError(
            f"DISCOVERY_PROVIDER must be one of {', '.join(DISCOVERY_PROVIDERS)}, got {discovery_provider!r}"
        )

    request_timeout = _float_env("AUDIT_REQUEST_TIMEOUT", 10.0) or 10.0
    default_state_raw = os.getenv("DEFAULT_STATE")
    default_state = default_state_raw.strip().upper() if default_state_raw else None

    if discovery_provider == "google_places" and not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; Google Places discovery will fail.")
    if discovery_provider == "serpapi" and not serpapi_api_key:
        logger.warning("SERPAPI_API_KEY is not configured; SerpAPI discovery will fail.")
    if not openai_api_key:
        logger.warning("OPENAI_API_KEY is not configured; planning and synthesis will use defaults.")

    return Settings(
        google_api_key=google_api_key,
        serpapi_api_key=serpapi_api_key,
        openai_api_key=openai_api_key,
        planner_model=os.getenv("PLANNER_MODEL", "gpt-4o-mini"),
        synthesis_model=os.getenv("SYNTHESIS_MODEL", "gpt-4o"),
        discovery_provider=discovery_provider,
        request_timeout=request_timeout,
        user_agent=os.getenv("AUDIT_USER_AGENT") or DEFAULT_USER_AGENT,
        max_candidates=_int_env("AUDIT_MAX_CANDIDATES", 10),
        audit_concurrency=_int_env("AUDIT_CONCURRENCY", 4),
        pipeline_deadline_seconds=_float_env("PIPELINE_DEADLINE_SECONDS", 120.0),
        enable_synthesis=_bool_env("ENABLE_SYNTHESIS", True),
        default_city=os.getenv("DEFAULT_CITY") or None,
        default_state=default_state,
        worker_port=_int_env("WORKER_PORT", 9000),
    )
