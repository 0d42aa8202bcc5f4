"""SerpAPI Google Maps helpers used as an alternative discovery backend."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Iterable, List, Optional

from serpapi import GoogleSearch

from leadscout.core.config import Settings, get_settings
from leadscout.core.errors import UpstreamCollaboratorError

logger = logging.getLogger(__name__)

RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.2


class SerpApiError(UpstreamCollaboratorError):
    """Raised when SerpAPI keeps failing or answers with an error payload."""


def build_serpapi_params(query: str, api_key: str, ll: Optional[str] = None) -> Dict[str, Any]:
    """Construct SerpAPI request parameters for the Google Maps engine."""
    if not query or not query.strip():
        raise ValueError("Query must be provided for SerpAPI lookups.")

    params: Dict[str, Any] = {
        "engine": "google_maps",
        "q": query.strip(),
        "api_key": api_key,
        "type": "search",
    }
    if ll:
        params["ll"] = ll
    return params


def fetch_from_serpapi(query: str, api_key: str, ll: Optional[str] = None) -> Dict[str, Any]:
    """Call SerpAPI Google Maps and return the raw JSON response with retry logic.

    SerpAPI charges per request; every attempt is logged so usage can be
    reconciled afterwards.
    """
    params = build_serpapi_params(query, api_key, ll)

    attempt = 0
    while True:
        attempt += 1
        try:
            logger.info("Calling SerpAPI (attempt %s) for query=%s ll=%s", attempt, query, ll)
            data = GoogleSearch(params).get_dict()
            if not data:
                raise SerpApiError("SerpAPI returned an empty payload.")
            if "error" in data:
                raise SerpApiError(f"SerpAPI returned an error response: {data.get('error') or data}")
            return data
        except Exception as exc:  # noqa: BLE001
            logger.warning("SerpAPI request failed (attempt %s/%s): %s", attempt, RETRY_LIMIT + 1, exc)
            if attempt > RETRY_LIMIT:
                logger.error("SerpAPI request exhausted retries for query=%s", query)
                if isinstance(exc, SerpApiError):
                    raise
                raise SerpApiError(str(exc)) from exc
            time.sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))


def extract_local_results(data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Pull the raw place dicts out of a SerpAPI Maps response."""
    if not data:
        return []

    items = list(_extract_items(data))
    if not items:
        logger.warning(
            "SerpAPI response missing local_results iterable. keys=%s preview=%s",
            list(data.keys())[:10],
            str(data.get("local_results"))[:200],
        )
        place_results = data.get("place_results")
        if isinstance(place_results, list):
            items = place_results
        elif isinstance(place_results, dict):
            items = [place_results]

    return [raw for raw in items if isinstance(raw, dict) and (raw.get("title") or raw.get("name"))]


def _extract_items(data: Dict[str, Any]) -> Iterable[Any]:
    """SerpAPI sometimes returns local_results as a list or nested dict."""
    local_results = data.get("local_results")
    if isinstance(local_results, list):
        return local_results
    if isinstance(local_results, dict):
        logger.debug("local_results is dict with keys: %s", list(local_results.keys())[:10])
        for maybe in (
            local_results.get("places"),
            local_results.get("results"),
            local_results.get("local_results"),
        ):
            if isinstance(maybe, list):
                return maybe
    return []


class SerpApiDiscovery:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def search(self, text_query: str, limit: int) -> List[Dict[str, Any]]:
        if not self.settings.serpapi_api_key:
            raise SerpApiError("SERPAPI_API_KEY is not configured")
        data = fetch_from_serpapi(text_query, self.settings.serpapi_api_key)
        return extract_local_results(data)[:limit]
