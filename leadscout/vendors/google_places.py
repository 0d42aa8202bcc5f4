"""Client utilities for the Google Places API (New) text search."""

import logging
from typing import Any, Dict, List, Optional

import requests

from leadscout.core.config import Settings, get_settings
from leadscout.core.errors import UpstreamCollaboratorError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://places.googleapis.com/v1"
MAX_RESULT_COUNT = 20
FIELD_MASK = ",".join(
    (
        "places.id",
        "places.displayName",
        "places.formattedAddress",
        "places.addressComponents",
        "places.types",
        "places.primaryType",
        "places.websiteUri",
        "places.rating",
        "places.userRatingCount",
        "places.googleMapsUri",
        "places.nationalPhoneNumber",
        "places.location",
    )
)


class GooglePlacesError(UpstreamCollaboratorError):
    """Raised when the Places API returns a non-successful response."""


def text_search(query: str, api_key: str, max_results: int = MAX_RESULT_COUNT, timeout: float = 10) -> Dict[str, Any]:
    if not api_key:
        raise GooglePlacesError("GOOGLE_API_KEY is not configured")
    body = {"textQuery": query, "maxResultCount": max(1, min(max_results, MAX_RESULT_COUNT))}
    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": api_key,
        "X-Goog-FieldMask": FIELD_MASK,
    }
    try:
        response = _SESSION.post(f"{_BASE_URL}/places:searchText", json=body, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise GooglePlacesError(f"Places request failed: {exc}") from exc

    if response.status_code != 200:
        try:
            message = (response.json().get("error") or {}).get("message")
        except ValueError:
            message = None
        logger.error("text_search failed: status=%s, error_message=%s", response.status_code, message)
        raise GooglePlacesError(message or f"HTTP {response.status_code}")

    try:
        payload = response.json()
    except ValueError as exc:
        raise GooglePlacesError("Places returned a non-JSON body") from exc
    return payload


class PlacesDiscovery:
    """Discovery collaborator backed by Places text search."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def search(self, text_query: str, limit: int) -> List[Dict[str, Any]]:
        payload = text_search(
            text_query,
            self.settings.google_api_key,
            max_results=limit,
            timeout=self.settings.request_timeout,
        )
        places = payload.get("places") or []
        logger.info("Places returned %d result(s) for %r", len(places), text_query)
        return [place for place in places if isinstance(place, dict)][:limit]
