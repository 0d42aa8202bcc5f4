"""Utilities for transforming directory lookups into ``CompanyCandidate`` records.

Three payload shapes are understood: Places API (New) ``places[]`` entries,
legacy Places ``results[]`` entries and SerpAPI Google Maps ``local_results``.
A dict already shaped like ``CompanyCandidate.to_dict()`` is accepted too.
"""

import logging
import re
from typing import Any, Dict, Iterable, Optional, Tuple

from leadscout.core.models import CompanyCandidate
from leadscout.core.query import STATE_CODES

logger = logging.getLogger(__name__)

# Substrings of a business name that mark a national chain.
FRANCHISE_KEYWORDS = (
    "mcdonald", "subway", "starbucks", "kfc", "burger king", "pizza hut",
    "domino", "papa john", "dunkin", "taco bell", "chipotle", "wendy",
    "dairy queen", "sonic", "popeye", "chick-fil-a", "applebee", "ihop",
    "denny", "olive garden", "red lobster", "outback", "chili", "tgif",
    "marriott", "hilton", "holiday inn", "best western", "comfort inn",
    "hampton inn", "la quinta", "motel 6", "super 8", "days inn",
    "jiffy lube", "valvoline", "midas", "firestone", "goodyear",
    "autozone", "advance auto", "pep boys", "napa auto",
    "aspen dental", "western dental", "bright now", "roto-rooter", "mr. rooter",
    "one hour heating", "aire serv", "mr. handyman",
)
_CHAIN_TYPES = ("chain", "franchise", "corporate")

# Directory category -> vertical; first match in category order wins.
TYPE_TO_VERTICAL = {
    "dentist": "dentist",
    "dental_clinic": "dentist",
    "orthodontist": "dentist",
    "lawyer": "law_firm",
    "law_firm": "law_firm",
    "attorney": "law_firm",
    "roofing_contractor": "roofing",
    "roofer": "roofing",
    "plumber": "plumber",
    "plumbing": "plumber",
    "hvac_contractor": "hvac",
    "heating_contractor": "hvac",
    "air_conditioning_contractor": "hvac",
    "general_contractor": "contractor",
    "contractor": "contractor",
    "electrician": "contractor",
    "medical_spa": "med_spa",
    "med_spa": "med_spa",
    "skin_care_clinic": "med_spa",
    "restaurant": "restaurant",
    "cafe": "restaurant",
}

_ADDRESS_STATE_RE = re.compile(r",\s*([^,]+?),\s*([A-Z]{2})(?:\s+\d{5}(?:-\d{4})?)?(?:,\s*(?:USA|United States))?\s*$")


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)

    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        if digits:
            return int(digits)
    return None


def parse_city_state(address_components: Iterable[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    """City and 2-letter state from legacy or New address components."""
    city = None
    state = None
    for component in address_components or []:
        types = set(component.get("types", []))
        if "locality" in types or ("administrative_area_level_2" in types and city is None):
            city = component.get("long_name") or component.get("longText")
        if "administrative_area_level_1" in types:
            state = component.get("short_name") or component.get("shortText")
    return city, state


def parse_address_city_state(address: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Recover ``(city, ST)`` from a US formatted address such as
    ``"123 Main St, Columbia, SC 29201, USA"``."""
    if not address:
        return None, None
    match = _ADDRESS_STATE_RE.search(address.strip())
    if not match or match.group(2) not in STATE_CODES:
        return None, None
    return match.group(1).strip(), match.group(2)


def _normalize_type(value: str) -> str:
    return re.sub(r"[\s\-]+", "_", value.strip().lower())


def infer_vertical(categories: Iterable[str]) -> Optional[str]:
    for category in categories or []:
        vertical = TYPE_TO_VERTICAL.get(_normalize_type(category))
        if vertical:
            return vertical
    return None


def detect_franchise(name: Optional[str], categories: Iterable[str] = ()) -> bool:
    lowered = (name or "").lower()
    if any(keyword in lowered for keyword in FRANCHISE_KEYWORDS):
        return True
    return any(chain in category.lower() for category in categories or [] for chain in _CHAIN_TYPES)


def _display_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return _strip_or_none(value.get("text"))
    return _strip_or_none(value)


def _categories(raw: Dict[str, Any]) -> Tuple[str, ...]:
    types = raw.get("types")
    if isinstance(types, list):
        values = [str(item) for item in types if item]
    else:
        values = []
    primary = raw.get("primaryType") or raw.get("type") or raw.get("category")
    if isinstance(primary, str) and primary and primary not in values:
        values.insert(0, primary)
    return tuple(values)


def _from_places_new(raw: Dict[str, Any]) -> Dict[str, Any]:
    location = raw.get("location") or {}
    city, state = parse_city_state(raw.get("addressComponents", []))
    return {
        "candidate_id": _strip_or_none(raw.get("id")),
        "name": _display_name(raw.get("displayName")),
        "address": _strip_or_none(raw.get("formattedAddress")),
        "city": city,
        "state": state,
        "phone": _strip_or_none(raw.get("nationalPhoneNumber") or raw.get("internationalPhoneNumber")),
        "website": _strip_or_none(raw.get("websiteUri")),
        "latitude": _safe_float(location.get("latitude")),
        "longitude": _safe_float(location.get("longitude")),
        "rating": _safe_float(raw.get("rating")),
        "review_count": _safe_int(raw.get("userRatingCount")),
        "source": "google_places",
    }


def _from_places_legacy(raw: Dict[str, Any]) -> Dict[str, Any]:
    geometry = (raw.get("geometry") or {}).get("location", {})
    city, state = parse_city_state(raw.get("address_components", []))
    return {
        "candidate_id": _strip_or_none(raw.get("place_id")),
        "name": _strip_or_none(raw.get("name")),
        "address": _strip_or_none(raw.get("formatted_address")),
        "city": city,
        "state": state,
        "phone": _strip_or_none(raw.get("formatted_phone_number")),
        "website": _strip_or_none(raw.get("website")),
        "latitude": _safe_float(geometry.get("lat")),
        "longitude": _safe_float(geometry.get("lng")),
        "rating": _safe_float(raw.get("rating")),
        "review_count": _safe_int(raw.get("user_ratings_total")),
        "source": "google_places",
    }


def _from_serpapi(raw: Dict[str, Any]) -> Dict[str, Any]:
    gps = raw.get("gps_coordinates") or {}
    return {
        "candidate_id": _strip_or_none(raw.get("place_id") or raw.get("data_id")),
        "name": _strip_or_none(raw.get("title") or raw.get("name")),
        "address": _strip_or_none(raw.get("address")),
        "city": None,
        "state": None,
        "phone": _strip_or_none(raw.get("phone")),
        "website": _strip_or_none(raw.get("website")),
        "latitude": _safe_float(gps.get("latitude")),
        "longitude": _safe_float(gps.get("longitude")),
        "rating": _safe_float(raw.get("rating")),
        "review_count": _safe_int(raw.get("reviews_count") or raw.get("reviews")),
        "source": "serpapi",
    }


def _from_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "candidate_id": _strip_or_none(raw.get("candidate_id")),
        "name": _strip_or_none(raw.get("name") or raw.get("business_name")),
        "address": _strip_or_none(raw.get("address")),
        "city": _strip_or_none(raw.get("city")),
        "state": _strip_or_none(raw.get("state")),
        "phone": _strip_or_none(raw.get("phone")),
        "email": _strip_or_none(raw.get("email")),
        "website": _strip_or_none(raw.get("website") or raw.get("website_url")),
        "latitude": _safe_float(raw.get("latitude")),
        "longitude": _safe_float(raw.get("longitude")),
        "rating": _safe_float(raw.get("rating")),
        "review_count": _safe_int(raw.get("review_count", raw.get("user_rating_count"))),
        "owner_identified": raw.get("owner_identified") if isinstance(raw.get("owner_identified"), bool) else None,
        "years_in_business": _safe_int(raw.get("years_in_business")),
        "employee_count": _safe_int(raw.get("employee_count")),
        "source": _strip_or_none(raw.get("source")) or "manual",
    }


def _select_mapper(raw: Dict[str, Any]):
    if "displayName" in raw or "formattedAddress" in raw or "websiteUri" in raw:
        return _from_places_new
    if "title" in raw or "gps_coordinates" in raw:
        return _from_serpapi
    if "place_id" in raw or "geometry" in raw or "formatted_address" in raw:
        return _from_places_legacy
    return _from_record


def to_candidate(
    raw: Dict[str, Any],
    *,
    fallback_city: Optional[str] = None,
    fallback_state: Optional[str] = None,
    vertical: Optional[str] = None,
) -> CompanyCandidate:
    """Normalize one directory record.

    Raises ``ValueError`` when the record has no usable business name.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Directory record must be an object, got {type(raw).__name__}")

    fields = _select_mapper(raw)(raw)
    if not fields.get("name"):
        raise ValueError("Directory record has no business name")

    if not fields.get("city") or not fields.get("state"):
        city, state = parse_address_city_state(fields.get("address"))
        fields["city"] = fields.get("city") or city
        fields["state"] = fields.get("state") or state
    fields["city"] = fields.get("city") or fallback_city
    fields["state"] = (fields.get("state") or fallback_state or "").upper() or None

    categories = _categories(raw) if "categories" not in raw else tuple(str(c) for c in raw.get("categories") or ())
    franchise = raw.get("franchise") if isinstance(raw.get("franchise"), bool) else detect_franchise(fields["name"], categories)
    inferred = raw.get("vertical") if isinstance(raw.get("vertical"), str) else infer_vertical(categories)

    return CompanyCandidate(
        categories=categories,
        vertical=inferred or vertical,
        franchise=franchise,
        raw_snapshot=raw,
        **fields,
    )
