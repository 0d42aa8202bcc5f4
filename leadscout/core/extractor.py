"""Pattern-based extraction of a partial query from free text.

Used before (or instead of) the generative planner. Nothing here calls out to
the network; every table is iterated in declaration order so the first match
is stable.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from leadscout.core.query import STATE_CODES, US_STATES, normalize_state

logger = logging.getLogger(__name__)


class LocationParseError(ValueError):
    """Raised when no city/state pair can be recovered from the text."""


# First vertical (in this order) with a matching synonym wins.
VERTICAL_SYNONYMS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("dentist", ("dentist", "dentists", "dental", "orthodontist", "orthodontists", "dds")),
    ("law_firm", ("law firm", "law firms", "lawyer", "lawyers", "attorney", "attorneys", "legal")),
    ("hvac", ("hvac", "heating", "air conditioning", "furnace")),
    ("roofing", ("roofer", "roofers", "roofing")),
    ("plumber", ("plumber", "plumbers", "plumbing")),
    ("med_spa", ("med spa", "medspa", "medical spa", "aesthetics")),
    ("restaurant", ("restaurant", "restaurants", "cafe", "diner", "bistro")),
    ("contractor", ("contractor", "contractors", "remodeling", "builder", "builders", "handyman")),
)

_STATE_NAMES = "|".join(sorted((re.escape(name) for name in US_STATES), key=len, reverse=True))
_CITY = r"\b([A-Za-z][A-Za-z.'\-]*(?:\s+[A-Za-z][A-Za-z.'\-]*){0,3})"

# Tried in order: "City, ST", "City ST", "City, State-name".
LOCATION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(_CITY + r",\s*([A-Z]{2}|[a-z]{2}(?=\s*(?:$|[.,;!?])))\b"),
    re.compile(r"\b(?:in|near|around)\s+" + _CITY + r"\s+([A-Z]{2})\b"),
    re.compile(_CITY + r",\s*(" + _STATE_NAMES + r")\b", re.IGNORECASE),
)
_LOCATION_LEAD_IN = re.compile(r"\b(?:in|near|around)\s+(.+)$", re.IGNORECASE)
_TRAILING_CLAUSE = re.compile(r"\s+(?:with|without|that|who|which|and|but|having|no)\b.*$", re.IGNORECASE)

# Marks a row whose boolean comes from the captured with/without word.
POLARITY = "polarity"

# (pattern, list name, predicate key, value, None for the captured number, or POLARITY)
CONSTRAINT_PATTERNS: Tuple[Tuple[Pattern[str], str, str, Any], ...] = (
    (re.compile(r"\b(?:ideally|prefer(?:ably)?|bonus if)\b[^.,;]*\bowner\b", re.I), "optional", "owner_identified", True),
    (
        re.compile(
            r"\b(?:ideally|prefer(?:ably)?|bonus if)\b[^.,;]*?\b(with|without|no|lacking|missing)\s+"
            r"(?:an?\s+)?(?:online\s+)?(?:booking|scheduling)\b",
            re.I,
        ),
        "optional",
        "has_online_booking",
        POLARITY,
    ),
    (re.compile(r"\b(?:no|without|missing|lacking)\s+(?:a\s+)?(?:web\s*site|site)\b", re.I), "must", "no_website", True),
    (re.compile(r"\b(?:no|without|missing|lacking)\s+(?:a\s+)?(?:live\s+)?(?:chat\s*(?:bot|widget)?|chatbot)s?\b", re.I), "must", "has_chatbot", False),
    (re.compile(r"\b(?:no|without|missing|lacking)\s+(?:an?\s+)?(?:online\s+)?(?:booking|scheduling|appointments?)\b", re.I), "must", "has_online_booking", False),
    (re.compile(r"\b(?:no|without)\s+(?:online\s+)?(?:payments?|payment\s+processor)\b", re.I), "must", "has_payment_processor", False),
    (re.compile(r"\b(?:no|without)\s+(?:ssl|https)\b", re.I), "must", "has_ssl", False),
    (re.compile(r"\bnot\s+mobile[\s\-]+(?:friendly|responsive)\b", re.I), "must", "mobile_responsive", False),
    (re.compile(r"\bowner\s+(?:identified|known|name)\b", re.I), "must", "owner_identified", True),
    (re.compile(r"\b(?:exclude|excluding|no|not|without)\s+(?:franchises?|chains?)\b", re.I), "exclude", "franchise", True),
    (re.compile(r"\b(?:more than|over|at least|above)\s+(\d+)\s+reviews?\b", re.I), "must", "reviews_count_gt", None),
    (re.compile(r"\b(?:fewer than|less than|under|below)\s+(\d+)\s+reviews?\b", re.I), "must", "reviews_count_lt", None),
    (re.compile(r"\brating\s+(?:below|under|less than)\s+(\d(?:\.\d+)?)\b", re.I), "must", "rating_lt", None),
    (re.compile(r"\brating\s+(?:above|over|greater than|at least)\s+(\d(?:\.\d+)?)\b", re.I), "must", "rating_gt", None),
    (re.compile(r"\b(?:in business|established|operating)\s+(?:for\s+)?(?:over|more than|at least)\s+(\d+)\s+years?\b", re.I), "must", "years_in_business_gt", None),
)
_COUNT_KEYS = {"reviews_count_gt", "reviews_count_lt", "years_in_business_gt"}


@dataclass(frozen=True)
class ExtractionResult:
    fragment: Dict[str, Any]
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {"fragment": self.fragment, "warnings": list(self.warnings)}


def detect_vertical(text: str) -> Optional[str]:
    lowered = text.lower()
    for vertical, synonyms in VERTICAL_SYNONYMS:
        for synonym in synonyms:
            if re.search(r"\b" + re.escape(synonym) + r"\b", lowered):
                return vertical
    return None


def _clean_city(raw: str) -> str:
    words = raw.split()
    # Drop lead-in words captured by the greedy city group ("dentists in Columbia").
    for index in range(len(words) - 1, -1, -1):
        if words[index].lower() in {"in", "near", "around"}:
            words = words[index + 1 :]
            break
    return " ".join(word.capitalize() if word.islower() else word for word in words)


def parse_location(text: str) -> Tuple[str, str]:
    """Return ``(city, state_code)`` from free text.

    Raises ``LocationParseError`` when nothing usable is found.
    """
    for pattern in LOCATION_PATTERNS:
        for match in pattern.finditer(text):
            city = _clean_city(match.group(1))
            state = normalize_state(match.group(2))
            if city and state in STATE_CODES:
                return city, state

    candidate = text
    lead_in = _LOCATION_LEAD_IN.search(text)
    if lead_in:
        candidate = lead_in.group(1)
    candidate = _TRAILING_CLAUSE.sub("", candidate).strip(" ,.")
    tokens = candidate.replace(",", " ").split()
    if len(tokens) < 2:
        raise LocationParseError(f"Could not find a city and state in {text!r}; expected e.g. 'Columbia, SC'")
    # Two-word state names ("south carolina") take precedence over a one-token guess.
    if len(tokens) >= 3 and " ".join(tokens[-2:]).lower() in US_STATES:
        return _clean_city(" ".join(tokens[:-2])), normalize_state(" ".join(tokens[-2:]))
    state_guess = normalize_state(tokens[-1])
    city = _clean_city(" ".join(tokens[:-1]))
    return city, state_guess


def extract_constraints(text: str) -> Dict[str, List[Dict[str, Any]]]:
    buckets: Dict[str, List[Dict[str, Any]]] = {"must": [], "optional": [], "exclude": []}
    claimed: Dict[str, str] = {}
    for pattern, bucket, key, value in CONSTRAINT_PATTERNS:
        if key in claimed:
            continue
        match = pattern.search(text)
        if not match:
            continue
        if value == POLARITY:
            value = match.group(1).lower() == "with"
        elif value is None:
            number = match.group(1)
            value = int(number) if key in _COUNT_KEYS else float(number)
        buckets[bucket].append({key: value})
        claimed[key] = bucket
    return buckets


def extract_query_fragment(text: str, default_location: Optional[str] = None) -> ExtractionResult:
    """Best-effort partial query (vertical, geo, constraints) from free text."""
    warnings: List[str] = []
    fragment: Dict[str, Any] = {}
    cleaned = " ".join((text or "").split())
    if not cleaned:
        return ExtractionResult(fragment={}, warnings=("Empty query text",))

    vertical = detect_vertical(cleaned)
    if vertical:
        fragment["vertical"] = vertical
    else:
        warnings.append("No business vertical recognised; using generic")

    try:
        city, state = parse_location(cleaned)
        if state not in STATE_CODES:
            raise LocationParseError(f"Unrecognised state {state!r}")
        fragment["geo"] = {"city": city, "state": state}
    except LocationParseError as exc:
        if default_location:
            try:
                city, state = parse_location(default_location)
                fragment["geo"] = {"city": city, "state": state}
                warnings.append(f"{exc}; using default location {city}, {state}")
            except LocationParseError as default_exc:
                warnings.append(f"{exc}; default location unusable: {default_exc}")
        else:
            warnings.append(str(exc))

    constraints = extract_constraints(cleaned)
    if any(constraints.values()):
        fragment["constraints"] = {name: preds for name, preds in constraints.items() if preds}

    logger.debug("Extracted fragment=%s warnings=%s from %r", fragment, warnings, cleaned)
    return ExtractionResult(fragment=fragment, warnings=tuple(warnings))
