"""Structured lead query (the DSL) and its validator.

``validate_query`` never raises on malformed input: it returns a
``ValidationResult`` carrying either a fully-defaulted ``Query`` or a list of
``{"path", "message"}`` errors. Checks run in phases (shape, then types and
ranges per field, then cross-field rules); cross-field rules only run once the
individual fields are valid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from leadscout.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

VERTICALS = (
    "dentist",
    "law_firm",
    "contractor",
    "hvac",
    "roofing",
    "plumber",
    "med_spa",
    "restaurant",
    "generic",
)
SORT_OPTIONS = ("score_desc", "score_asc", "name_asc")
OUTPUT_CONTRACTS = ("csv", "json", "excel")
DEFAULT_COMPLIANCE_FLAGS = ("respect_dnc", "two_party_recording_state_notes")

RADIUS_KM_RANGE = (1, 100)
DEFAULT_RADIUS_KM = 25
RESULT_TARGET_RANGE = (1, 1000)
DEFAULT_RESULT_TARGET = 250

WEIGHT_KEYS = ("icp", "pain", "reachability", "compliance_risk")
WEIGHT_SUM_TOLERANCE = 0.01

# Weights per named profile, in WEIGHT_KEYS order.
SCORING_PROFILES: Dict[str, Tuple[float, float, float, float]] = {
    "generic": (0.35, 0.35, 0.20, 0.10),
    "dentist-intake": (0.40, 0.30, 0.25, 0.05),
    "contractor-quote": (0.30, 0.45, 0.20, 0.05),
    "law-compliance": (0.25, 0.25, 0.25, 0.25),
    "high-reachability": (0.20, 0.30, 0.45, 0.05),
}
DEFAULT_PROFILE = "generic"

BOOL_PREDICATES = (
    "no_website",
    "has_website",
    "has_chatbot",
    "has_online_booking",
    "has_payment_processor",
    "has_ssl",
    "mobile_responsive",
    "owner_identified",
    "franchise",
)
COUNT_PREDICATES = ("reviews_count_gt", "reviews_count_lt", "years_in_business_gt")
RATING_PREDICATES = ("rating_gt", "rating_lt")
RANGE_PREDICATES = ("employee_count_range",)
PREDICATE_KEYS = BOOL_PREDICATES + COUNT_PREDICATES + RATING_PREDICATES + RANGE_PREDICATES
CONSTRAINT_LISTS = ("must", "optional", "exclude")

US_STATES: Dict[str, str] = {
    "alabama": "AL",
    "alaska": "AK",
    "arizona": "AZ",
    "arkansas": "AR",
    "california": "CA",
    "colorado": "CO",
    "connecticut": "CT",
    "delaware": "DE",
    "district of columbia": "DC",
    "florida": "FL",
    "georgia": "GA",
    "hawaii": "HI",
    "idaho": "ID",
    "illinois": "IL",
    "indiana": "IN",
    "iowa": "IA",
    "kansas": "KS",
    "kentucky": "KY",
    "louisiana": "LA",
    "maine": "ME",
    "maryland": "MD",
    "massachusetts": "MA",
    "michigan": "MI",
    "minnesota": "MN",
    "mississippi": "MS",
    "missouri": "MO",
    "montana": "MT",
    "nebraska": "NE",
    "nevada": "NV",
    "new hampshire": "NH",
    "new jersey": "NJ",
    "new mexico": "NM",
    "new york": "NY",
    "north carolina": "NC",
    "north dakota": "ND",
    "ohio": "OH",
    "oklahoma": "OK",
    "oregon": "OR",
    "pennsylvania": "PA",
    "rhode island": "RI",
    "south carolina": "SC",
    "south dakota": "SD",
    "tennessee": "TN",
    "texas": "TX",
    "utah": "UT",
    "vermont": "VT",
    "virginia": "VA",
    "washington": "WA",
    "west virginia": "WV",
    "wisconsin": "WI",
    "wyoming": "WY",
}
STATE_CODES = frozenset(US_STATES.values())


def normalize_state(value: str) -> str:
    """Map a full state name or code to an uppercase 2-letter code.

    Unknown names are returned stripped and uppercased so the caller can
    report them.
    """
    cleaned = " ".join(value.split())
    mapped = US_STATES.get(cleaned.lower())
    if mapped:
        return mapped
    return cleaned.upper()


def get_profile_weights(profile: str) -> Tuple[float, float, float, float]:
    try:
        return SCORING_PROFILES[profile]
    except KeyError:
        raise NotFoundError(f"Unknown scoring profile: {profile}") from None


# ---------- Query records ----------


@dataclass(frozen=True)
class ConstraintPredicate:
    """Sparse set of named assertions; stored as sorted ``(key, value)`` pairs."""

    items: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ConstraintPredicate":
        normalized = []
        for key, value in values.items():
            if isinstance(value, list):
                value = tuple(value)
            normalized.append((key, value))
        return cls(items=tuple(sorted(normalized)))

    def get(self, key: str, default: Any = None) -> Any:
        for name, value in self.items:
            if name == key:
                return value
        return default

    def keys(self) -> List[str]:
        return [name for name, _ in self.items]

    def to_dict(self) -> Dict[str, Any]:
        return {name: list(value) if isinstance(value, tuple) else value for name, value in self.items}


@dataclass(frozen=True)
class Geo:
    city: str
    state: str
    radius_km: float = DEFAULT_RADIUS_KM
    zip_codes: Tuple[str, ...] = ()
    neighborhoods: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"city": self.city, "state": self.state, "radius_km": self.radius_km}
        if self.zip_codes:
            payload["zip_codes"] = list(self.zip_codes)
        if self.neighborhoods:
            payload["neighborhoods"] = list(self.neighborhoods)
        return payload


@dataclass(frozen=True)
class Constraints:
    must: Tuple[ConstraintPredicate, ...] = ()
    optional: Tuple[ConstraintPredicate, ...] = ()
    exclude: Tuple[ConstraintPredicate, ...] = ()

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: [p.to_dict() for p in getattr(self, name)] for name in CONSTRAINT_LISTS}


@dataclass(frozen=True)
class ResultSize:
    target: int = DEFAULT_RESULT_TARGET
    minimum: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"target": self.target}
        if self.minimum is not None:
            payload["minimum"] = self.minimum
        return payload


@dataclass(frozen=True)
class ScoringConfig:
    profile: str = DEFAULT_PROFILE
    overrides: Tuple[Tuple[str, float], ...] = ()

    @property
    def weights(self) -> Dict[str, float]:
        resolved = dict(zip(WEIGHT_KEYS, get_profile_weights(self.profile)))
        resolved.update(dict(self.overrides))
        return resolved

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"profile": self.profile}
        if self.overrides:
            payload["weights"] = dict(self.overrides)
        return payload


@dataclass(frozen=True)
class Notify:
    on_complete: bool = False
    webhook_url: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"on_complete": self.on_complete}
        if self.webhook_url is not None:
            payload["webhook_url"] = self.webhook_url
        if self.email is not None:
            payload["email"] = self.email
        return payload


@dataclass(frozen=True)
class Query:
    version: int
    geo: Geo
    vertical: str = "generic"
    constraints: Constraints = field(default_factory=Constraints)
    result_size: ResultSize = field(default_factory=ResultSize)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    sort_by: str = "score_desc"
    output_contract: str = "json"
    notify: Notify = field(default_factory=Notify)
    compliance_flags: Tuple[str, ...] = DEFAULT_COMPLIANCE_FLAGS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "vertical": self.vertical,
            "geo": self.geo.to_dict(),
            "constraints": self.constraints.to_dict(),
            "result_size": self.result_size.to_dict(),
            "scoring": self.scoring.to_dict(),
            "sort_by": self.sort_by,
            "output": {"contract": self.output_contract},
            "notify": self.notify.to_dict(),
            "compliance_flags": list(self.compliance_flags),
        }


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    query: Optional[Query] = None
    errors: Tuple[Dict[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        if self.valid and self.query is not None:
            return {"valid": True, "query": self.query.to_dict()}
        return {"valid": False, "errors": [dict(err) for err in self.errors]}


# ---------- Validator ----------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class _QueryValidator:
    def __init__(self, raw: Any) -> None:
        self.raw = raw
        self.errors: List[Dict[str, str]] = []

    def error(self, path: str, message: str) -> None:
        self.errors.append({"path": path, "message": message})

    def run(self) -> ValidationResult:
        if not self._check_shape():
            return ValidationResult(valid=False, errors=tuple(self.errors))

        raw = self.raw
        version = self._version(raw.get("version"))
        vertical = self._enum("vertical", raw.get("vertical"), VERTICALS, "generic")
        geo = self._geo(raw["geo"])
        constraints = self._constraints(raw.get("constraints"))
        result_size = self._result_size(raw.get("result_size"))
        scoring = self.scoring_config(raw.get("scoring"))
        sort_by = self._enum("sort_by", raw.get("sort_by"), SORT_OPTIONS, "score_desc")
        output_contract = self._output(raw.get("output"))
        notify = self._notify(raw.get("notify"))
        compliance_flags = self._compliance_flags(raw.get("compliance_flags"))

        if not self.errors:
            self.cross_field(result_size, scoring)

        if self.errors:
            return ValidationResult(valid=False, errors=tuple(self.errors))

        query = Query(
            version=version,
            vertical=vertical,
            geo=geo,
            constraints=constraints,
            result_size=result_size,
            scoring=scoring,
            sort_by=sort_by,
            output_contract=output_contract,
            notify=notify,
            compliance_flags=compliance_flags,
        )
        return ValidationResult(valid=True, query=query)

    # -- shape --

    def _check_shape(self) -> bool:
        if not isinstance(self.raw, Mapping):
            self.error("", "query must be an object")
            return False
        if "version" not in self.raw or self.raw.get("version") is None:
            self.error("version", "version is required")
        geo = self.raw.get("geo")
        if geo is None:
            self.error("geo", "geo is required")
        elif not isinstance(geo, Mapping):
            self.error("geo", "geo must be an object")
        for section in ("constraints", "result_size", "scoring", "output", "notify"):
            value = self.raw.get(section)
            if value is not None and not isinstance(value, Mapping):
                self.error(section, f"{section} must be an object")
        return not self.errors

    # -- scalar helpers --

    def _version(self, value: Any) -> int:
        if not _is_int(value):
            self.error("version", "version must be an integer")
            return SCHEMA_VERSION
        if value != SCHEMA_VERSION:
            self.error("version", f"unsupported version {value}; expected {SCHEMA_VERSION}")
        return value

    def _enum(self, path: str, value: Any, allowed: Iterable[str], default: str) -> str:
        if value is None:
            return default
        if not isinstance(value, str):
            self.error(path, f"{path} must be a string")
            return default
        if value not in allowed:
            self.error(path, f"{path} must be one of: {', '.join(allowed)}")
            return default
        return value

    def _string_list(self, path: str, value: Any) -> Tuple[str, ...]:
        if value is None:
            return ()
        if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
            self.error(path, f"{path} must be a list of strings")
            return ()
        return tuple(value)

    # -- sections --

    def _geo(self, geo: Mapping[str, Any]) -> Geo:
        city = geo.get("city")
        if city is None or (isinstance(city, str) and not city.strip()):
            self.error("geo.city", "geo.city is required")
            if any(geo.get(key) for key in ("radius_km", "zip_codes", "neighborhoods")):
                self.error("geo.radius_km", "radius and area filters require geo.city")
            city = ""
        elif not isinstance(city, str):
            self.error("geo.city", "geo.city must be a string")
            city = ""
        else:
            city = " ".join(city.split())

        state = geo.get("state")
        if state is None or (isinstance(state, str) and not state.strip()):
            self.error("geo.state", "geo.state is required")
            state = ""
        elif not isinstance(state, str):
            self.error("geo.state", "geo.state must be a string")
            state = ""
        else:
            state = normalize_state(state)
            if len(state) != 2 or state not in STATE_CODES:
                self.error("geo.state", f"unknown state {geo.get('state')!r}; expected a 2-letter code or state name")

        radius = geo.get("radius_km")
        if radius is None:
            radius = DEFAULT_RADIUS_KM
        elif not _is_number(radius):
            self.error("geo.radius_km", "geo.radius_km must be a number")
            radius = DEFAULT_RADIUS_KM
        elif not RADIUS_KM_RANGE[0] <= radius <= RADIUS_KM_RANGE[1]:
            self.error("geo.radius_km", f"geo.radius_km must be between {RADIUS_KM_RANGE[0]} and {RADIUS_KM_RANGE[1]}")

        return Geo(
            city=city,
            state=state,
            radius_km=radius,
            zip_codes=self._string_list("geo.zip_codes", geo.get("zip_codes")),
            neighborhoods=self._string_list("geo.neighborhoods", geo.get("neighborhoods")),
        )

    def _constraints(self, raw: Optional[Mapping[str, Any]]) -> Constraints:
        raw = raw or {}
        lists: Dict[str, Tuple[ConstraintPredicate, ...]] = {}
        for name in CONSTRAINT_LISTS:
            value = raw.get(name)
            path = f"constraints.{name}"
            if value is None:
                lists[name] = ()
                continue
            if not isinstance(value, (list, tuple)):
                self.error(path, f"{path} must be a list of predicates")
                lists[name] = ()
                continue
            lists[name] = tuple(
                self.predicate(f"{path}[{index}]", item) for index, item in enumerate(value)
            )
        return Constraints(**lists)

    def predicate(self, path: str, raw: Any) -> ConstraintPredicate:
        if not isinstance(raw, Mapping):
            self.error(path, "predicate must be an object")
            return ConstraintPredicate()
        accepted: Dict[str, Any] = {}
        for key, value in raw.items():
            key_path = f"{path}.{key}"
            if key not in PREDICATE_KEYS:
                self.error(key_path, f"unknown predicate {key!r}")
            elif key in BOOL_PREDICATES:
                if not isinstance(value, bool):
                    self.error(key_path, f"{key} must be a boolean")
                else:
                    accepted[key] = value
            elif key in COUNT_PREDICATES:
                if not _is_int(value):
                    self.error(key_path, f"{key} must be an integer")
                elif value < 0:
                    self.error(key_path, f"{key} must be >= 0")
                else:
                    accepted[key] = value
            elif key in RATING_PREDICATES:
                if not _is_number(value):
                    self.error(key_path, f"{key} must be a number")
                elif not 0 <= value <= 5:
                    self.error(key_path, f"{key} must be between 0 and 5")
                else:
                    accepted[key] = value
            else:
                bounds = self._employee_range(key_path, value)
                if bounds is not None:
                    accepted[key] = bounds
        return ConstraintPredicate.from_mapping(accepted)

    def _employee_range(self, path: str, value: Any) -> Optional[Tuple[int, int]]:
        if not isinstance(value, (list, tuple)) or len(value) != 2 or not all(_is_int(v) for v in value):
            self.error(path, "employee_count_range must be a [min, max] pair of integers")
            return None
        low, high = value
        if low < 0 or low > high:
            self.error(path, "employee_count_range requires 0 <= min <= max")
            return None
        return (low, high)

    def _result_size(self, raw: Optional[Mapping[str, Any]]) -> ResultSize:
        raw = raw or {}
        target = raw.get("target")
        if target is None:
            target = DEFAULT_RESULT_TARGET
        elif not _is_int(target):
            self.error("result_size.target", "result_size.target must be an integer")
            target = DEFAULT_RESULT_TARGET
        elif not RESULT_TARGET_RANGE[0] <= target <= RESULT_TARGET_RANGE[1]:
            self.error(
                "result_size.target",
                f"result_size.target must be between {RESULT_TARGET_RANGE[0]} and {RESULT_TARGET_RANGE[1]}",
            )

        minimum = raw.get("minimum")
        if minimum is not None:
            if not _is_int(minimum):
                self.error("result_size.minimum", "result_size.minimum must be an integer")
                minimum = None
            elif minimum < 1:
                self.error("result_size.minimum", "result_size.minimum must be >= 1")
        return ResultSize(target=target, minimum=minimum)

    def scoring_config(self, raw: Optional[Mapping[str, Any]]) -> ScoringConfig:
        raw = raw or {}
        profile = self._enum("scoring.profile", raw.get("profile"), tuple(SCORING_PROFILES), DEFAULT_PROFILE)
        weights = raw.get("weights")
        if weights is None:
            return ScoringConfig(profile=profile)
        if not isinstance(weights, Mapping):
            self.error("scoring.weights", "scoring.weights must be an object")
            return ScoringConfig(profile=profile)

        overrides: List[Tuple[str, float]] = []
        for key, value in weights.items():
            path = f"scoring.weights.{key}"
            if key not in WEIGHT_KEYS:
                self.error(path, f"unknown weight {key!r}; expected one of {', '.join(WEIGHT_KEYS)}")
            elif not _is_number(value):
                self.error(path, f"{key} must be a number")
            elif not 0 <= value <= 1:
                self.error(path, f"{key} must be between 0 and 1")
            else:
                overrides.append((key, float(value)))
        return ScoringConfig(profile=profile, overrides=tuple(sorted(overrides)))

    def _output(self, raw: Optional[Mapping[str, Any]]) -> str:
        raw = raw or {}
        return self._enum("output.contract", raw.get("contract"), OUTPUT_CONTRACTS, "json")

    def _notify(self, raw: Optional[Mapping[str, Any]]) -> Notify:
        raw = raw or {}
        on_complete = raw.get("on_complete", False)
        if not isinstance(on_complete, bool):
            self.error("notify.on_complete", "notify.on_complete must be a boolean")
            on_complete = False

        webhook_url = raw.get("webhook_url")
        if webhook_url is not None:
            try:
                parsed = urlparse(webhook_url) if isinstance(webhook_url, str) else None
            except ValueError:
                parsed = None
            if parsed is None or parsed.scheme not in {"http", "https"} or not parsed.netloc:
                self.error("notify.webhook_url", "notify.webhook_url must be an http(s) URL")
                webhook_url = None

        email = raw.get("email")
        if email is not None and (not isinstance(email, str) or "@" not in email):
            self.error("notify.email", "notify.email must be an email address")
            email = None
        return Notify(on_complete=on_complete, webhook_url=webhook_url, email=email)

    def _compliance_flags(self, value: Any) -> Tuple[str, ...]:
        if value is None:
            return DEFAULT_COMPLIANCE_FLAGS
        return self._string_list("compliance_flags", value)

    # -- cross-field --

    def cross_field(self, result_size: ResultSize, scoring: ScoringConfig) -> None:
        if result_size.minimum is not None and result_size.minimum > result_size.target:
            self.error("result_size.minimum", "result_size.minimum cannot exceed result_size.target")

        # Partial overrides are merged over the profile without a sum check.
        if len(scoring.overrides) == len(WEIGHT_KEYS):
            total = sum(scoring.weights.values())
            if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
                self.error("scoring.weights", f"weights must sum to 1.0 (got {total:.2f})")


def validate_query(raw: Any) -> ValidationResult:
    """Validate an untyped query object and apply defaults."""
    result = _QueryValidator(raw).run()
    if not result.valid:
        logger.debug("Query rejected with %d error(s): %s", len(result.errors), list(result.errors))
    return result


def require_valid_query(raw: Any) -> Query:
    """Like ``validate_query`` but raises ``ValidationError`` for invalid input."""
    result = validate_query(raw)
    if not result.valid or result.query is None:
        raise ValidationError(list(result.errors))
    return result.query


def build_default_query(city: str, state: str, vertical: str = "generic") -> Query:
    """Minimal fallback query used when free text cannot be turned into a valid query."""
    return require_valid_query(
        {
            "version": SCHEMA_VERSION,
            "vertical": vertical,
            "geo": {"city": city, "state": state},
        }
    )


def parse_predicates(raw: Any, path: str = "constraints") -> Tuple[ConstraintPredicate, ...]:
    """Validate a bare list of predicates outside of a full query."""
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise ValidationError([{"path": path, "message": f"{path} must be a list of predicates"}])
    validator = _QueryValidator(raw)
    predicates = tuple(validator.predicate(f"{path}[{index}]", item) for index, item in enumerate(raw))
    if validator.errors:
        raise ValidationError(validator.errors)
    return predicates


def parse_scoring(raw: Any) -> ScoringConfig:
    """Validate a standalone ``scoring`` block, including the weight-sum rule."""
    if raw is not None and not isinstance(raw, Mapping):
        raise ValidationError([{"path": "scoring", "message": "scoring must be an object"}])
    validator = _QueryValidator(raw)
    scoring = validator.scoring_config(raw)
    validator.cross_field(ResultSize(target=DEFAULT_RESULT_TARGET), scoring)
    if validator.errors:
        raise ValidationError(validator.errors)
    return scoring
