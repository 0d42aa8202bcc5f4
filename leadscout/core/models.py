"""Core records shared by the audit, scoring and orchestration stages.

Every record here is frozen: evidence is appended while an audit runs and the
finished structures are never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

SNIPPET_MAX_LENGTH = 200


class CheckType(str, Enum):
    WEBSITE = "website"
    BOOKING = "booking"
    CONTACT = "contact"
    SOCIAL = "social"
    FEATURES = "features"


class EvidenceSource(str, Enum):
    RENDERED_CONTENT = "rendered_content"
    HEADERS = "headers"
    OUTBOUND_LINKS = "outbound_links"
    VENDOR_SIGNATURE = "vendor_signature"


class EvidenceStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class FeatureName(str, Enum):
    ONLINE_BOOKING = "online_booking"
    CHATBOT = "chatbot"
    PAYMENT_PROCESSOR = "payment_processor"
    SSL_CERTIFICATE = "ssl_certificate"
    MOBILE_RESPONSIVE = "mobile_responsive"


class PackageCode(str, Enum):
    """Fixed action bundles a lead can be offered."""

    RECEPTIONIST = "P1"
    FOLLOW_UP = "P2"
    WEB_PRESENCE = "P3"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def truncate_snippet(text: Optional[str], max_length: int = SNIPPET_MAX_LENGTH) -> Optional[str]:
    if text is None:
        return None
    cleaned = " ".join(text.split())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - 3].rstrip() + "..."


@dataclass(frozen=True)
class EvidenceEntry:
    """Single timestamped observation made during an audit."""

    timestamp: str
    check_type: CheckType
    source: EvidenceSource
    url: str
    status: EvidenceStatus
    confidence: float
    path: Optional[str] = None
    selector: Optional[str] = None
    snippet: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        object.__setattr__(self, "snippet", truncate_snippet(self.snippet))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidenceEntry":
        return cls(
            timestamp=data.get("timestamp") or utc_now_iso(),
            check_type=CheckType(data["check_type"]),
            source=EvidenceSource(data["source"]),
            url=data.get("url") or "N/A",
            status=EvidenceStatus(data["status"]),
            confidence=float(data["confidence"]),
            path=data.get("path"),
            selector=data.get("selector"),
            snippet=data.get("snippet"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "check_type": self.check_type.value,
            "source": self.source.value,
            "url": self.url,
            "status": self.status.value,
            "confidence": self.confidence,
        }
        for key in ("path", "selector", "snippet"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class FeatureDetection:
    feature: FeatureName
    found: bool = False
    evidence: Tuple[EvidenceEntry, ...] = ()
    vendor_detected: Optional[str] = None

    @classmethod
    def from_dict(cls, feature: FeatureName, data: Dict[str, Any]) -> "FeatureDetection":
        return cls(
            feature=feature,
            found=bool(data.get("found")),
            evidence=tuple(EvidenceEntry.from_dict(entry) for entry in data.get("evidence") or ()),
            vendor_detected=data.get("vendor_detected"),
        )

    def has_negative_evidence(self) -> bool:
        return any(entry.status is EvidenceStatus.NOT_FOUND for entry in self.evidence)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "found": self.found,
            "evidence": [entry.to_dict() for entry in self.evidence],
        }
        if self.vendor_detected is not None:
            payload["vendor_detected"] = self.vendor_detected
        return payload


@dataclass(frozen=True)
class AuditResult:
    """Outcome of auditing one candidate website."""

    website_url: str
    has_website: bool
    features: Tuple[FeatureDetection, ...]
    evidence_log: Tuple[EvidenceEntry, ...]
    confidence_score: float
    audit_timestamp: str
    paths_attempted: int = 0
    paths_succeeded: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditResult":
        """Rebuild an audit from ``to_dict()`` output.

        Raises ``ValueError``/``KeyError`` for malformed evidence.
        """
        detected = data.get("detected_features") or {}
        features = tuple(
            FeatureDetection.from_dict(feature, detected[feature.value])
            for feature in FeatureName
            if isinstance(detected.get(feature.value), dict)
        )
        return cls(
            website_url=data.get("website_url") or "",
            has_website=bool(data.get("has_website")),
            features=features,
            evidence_log=tuple(EvidenceEntry.from_dict(entry) for entry in data.get("evidence_log") or ()),
            confidence_score=float(data.get("confidence_score") or 0.0),
            audit_timestamp=data.get("audit_timestamp") or utc_now_iso(),
            paths_attempted=int(data.get("paths_attempted") or 0),
            paths_succeeded=int(data.get("paths_succeeded") or 0),
        )

    def detection(self, feature: FeatureName) -> FeatureDetection:
        for detection in self.features:
            if detection.feature is feature:
                return detection
        return FeatureDetection(feature=feature)

    @property
    def online_booking(self) -> FeatureDetection:
        return self.detection(FeatureName.ONLINE_BOOKING)

    @property
    def chatbot(self) -> FeatureDetection:
        return self.detection(FeatureName.CHATBOT)

    @property
    def payment_processor(self) -> FeatureDetection:
        return self.detection(FeatureName.PAYMENT_PROCESSOR)

    @property
    def ssl_certificate(self) -> FeatureDetection:
        return self.detection(FeatureName.SSL_CERTIFICATE)

    @property
    def mobile_responsive(self) -> FeatureDetection:
        return self.detection(FeatureName.MOBILE_RESPONSIVE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "website_url": self.website_url,
            "has_website": self.has_website,
            "detected_features": {d.feature.value: d.to_dict() for d in self.features},
            "evidence_log": [entry.to_dict() for entry in self.evidence_log],
            "confidence_score": self.confidence_score,
            "audit_timestamp": self.audit_timestamp,
            "paths_attempted": self.paths_attempted,
            "paths_succeeded": self.paths_succeeded,
        }


@dataclass(frozen=True)
class CompanyCandidate:
    """Normalized snapshot of a business returned by a directory lookup."""

    name: str
    candidate_id: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    categories: Tuple[str, ...] = ()
    vertical: Optional[str] = None
    franchise: bool = False
    owner_identified: Optional[bool] = None
    years_in_business: Optional[int] = None
    employee_count: Optional[int] = None
    source: str = "google_places"
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False, compare=False, hash=False)

    @property
    def sort_key(self) -> str:
        return self.candidate_id or self.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "phone": self.phone,
            "email": self.email,
            "website": self.website,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "rating": self.rating,
            "review_count": self.review_count,
            "categories": list(self.categories),
            "vertical": self.vertical,
            "franchise": self.franchise,
            "owner_identified": self.owner_identified,
            "years_in_business": self.years_in_business,
            "employee_count": self.employee_count,
            "source": self.source,
        }


@dataclass(frozen=True)
class Subscores:
    icp: int
    pain: int
    reachability: int
    compliance_risk: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "ICP": self.icp,
            "Pain": self.pain,
            "Reachability": self.reachability,
            "ComplianceRisk": self.compliance_risk,
        }


@dataclass(frozen=True)
class ScoredLead:
    """Business candidate enriched with audit evidence and an explainable score."""

    candidate: CompanyCandidate
    audit: Optional[AuditResult]
    score: int
    subscores: Subscores
    reason_codes: Tuple[str, ...] = ()

    @property
    def has_website(self) -> bool:
        """True when the business lists a website, whether or not the audit reached it."""
        if (self.candidate.website or "").strip():
            return True
        return self.audit is not None and bool(self.audit.website_url)

    def to_dict(self) -> Dict[str, Any]:
        payload = self.candidate.to_dict()
        payload.update(
            {
                "score": self.score,
                "subscores": self.subscores.to_dict(),
                "reasonCodes": list(self.reason_codes),
                "has_website": self.has_website,
                "audit": self.audit.to_dict() if self.audit is not None else None,
            }
        )
        return payload


@dataclass(frozen=True)
class PackageSuggestion:
    code: PackageCode
    reason_codes: Tuple[str, ...]
    confidence: float
    status: str = "draft"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "reasonCodes": list(self.reason_codes),
            "confidence": self.confidence,
            "status": self.status,
        }
