"""Deterministic lead scoring, constraint matching and package recommendation.

Nothing in this module performs I/O. Identical inputs always produce the same
score, subscores, reason codes and suggestions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from leadscout.core.models import (
    AuditResult,
    CompanyCandidate,
    FeatureDetection,
    PackageCode,
    PackageSuggestion,
    ScoredLead,
    Subscores,
)
from leadscout.core.query import (
    DEFAULT_COMPLIANCE_FLAGS,
    DEFAULT_PROFILE,
    WEIGHT_KEYS,
    ConstraintPredicate,
    Constraints,
    get_profile_weights,
)

logger = logging.getLogger(__name__)

OPTIONAL_MATCH_BONUS = 5
RECOMMENDATION_FLOOR = 0.55
RECEPTIONIST_REVIEW_THRESHOLD = 50
FOLLOW_UP_REVIEW_THRESHOLD = 80

# All-party consent states for call recording.
TWO_PARTY_CONSENT_STATES = frozenset(
    {"CA", "CT", "DE", "FL", "IL", "MD", "MA", "MI", "MT", "NV", "NH", "OR", "PA", "WA"}
)

PredicateLike = Union[ConstraintPredicate, Mapping[str, Any]]


@dataclass(frozen=True)
class LeadScore:
    score: int
    subscores: Subscores
    reason_codes: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "subscores": self.subscores.to_dict(),
            "reasonCodes": list(self.reason_codes),
        }


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, value)))


def _resolve_weights(weights: Optional[Mapping[str, float]]) -> Dict[str, float]:
    resolved = dict(zip(WEIGHT_KEYS, get_profile_weights(DEFAULT_PROFILE)))
    if weights:
        resolved.update({key: float(value) for key, value in weights.items() if key in WEIGHT_KEYS})
    return resolved


def _website_state(candidate: CompanyCandidate, audit: Optional[AuditResult]) -> str:
    """One of ``present``, ``unreachable`` or ``absent``."""

    if audit is not None:
        if audit.has_website:
            return "present"
        return "unreachable" if audit.website_url else "absent"
    return "present" if (candidate.website or "").strip() else "absent"


def _review_points(count: Optional[int]) -> int:
    if not count or count <= 0:
        return 0
    if count <= 10:
        points = min(count * 0.5, 5)
    elif count <= 50:
        points = 5 + min((count - 10) * 0.25, 10)
    else:
        points = 15 + min((count - 50) * 0.2, 10)
    return int(round(points))


# ---------- subscores ----------


def icp_subscore(candidate: CompanyCandidate, target_vertical: Optional[str] = None) -> Tuple[int, List[str]]:
    reasons: List[str] = []
    points = 20

    if target_vertical and target_vertical != "generic":
        if candidate.vertical == target_vertical:
            points += 30
            reasons.append("vertical_match")
    else:
        points += 15

    review_points = _review_points(candidate.review_count)
    points += review_points
    if (candidate.review_count or 0) > RECEPTIONIST_REVIEW_THRESHOLD:
        reasons.append("high_reviews")

    rating = candidate.rating
    if rating is not None:
        if rating >= 4.5:
            points += 15
            reasons.append("strong_rating")
        elif rating >= 4.0:
            points += 10
        elif rating >= 3.8:
            points += 7

    if not candidate.franchise:
        points += 10
        reasons.append("independent_business")
    if candidate.years_in_business is not None and candidate.years_in_business >= 5:
        points += 10
        reasons.append("established_business")
    if candidate.employee_count is not None and 2 <= candidate.employee_count <= 50:
        points += 10
        reasons.append("small_team")
    return _clamp(points), reasons


def pain_subscore(candidate: CompanyCandidate, audit: Optional[AuditResult]) -> Tuple[int, List[str]]:
    reasons: List[str] = []
    state = _website_state(candidate, audit)
    if state == "absent":
        return 60, ["no_website"]
    if state == "unreachable":
        return 50, ["website_unreachable"]
    if audit is None:
        # Website listed but never audited: nothing is known about its tooling.
        return 0, ["not_audited"]

    points = 0
    booking = audit.online_booking
    if not booking.found:
        points += 35
        reasons.append("no_online_booking")
        if booking.has_negative_evidence():
            points += 15
            reasons.append("no_booking_confirmed")
    chatbot = audit.chatbot
    if not chatbot.found:
        points += 15 if chatbot.has_negative_evidence() else 8
        reasons.append("no_chatbot")
    if not audit.ssl_certificate.found:
        points += 10
        reasons.append("no_ssl")
    if not audit.mobile_responsive.found:
        points += 10
        reasons.append("not_mobile_responsive")
    if not audit.payment_processor.found:
        points += 5
        reasons.append("no_payment_processor")
    return _clamp(points), reasons


def reachability_subscore(candidate: CompanyCandidate, audit: Optional[AuditResult]) -> Tuple[int, List[str]]:
    reasons: List[str] = []
    points = 0
    if candidate.phone:
        points += 35
        reasons.append("phone_listed")
    if candidate.email:
        points += 25
        reasons.append("email_listed")
    if candidate.owner_identified:
        points += 25
        reasons.append("owner_identified")
    if _website_state(candidate, audit) == "present":
        points += 15
    return _clamp(points), reasons


def compliance_risk_subscore(
    candidate: CompanyCandidate, compliance_flags: Sequence[str] = DEFAULT_COMPLIANCE_FLAGS
) -> Tuple[int, List[str]]:
    reasons: List[str] = []
    points = 10
    if candidate.franchise:
        points += 30
        reasons.append("franchise")
    state = (candidate.state or "").upper()
    if "two_party_recording_state_notes" in compliance_flags and state in TWO_PARTY_CONSENT_STATES:
        points += 25
        reasons.append("two_party_recording_state")
    # No consent data is ever collected for a lead, so a listed phone always needs a DNC check.
    if "respect_dnc" in compliance_flags and candidate.phone:
        points += 10
        reasons.append("dnc_check_required")
    return _clamp(points), reasons


# ---------- predicates ----------


def _detection_fact(detection: FeatureDetection) -> Optional[bool]:
    if detection.found:
        return True
    if detection.has_negative_evidence():
        return False
    return None


def lead_facts(candidate: CompanyCandidate, audit: Optional[AuditResult] = None) -> Dict[str, Any]:
    """Known values per predicate key; ``None`` marks an unknown fact."""

    state = _website_state(candidate, audit)
    facts: Dict[str, Any] = {
        "has_website": state == "present",
        "no_website": state == "absent",
        "owner_identified": candidate.owner_identified,
        "franchise": candidate.franchise,
        "review_count": candidate.review_count,
        "rating": candidate.rating,
        "years_in_business": candidate.years_in_business,
        "employee_count": candidate.employee_count,
        "has_chatbot": None,
        "has_online_booking": None,
        "has_payment_processor": None,
        "has_ssl": None,
        "mobile_responsive": None,
    }
    if audit is not None:
        facts["has_chatbot"] = _detection_fact(audit.chatbot)
        facts["has_online_booking"] = _detection_fact(audit.online_booking)
        facts["has_payment_processor"] = _detection_fact(audit.payment_processor)
        facts["has_ssl"] = _detection_fact(audit.ssl_certificate)
        facts["mobile_responsive"] = _detection_fact(audit.mobile_responsive)
    elif state == "absent":
        for key in ("has_chatbot", "has_online_booking", "has_payment_processor", "has_ssl", "mobile_responsive"):
            facts[key] = False
    return facts


def _check_key(key: str, expected: Any, facts: Mapping[str, Any]) -> Optional[bool]:
    if key in ("reviews_count_gt", "reviews_count_lt"):
        actual = facts.get("review_count")
        if actual is None:
            return None
        return actual > expected if key.endswith("_gt") else actual < expected
    if key in ("rating_gt", "rating_lt"):
        actual = facts.get("rating")
        if actual is None:
            return None
        return actual > expected if key.endswith("_gt") else actual < expected
    if key == "years_in_business_gt":
        actual = facts.get("years_in_business")
        return None if actual is None else actual > expected
    if key == "employee_count_range":
        actual = facts.get("employee_count")
        if actual is None:
            return None
        low, high = expected
        return low <= actual <= high
    actual = facts.get(key)
    if actual is None:
        return None
    return bool(actual) == bool(expected)


def evaluate_predicate(predicate: PredicateLike, facts: Mapping[str, Any]) -> Optional[bool]:
    """AND every key of the predicate.

    Returns ``False`` if any key is contradicted, ``None`` if none is
    contradicted but at least one refers to an unknown fact, ``True`` otherwise.
    An empty predicate is ``True``.
    """

    values = predicate.to_dict() if isinstance(predicate, ConstraintPredicate) else dict(predicate)
    unknown = False
    for key in sorted(values):
        outcome = _check_key(key, values[key], facts)
        if outcome is False:
            return False
        if outcome is None:
            unknown = True
    return None if unknown else True


def matches_constraints(facts: Mapping[str, Any], constraints: Constraints) -> bool:
    if any(evaluate_predicate(predicate, facts) is not True for predicate in constraints.must):
        return False
    return not any(evaluate_predicate(predicate, facts) is True for predicate in constraints.exclude)


# ---------- scoring ----------


def score_lead(
    audit: Optional[AuditResult],
    candidate: CompanyCandidate,
    weights: Optional[Mapping[str, float]] = None,
    optional: Sequence[PredicateLike] = (),
    *,
    target_vertical: Optional[str] = None,
    compliance_flags: Sequence[str] = DEFAULT_COMPLIANCE_FLAGS,
) -> LeadScore:
    resolved = _resolve_weights(weights)
    icp, icp_reasons = icp_subscore(candidate, target_vertical)
    pain, pain_reasons = pain_subscore(candidate, audit)
    reach, reach_reasons = reachability_subscore(candidate, audit)
    risk, risk_reasons = compliance_risk_subscore(candidate, compliance_flags)

    weighted = (
        icp * resolved["icp"]
        + pain * resolved["pain"]
        + reach * resolved["reachability"]
        - risk * resolved["compliance_risk"]
    )
    reasons = icp_reasons + pain_reasons + reach_reasons + risk_reasons

    facts = lead_facts(candidate, audit)
    matched = sum(1 for predicate in optional if evaluate_predicate(predicate, facts) is True)
    if matched:
        reasons.append(f"optional_matches_{matched}")

    score = _clamp(round(weighted) + OPTIONAL_MATCH_BONUS * matched)
    logger.debug("Scored %s: %s (icp=%s pain=%s reach=%s risk=%s)", candidate.name, score, icp, pain, reach, risk)
    return LeadScore(
        score=score,
        subscores=Subscores(icp=icp, pain=pain, reachability=reach, compliance_risk=risk),
        reason_codes=tuple(reasons),
    )


def build_scored_lead(candidate: CompanyCandidate, audit: Optional[AuditResult], result: LeadScore) -> ScoredLead:
    return ScoredLead(
        candidate=candidate,
        audit=audit,
        score=result.score,
        subscores=result.subscores,
        reason_codes=result.reason_codes,
    )


# ---------- recommendation ----------


def _recommendation_inputs(lead: Union[ScoredLead, Mapping[str, Any]]) -> Tuple[bool, bool, int]:
    if isinstance(lead, ScoredLead):
        booking_found = lead.audit is not None and lead.audit.online_booking.found
        return lead.has_website, booking_found, lead.candidate.review_count or 0

    audit = lead.get("audit") or {}
    features = lead.get("detected_features") or audit.get("detected_features") or {}
    booking_found = bool((features.get("online_booking") or {}).get("found"))
    if "has_website" in lead:
        has_website = bool(lead["has_website"])
    else:
        has_website = bool(lead.get("website") or lead.get("website_url") or audit.get("website_url"))
    reviews = lead.get("review_count")
    if not isinstance(reviews, int):
        reviews = lead.get("user_rating_count")
    return has_website, booking_found, reviews if isinstance(reviews, int) else 0


def recommend_packages(lead: Union[ScoredLead, Mapping[str, Any]]) -> List[PackageSuggestion]:
    """Threshold rules mapping a lead to draft package suggestions."""

    has_website, booking_found, reviews = _recommendation_inputs(lead)
    suggestions: List[PackageSuggestion] = []
    if not has_website:
        suggestions.append(PackageSuggestion(PackageCode.WEB_PRESENCE, ("no_website",), 0.9))
    if not booking_found and reviews > RECEPTIONIST_REVIEW_THRESHOLD:
        suggestions.append(PackageSuggestion(PackageCode.RECEPTIONIST, ("no_booking", "high_reviews"), 0.8))
    if has_website and not booking_found:
        suggestions.append(PackageSuggestion(PackageCode.WEB_PRESENCE, ("has_website_no_booking",), 0.6))
    if reviews > FOLLOW_UP_REVIEW_THRESHOLD:
        suggestions.append(PackageSuggestion(PackageCode.FOLLOW_UP, ("inbound_volume_likely",), 0.6))
    return [suggestion for suggestion in suggestions if suggestion.confidence >= RECOMMENDATION_FLOOR]
