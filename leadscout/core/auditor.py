"""Website evidence audit: fetch a bounded set of paths and record what was seen."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

import requests
from bs4 import BeautifulSoup

from leadscout.core.config import Settings, get_settings
from leadscout.core.errors import FetchError
from leadscout.core.models import (
    AuditResult,
    CheckType,
    EvidenceEntry,
    EvidenceSource,
    EvidenceStatus,
    FeatureDetection,
    FeatureName,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATHS: Tuple[str, ...] = (
    "/",
    "/book",
    "/schedule",
    "/appointments",
    "/contact",
    "/booking",
    "/appointment",
    "/reserve",
    "/online-booking",
)

# Ordered: the first pattern found in a page is the one reported.
BOOKING_VENDOR_PATTERNS: Tuple[str, ...] = (
    "calendly",
    "acuityscheduling",
    "squareup.com/appointments",
    "housecallpro",
    "servicetitan",
    "scheduleengine",
    "setmore",
    "thryv",
    "workiz",
    "nexhealth",
    "zocdoc",
    "mindbodyonline",
    "jane.app",
    "tebra.com",
    "getjobber.com",
    "bookedin.com",
    "appointy.com",
    "simplybook.me",
)
CHAT_VENDOR_PATTERNS: Tuple[str, ...] = (
    "intercom",
    "drift",
    "tidio",
    "crisp",
    "livechat",
    "zopim",
    "zendesk",
    "hubspot/js/hs-chat",
    "botpress",
    "manychat",
    "smartsupp",
    "tawk.to",
    "freshchat",
    "olark",
)
PAYMENT_VENDOR_PATTERNS: Tuple[str, ...] = (
    "stripe",
    "paypal",
    "square",
    "authorize.net",
    "braintree",
    "venmo",
    "cashapp",
    "zelle",
    "quickbooks/payments",
)

BOOKING_CTA_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(book|schedule|appointment|reserve)\s+(now|online|appointment)", re.IGNORECASE),
    re.compile(r"\b(online\s*booking|online\s*scheduling)", re.IGNORECASE),
    re.compile(r"\b(request\s*appointment|make\s*appointment)", re.IGNORECASE),
    re.compile(r"<button[^>]*>(.*?)(book|schedule|appointment)(.*?)</button>", re.IGNORECASE),
    re.compile(r"<a[^>]*href[^>]*>(.*?)(book|schedule|appointment)(.*?)</a>", re.IGNORECASE),
)
VIEWPORT_SELECTOR = 'meta[name="viewport"]'

VENDOR_CONFIDENCE = 0.95
CTA_CONFIDENCE = 0.8
VIEWPORT_CONFIDENCE = 0.9
# Absence is only asserted once this many paths came back successfully.
MIN_SUCCESSFUL_PATHS_FOR_ABSENCE = 2
ABSENCE_CONFIDENCE = {
    FeatureName.ONLINE_BOOKING: 0.9,
    FeatureName.CHATBOT: 0.8,
    FeatureName.PAYMENT_PROCESSOR: 0.8,
    FeatureName.MOBILE_RESPONSIVE: 0.7,
}
ABSENCE_CHECK_TYPE = {
    FeatureName.ONLINE_BOOKING: CheckType.BOOKING,
    FeatureName.CHATBOT: CheckType.FEATURES,
    FeatureName.PAYMENT_PROCESSOR: CheckType.FEATURES,
    FeatureName.MOBILE_RESPONSIVE: CheckType.FEATURES,
}
FEATURE_ORDER: Tuple[FeatureName, ...] = (
    FeatureName.ONLINE_BOOKING,
    FeatureName.CHATBOT,
    FeatureName.PAYMENT_PROCESSOR,
    FeatureName.SSL_CERTIFICATE,
    FeatureName.MOBILE_RESPONSIVE,
)


def normalize_website(raw_url: Optional[str]) -> Optional[str]:
    """Return the URL with an https scheme defaulted, or ``None`` when blank."""

    if raw_url is None:
        return None
    url = raw_url.strip()
    if not url:
        return None
    if not url.lower().startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def build_path_url(base_url: str, path: str) -> str:
    if path == "/":
        return base_url
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def merge_vendor_patterns(extra: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Fixed booking vendors first, then any additional distinct patterns."""

    patterns = list(BOOKING_VENDOR_PATTERNS)
    for pattern in extra or ():
        cleaned = (pattern or "").strip().lower()
        if cleaned and cleaned not in patterns:
            patterns.append(cleaned)
    return tuple(patterns)


def _first_vendor(html_lower: str, patterns: Sequence[str]) -> Optional[str]:
    for vendor in patterns:
        if vendor.lower() in html_lower:
            return vendor
    return None


@dataclass
class _DetectionBuilder:
    feature: FeatureName
    found: bool = False
    evidence: List[EvidenceEntry] = field(default_factory=list)
    vendor: Optional[str] = None

    def build(self) -> FeatureDetection:
        return FeatureDetection(
            feature=self.feature,
            found=self.found,
            evidence=tuple(self.evidence),
            vendor_detected=self.vendor,
        )


class WebsiteAuditor:
    """Audit one website per call; paths are fetched sequentially in the given order."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": self.settings.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            }
        )

    def audit(
        self,
        website_url: Optional[str],
        paths: Optional[Sequence[str]] = None,
        booking_vendors: Optional[Iterable[str]] = None,
    ) -> AuditResult:
        normalized = normalize_website(website_url)
        if normalized is None:
            return self._no_website_result()

        paths_to_check = tuple(DEFAULT_AUDIT_PATHS if paths is None else paths)
        vendor_patterns = merge_vendor_patterns(booking_vendors)
        audit_timestamp = utc_now_iso()
        log: List[EvidenceEntry] = []
        detections = {feature: _DetectionBuilder(feature) for feature in FEATURE_ORDER}

        has_ssl = normalized.lower().startswith("https://")
        ssl_entry = EvidenceEntry(
            timestamp=utc_now_iso(),
            check_type=CheckType.WEBSITE,
            source=EvidenceSource.HEADERS,
            url=normalized,
            status=EvidenceStatus.FOUND if has_ssl else EvidenceStatus.NOT_FOUND,
            confidence=1.0,
            snippet="HTTPS URL detected" if has_ssl else "HTTP URL detected",
        )
        log.append(ssl_entry)
        ssl_detection = detections[FeatureName.SSL_CERTIFICATE]
        ssl_detection.found = has_ssl
        ssl_detection.evidence.append(ssl_entry)

        succeeded = 0
        for path in paths_to_check:
            page_url = build_path_url(normalized, path)
            try:
                html = self._fetch_path(page_url)
            except FetchError as exc:
                logger.info("Audit fetch failed for %s: %s", page_url, exc.reason)
                log.append(self._error_entry(page_url, path, exc))
                continue
            succeeded += 1
            self._scan_page(html, page_url, path, vendor_patterns, detections, log)

        if succeeded >= MIN_SUCCESSFUL_PATHS_FOR_ABSENCE:
            for feature, confidence in ABSENCE_CONFIDENCE.items():
                detection = detections[feature]
                if detection.found:
                    continue
                entry = EvidenceEntry(
                    timestamp=utc_now_iso(),
                    check_type=ABSENCE_CHECK_TYPE[feature],
                    source=EvidenceSource.RENDERED_CONTENT,
                    url=normalized,
                    status=EvidenceStatus.NOT_FOUND,
                    confidence=confidence,
                    snippet=f"No {feature.value.replace('_', ' ')} detected across {succeeded} pages",
                )
                detection.evidence.append(entry)
                log.append(entry)

        attempted = len(paths_to_check)
        confidence_score = succeeded / attempted if attempted else 0.0
        logger.debug(
            "Audited %s: %s/%s paths fetched, %s evidence entries", normalized, succeeded, attempted, len(log)
        )
        return AuditResult(
            website_url=normalized,
            has_website=succeeded > 0,
            features=tuple(detections[feature].build() for feature in FEATURE_ORDER),
            evidence_log=tuple(log),
            confidence_score=confidence_score,
            audit_timestamp=audit_timestamp,
            paths_attempted=attempted,
            paths_succeeded=succeeded,
        )

    def _no_website_result(self) -> AuditResult:
        timestamp = utc_now_iso()
        entry = EvidenceEntry(
            timestamp=timestamp,
            check_type=CheckType.WEBSITE,
            source=EvidenceSource.RENDERED_CONTENT,
            url="N/A",
            status=EvidenceStatus.NOT_FOUND,
            confidence=1.0,
            snippet="No website URL provided",
        )
        return AuditResult(
            website_url="",
            has_website=False,
            features=tuple(FeatureDetection(feature=feature, evidence=(entry,)) for feature in FEATURE_ORDER),
            evidence_log=(entry,),
            confidence_score=1.0,
            audit_timestamp=timestamp,
        )

    def _fetch_path(self, url: str) -> str:
        try:
            response = self.session.get(url, timeout=self.settings.request_timeout, allow_redirects=True)
        except requests.Timeout as exc:
            raise FetchError(url, f"timed out after {self.settings.request_timeout}s") from exc
        except requests.RequestException as exc:
            raise FetchError(url, f"fetch error: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise FetchError(url, f"HTTP {response.status_code} error", status_code=response.status_code)
        return response.text or ""

    @staticmethod
    def _error_entry(url: str, path: str, exc: FetchError) -> EvidenceEntry:
        # A status code is a definite answer from the server; a network failure is not.
        return EvidenceEntry(
            timestamp=utc_now_iso(),
            check_type=CheckType.WEBSITE,
            source=EvidenceSource.HEADERS if exc.status_code is not None else EvidenceSource.RENDERED_CONTENT,
            url=url,
            path=path,
            status=EvidenceStatus.ERROR,
            confidence=1.0 if exc.status_code is not None else 0.5,
            snippet=exc.reason,
        )

    def _scan_page(self, html, page_url, path, vendor_patterns, detections, log) -> None:
        html_lower = html.lower()

        mobile = detections[FeatureName.MOBILE_RESPONSIVE]
        if not mobile.found and _has_viewport(html):
            mobile.found = True
            entry = self._found_entry(
                CheckType.FEATURES,
                EvidenceSource.RENDERED_CONTENT,
                page_url,
                path,
                VIEWPORT_CONFIDENCE,
                "Viewport meta tag detected",
                selector=VIEWPORT_SELECTOR,
            )
            mobile.evidence.append(entry)
            log.append(entry)

        booking = detections[FeatureName.ONLINE_BOOKING]
        vendor_tables = (
            (booking, CheckType.BOOKING, vendor_patterns, "booking system"),
            (detections[FeatureName.CHATBOT], CheckType.FEATURES, CHAT_VENDOR_PATTERNS, "chat widget"),
            (detections[FeatureName.PAYMENT_PROCESSOR], CheckType.FEATURES, PAYMENT_VENDOR_PATTERNS, "payment processor"),
        )
        for detection, check_type, patterns, label in vendor_tables:
            vendor = _first_vendor(html_lower, patterns)
            if vendor is None:
                continue
            entry = self._found_entry(
                check_type,
                EvidenceSource.VENDOR_SIGNATURE,
                page_url,
                path,
                VENDOR_CONFIDENCE,
                f"{vendor} {label} detected in HTML",
            )
            detection.found = True
            if detection.vendor is None:
                detection.vendor = vendor
            detection.evidence.append(entry)
            log.append(entry)

        if booking.found:
            return
        for pattern in BOOKING_CTA_PATTERNS:
            match = pattern.search(html)
            if match:
                booking.found = True
                entry = self._found_entry(
                    CheckType.BOOKING,
                    EvidenceSource.RENDERED_CONTENT,
                    page_url,
                    path,
                    CTA_CONFIDENCE,
                    match.group(0)[:100],
                )
                booking.evidence.append(entry)
                log.append(entry)
                break

    @staticmethod
    def _found_entry(check_type, source, url, path, confidence, snippet, *, selector=None) -> EvidenceEntry:
        return EvidenceEntry(
            timestamp=utc_now_iso(),
            check_type=check_type,
            source=source,
            url=url,
            path=path,
            selector=selector,
            status=EvidenceStatus.FOUND,
            confidence=confidence,
            snippet=snippet,
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "WebsiteAuditor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.close()


def _has_viewport(html: str) -> bool:
    if "viewport" not in html.lower():
        return False
    soup = BeautifulSoup(html, "html.parser")
    return soup.find("meta", attrs={"name": re.compile(r"^viewport$", re.IGNORECASE)}) is not None
