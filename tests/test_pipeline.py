import threading

import pytest

from leadscout.core.auditor import DEFAULT_AUDIT_PATHS, WebsiteAuditor
from leadscout.core.config import Settings
from leadscout.core.errors import UpstreamCollaboratorError, ValidationError
from leadscout.core.models import CompanyCandidate, ScoredLead, Subscores
from leadscout.core.pipeline import (
    SYNTHESIS_FALLBACK,
    EnrichmentOrchestrator,
    PipelineStage,
    normalize_plan,
    sort_leads,
)

PLACES = [
    {
        "id": "smile-1",
        "displayName": {"text": "Smile Dental"},
        "formattedAddress": "1 Main St, Columbia, SC 29201, USA",
        "websiteUri": "https://smile.example",
        "nationalPhoneNumber": "(803) 555-0100",
        "rating": 4.6,
        "userRatingCount": 120,
        "types": ["dentist"],
    },
    {
        "id": "bright-2",
        "displayName": {"text": "Bright Smiles"},
        "formattedAddress": "2 Oak St, Columbia, SC 29201, USA",
        "userRatingCount": 60,
        "types": ["dentist"],
    },
]


class DummyResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class DummySession:
    def __init__(self, pages):
        self.pages = pages
        self.headers = {}

    def get(self, url, timeout=None, allow_redirects=True):
        if url in self.pages:
            return DummyResponse(text=self.pages[url])
        return DummyResponse(status_code=404)

    def close(self):
        pass


SITE_PAGES = {
    "https://smile.example": "<html><body>Welcome to Smile Dental</body></html>",
    "https://smile.example/contact": "<html><body>Call us</body></html>",
}


class FailingPlanner:
    def plan(self, query_text):
        raise UpstreamCollaboratorError("model unavailable")


class StaticPlanner:
    def __init__(self, plan, on_call=None):
        self._plan = plan
        self._on_call = on_call

    def plan(self, query_text):
        if self._on_call:
            self._on_call()
        return self._plan


class RecordingDiscovery:
    def __init__(self, records=None, error=None):
        self.records = PLACES if records is None else records
        self.error = error
        self.queries = []

    def search(self, text_query, limit):
        self.queries.append((text_query, limit))
        if self.error:
            raise self.error
        return list(self.records)


class StubSynthesizer:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = 0

    def synthesize(self, leads, evidence_log):
        self.calls += 1
        if self.error:
            raise self.error
        return self.payload


class RecordingAuditor:
    """Wraps a real auditor and records the paths each audit was asked to check."""

    calls = []

    def __init__(self, settings):
        self._inner = WebsiteAuditor(settings, session=DummySession(SITE_PAGES))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._inner.close()

    def audit(self, website_url, paths=None, booking_vendors=None):
        RecordingAuditor.calls.append((website_url, tuple(paths), tuple(booking_vendors)))
        return self._inner.audit(website_url, paths=paths, booking_vendors=booking_vendors)


@pytest.fixture(autouse=True)
def reset_auditor_calls():
    RecordingAuditor.calls = []


def _settings(**overrides):
    values = dict(
        max_candidates=10,
        audit_concurrency=2,
        pipeline_deadline_seconds=None,
        enable_synthesis=True,
    )
    values.update(overrides)
    return Settings(**values)


def _orchestrator(settings=None, **kwargs):
    settings = settings or _settings()
    kwargs.setdefault("discovery", RecordingDiscovery())
    kwargs.setdefault("auditor_factory", lambda: RecordingAuditor(settings))
    return EnrichmentOrchestrator(settings, **kwargs)


def test_planner_failure_falls_back_to_default_plan():
    discovery = RecordingDiscovery()
    orchestrator = _orchestrator(planner=FailingPlanner(), discovery=discovery)

    result = orchestrator.run("dentists in Columbia, SC")

    assert result.errors == ["Planning: model unavailable"]
    assert discovery.queries == [("dentists in Columbia, SC", 10)]
    assert result.plan.website_paths_to_check == DEFAULT_AUDIT_PATHS
    assert {call[0] for call in RecordingAuditor.calls} == {None, "https://smile.example"}
    assert all(call[1] == DEFAULT_AUDIT_PATHS for call in RecordingAuditor.calls)
    assert result.candidates_discovered == 2
    assert result.candidates_audited == 2
    assert result.pipeline_success is True
    assert {lead.candidate.name for lead in result.leads} == {"Smile Dental", "Bright Smiles"}

    stages = result.to_dict()["metadata"]["stages"]
    assert stages[0] == {"stage": "Planning", "ok": False, "error": "model unavailable"}
    assert stages[-1]["stage"] == "Done"


def test_run_produces_sorted_leads_and_evidence():
    result = _orchestrator().run("dentists in Columbia, SC")

    scores = [lead.score for lead in result.leads]
    assert scores == sorted(scores, reverse=True)
    assert result.errors == []
    assert result.evidence_log
    assert all(0.0 <= entry["confidence"] <= 1.0 for entry in result.evidence_log)
    smile = next(lead for lead in result.leads if lead.candidate.name == "Smile Dental")
    assert smile.audit.online_booking.has_negative_evidence()
    assert "no_booking_confirmed" in smile.reason_codes

    payload = result.to_dict()
    assert payload["pipeline_success"] is True
    assert payload["metadata"]["total_leads"] == 2
    assert payload["query"]["geo"] == {"city": "Columbia", "state": "SC", "radius_km": 25}


def test_planner_plan_drives_discovery_and_audit():
    plan = {
        "places_queries": ["dentists Columbia SC", "dental clinic Columbia SC"],
        "website_paths_to_check": ["/", "contact"],
        "booking_vendor_patterns": ["Vagaro"],
    }
    discovery = RecordingDiscovery()

    result = _orchestrator(planner=StaticPlanner(plan), discovery=discovery).run("dentists in Columbia, SC")

    assert discovery.queries[0][0] == "dentists Columbia SC"
    assert result.plan.website_paths_to_check == ("/", "/contact")
    assert all(call[1] == ("/", "/contact") for call in RecordingAuditor.calls)
    assert all(call[2] == ("vagaro",) for call in RecordingAuditor.calls)


def test_discovery_failure_is_recorded_and_run_continues():
    synthesizer = StubSynthesizer(payload={})
    orchestrator = _orchestrator(discovery=RecordingDiscovery(error=RuntimeError("quota exceeded")), synthesizer=synthesizer)

    result = orchestrator.run("dentists in Columbia, SC")

    assert result.errors == ["Discovering: quota exceeded"]
    assert result.leads == []
    assert result.pipeline_success is False
    assert synthesizer.calls == 0


def test_missing_discovery_collaborator_is_an_error():
    orchestrator = EnrichmentOrchestrator(_settings(), discovery=None)

    result = orchestrator.run("dentists in Columbia, SC")

    assert result.errors == ["Discovering: no discovery collaborator configured"]
    assert result.pipeline_success is False


def test_malformed_records_are_skipped():
    records = PLACES + [{"displayName": {}}, "not-a-record"]

    result = _orchestrator(discovery=RecordingDiscovery(records=records)).run("dentists in Columbia, SC")

    assert result.candidates_discovered == 2
    assert result.errors == ["Discovering: skipped 2 malformed record(s)"]


def test_audit_failure_keeps_lead_without_audit():
    class ExplodingAuditor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return None

        def audit(self, website_url, paths=None, booking_vendors=None):
            if website_url:
                raise RuntimeError("tls handshake failed")
            return WebsiteAuditor(_settings(), session=DummySession({})).audit(website_url)

    result = _orchestrator(auditor_factory=ExplodingAuditor).run("dentists in Columbia, SC")

    assert result.errors == ["Auditing: Smile Dental: tls handshake failed"]
    assert result.candidates_audited == 1
    smile = next(lead for lead in result.leads if lead.candidate.name == "Smile Dental")
    assert smile.audit is None
    assert "not_audited" in smile.reason_codes


def test_constraints_filter_leads():
    query = {
        "version": 1,
        "vertical": "dentist",
        "geo": {"city": "Columbia", "state": "SC"},
        "constraints": {"must": [{"no_website": True}]},
    }

    result = _orchestrator().run(query=query)

    assert [lead.candidate.name for lead in result.leads] == ["Bright Smiles"]
    assert result.filtered_out == 1
    assert result.to_dict()["metadata"]["filtered_out"] == 1


def test_synthesis_merges_over_fallback():
    synthesizer = StubSynthesizer(payload={"recommendation": "Call Smile Dental first", "extra": True})

    result = _orchestrator(synthesizer=synthesizer).run("dentists in Columbia, SC")

    assert result.synthesis == {
        "confidence_reasons": SYNTHESIS_FALLBACK["confidence_reasons"],
        "recommendation": "Call Smile Dental first",
        "ranked_summary": SYNTHESIS_FALLBACK["ranked_summary"],
    }


def test_synthesis_failure_uses_fallback():
    synthesizer = StubSynthesizer(error=UpstreamCollaboratorError("bad json"))

    result = _orchestrator(synthesizer=synthesizer).run("dentists in Columbia, SC")

    assert result.synthesis == SYNTHESIS_FALLBACK
    assert result.errors == ["Synthesizing: bad json"]
    assert result.pipeline_success is True


def test_synthesis_can_be_disabled_per_run():
    synthesizer = StubSynthesizer(payload={})

    result = _orchestrator(synthesizer=synthesizer).run("dentists in Columbia, SC", synthesize=False)

    assert synthesizer.calls == 0
    assert result.synthesis is None


def test_deadline_skips_remaining_stages():
    clock = {"now": 0.0}

    def advance():
        clock["now"] = 100.0

    discovery = RecordingDiscovery()
    orchestrator = _orchestrator(
        _settings(pipeline_deadline_seconds=10.0),
        planner=StaticPlanner({}, on_call=advance),
        discovery=discovery,
        clock=lambda: clock["now"],
    )

    result = orchestrator.run("dentists in Columbia, SC")

    assert discovery.queries == []
    assert result.errors == ["Discovering: pipeline deadline exceeded; stage skipped"]
    assert result.pipeline_success is False


def test_unfinished_audits_are_reported_at_deadline():
    release = threading.Event()

    class SlowAuditor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return None

        def audit(self, website_url, paths=None, booking_vendors=None):
            if website_url:
                release.wait(5)
            return WebsiteAuditor(_settings(), session=DummySession({})).audit(None)

    orchestrator = _orchestrator(_settings(pipeline_deadline_seconds=0.5), auditor_factory=SlowAuditor)
    try:
        result = orchestrator.run("dentists in Columbia, SC")
    finally:
        release.set()

    assert result.errors == ["Auditing: Smile Dental: audit did not finish before the pipeline deadline"]
    assert len(result.leads) == 2


def test_free_text_falls_back_to_default_query():
    orchestrator = _orchestrator(_settings(default_city="Columbia", default_state="SC"))

    query, warnings = orchestrator.resolve_query("dentists in Columbia, SC with rating above 9")

    assert query.vertical == "dentist"
    assert query.constraints.must == ()
    assert warnings == ["Extracted query was invalid; using default query for Columbia, SC"]


def test_invalid_free_text_without_defaults_raises():
    with pytest.raises(ValidationError):
        _orchestrator().run("dentists somewhere nice")


def test_invalid_structured_query_raises():
    with pytest.raises(ValidationError):
        _orchestrator().run(query={"version": 1, "geo": {"city": "Columbia"}})


def test_normalize_plan_coerces_untrusted_output():
    plan = normalize_plan(
        {"places_queries": ["a", "", 3, "b", "c", "d", "e", "f"], "website_paths_to_check": "nope"},
        "fallback",
    )

    assert plan.places_queries == ("a", "b", "c", "d", "e")
    assert plan.website_paths_to_check == DEFAULT_AUDIT_PATHS
    assert normalize_plan(None, "fallback").places_queries == ("fallback",)


def test_sort_leads_breaks_ties_on_candidate_id():
    subscores = Subscores(icp=0, pain=0, reachability=0, compliance_risk=0)
    leads = [
        ScoredLead(CompanyCandidate(name="Zed", candidate_id="b"), None, 50, subscores),
        ScoredLead(CompanyCandidate(name="Amy", candidate_id="a"), None, 50, subscores),
        ScoredLead(CompanyCandidate(name="Top", candidate_id="c"), None, 90, subscores),
    ]

    assert [lead.candidate.name for lead in sort_leads(leads)] == ["Top", "Amy", "Zed"]
    assert [lead.candidate.name for lead in sort_leads(leads, "score_asc")] == ["Amy", "Zed", "Top"]
    assert [lead.candidate.name for lead in sort_leads(leads, "name_asc")] == ["Amy", "Top", "Zed"]
    assert PipelineStage.SCORING.value == "Scoring"
