"""Enrichment orchestrator: plan, discover, audit, score, synthesize.

Every stage is wrapped so a failure becomes an ``"<Stage>: <message>"`` entry
in ``PipelineResult.errors`` and the run continues with whatever partial value
the stage produced. Only an invalid initial query is raised to the caller.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from leadscout.core.auditor import DEFAULT_AUDIT_PATHS, WebsiteAuditor
from leadscout.core.config import Settings, get_settings
from leadscout.core.errors import UpstreamCollaboratorError, ValidationError
from leadscout.core.extractor import extract_query_fragment
from leadscout.core.models import AuditResult, CompanyCandidate, ScoredLead, utc_now_iso
from leadscout.core.query import SCHEMA_VERSION, Query, build_default_query, require_valid_query, validate_query
from leadscout.core.scoring import build_scored_lead, lead_facts, matches_constraints, score_lead
from leadscout.etl.transform import to_candidate

logger = logging.getLogger(__name__)

PIPELINE_VERSION = "1.0"
SYNTHESIS_FALLBACK: Dict[str, Any] = {
    "confidence_reasons": ["Evidence synthesis unavailable"],
    "recommendation": "Manual review recommended",
    "ranked_summary": "Synthesis unavailable",
}
MAX_PLACES_QUERIES = 5


class PipelineStage(str, Enum):
    PLANNING = "Planning"
    DISCOVERING = "Discovering"
    AUDITING = "Auditing"
    SCORING = "Scoring"
    SYNTHESIZING = "Synthesizing"
    DONE = "Done"


class Planner(Protocol):
    def plan(self, query_text: str) -> Dict[str, Any]:
        ...


class Discovery(Protocol):
    def search(self, text_query: str, limit: int) -> List[Dict[str, Any]]:
        ...


class Synthesizer(Protocol):
    def synthesize(self, leads: List[Dict[str, Any]], evidence_log: List[Dict[str, Any]]) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class StageResult:
    stage: PipelineStage
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class VerificationPlan:
    places_queries: Tuple[str, ...]
    website_paths_to_check: Tuple[str, ...] = DEFAULT_AUDIT_PATHS
    booking_vendor_patterns: Tuple[str, ...] = ()
    cross_validation_rules: Tuple[Any, ...] = ()
    enrichment_order: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "places_queries": list(self.places_queries),
            "website_paths_to_check": list(self.website_paths_to_check),
            "booking_vendor_patterns": list(self.booking_vendor_patterns),
            "cross_validation_rules": list(self.cross_validation_rules),
            "enrichment_order": list(self.enrichment_order),
        }


def _string_items(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def normalize_plan(raw: Any, default_query: str) -> VerificationPlan:
    """Coerce untrusted planner output; anything missing or malformed falls back to defaults."""
    if not isinstance(raw, Mapping):
        return VerificationPlan(places_queries=(default_query,))

    queries = _string_items(raw.get("places_queries"))[:MAX_PLACES_QUERIES] or [default_query]
    paths = []
    for path in _string_items(raw.get("website_paths_to_check")):
        normalized = path if path.startswith("/") else f"/{path}"
        if normalized not in paths:
            paths.append(normalized)
    vendors = [pattern.lower() for pattern in _string_items(raw.get("booking_vendor_patterns"))]
    rules = raw.get("cross_validation_rules")
    rules = [rule for rule in rules if isinstance(rule, (str, dict))] if isinstance(rules, (list, tuple)) else []
    return VerificationPlan(
        places_queries=tuple(queries),
        website_paths_to_check=tuple(paths) or DEFAULT_AUDIT_PATHS,
        booking_vendor_patterns=tuple(vendors),
        cross_validation_rules=tuple(rules),
        enrichment_order=tuple(_string_items(raw.get("enrichment_order"))),
    )


def default_places_query(query: Query) -> str:
    label = "businesses" if query.vertical == "generic" else query.vertical.replace("_", " ")
    return f"{label} in {query.geo.city}, {query.geo.state}"


def sort_leads(leads: Sequence[ScoredLead], sort_by: str = "score_desc") -> List[ScoredLead]:
    """Order leads; ties break on candidate id, then name."""
    if sort_by == "name_asc":
        return sorted(leads, key=lambda lead: (lead.candidate.name.lower(), lead.candidate.sort_key, lead.candidate.name))
    if sort_by == "score_asc":
        return sorted(leads, key=lambda lead: (lead.score, lead.candidate.sort_key, lead.candidate.name))
    return sorted(leads, key=lambda lead: (-lead.score, lead.candidate.sort_key, lead.candidate.name))


@dataclass
class PipelineResult:
    query: Query
    plan: Optional[VerificationPlan] = None
    leads: List[ScoredLead] = field(default_factory=list)
    evidence_log: List[Dict[str, Any]] = field(default_factory=list)
    synthesis: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stages: List[StageResult] = field(default_factory=list)
    candidates_discovered: int = 0
    candidates_audited: int = 0
    filtered_out: int = 0

    @property
    def pipeline_success(self) -> bool:
        return len(self.leads) > 0

    def record(self, result: StageResult) -> StageResult:
        self.stages.append(result)
        if result.error is not None:
            self.errors.append(f"{result.stage.value}: {result.error}")
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_success": self.pipeline_success,
            "query": self.query.to_dict(),
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "leads": [lead.to_dict() for lead in self.leads],
            "synthesis": self.synthesis,
            "evidence_log": list(self.evidence_log),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metadata": {
                "total_leads": len(self.leads),
                "candidates_discovered": self.candidates_discovered,
                "candidates_audited": self.candidates_audited,
                "filtered_out": self.filtered_out,
                "pipeline_version": PIPELINE_VERSION,
                "timestamp": utc_now_iso(),
                "stages": [
                    {"stage": stage.stage.value, "ok": stage.ok, "error": stage.error} for stage in self.stages
                ],
            },
        }


class _Deadline:
    def __init__(self, seconds: Optional[float], clock: Callable[[], float]) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class EnrichmentOrchestrator:
    """Runs one pipeline per ``run`` call; collaborators are injected."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        planner: Optional[Planner] = None,
        discovery: Optional[Discovery] = None,
        synthesizer: Optional[Synthesizer] = None,
        auditor_factory: Optional[Callable[[], WebsiteAuditor]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.planner = planner
        self.discovery = discovery
        self.synthesizer = synthesizer
        self.auditor_factory = auditor_factory or (lambda: WebsiteAuditor(self.settings))
        self.clock = clock

    # ---------- query resolution ----------

    def resolve_query(
        self, query_text: Optional[str] = None, query: Union[Query, Mapping[str, Any], None] = None
    ) -> Tuple[Query, List[str]]:
        """Turn a structured query or free text into a validated ``Query``.

        Raises ``ValidationError`` when no usable query can be built.
        """
        if isinstance(query, Query):
            return query, []
        if query is not None:
            return require_valid_query(query), []

        text = (query_text or "").strip()
        if not text:
            raise ValidationError([{"path": "query_text", "message": "query text or a structured query is required"}])

        settings = self.settings
        default_location = None
        if settings.default_city and settings.default_state:
            default_location = f"{settings.default_city}, {settings.default_state}"

        extraction = extract_query_fragment(text, default_location=default_location)
        warnings = list(extraction.warnings)
        result = validate_query({"version": SCHEMA_VERSION, **extraction.fragment})
        if result.valid and result.query is not None:
            return result.query, warnings

        if default_location:
            warnings.append(f"Extracted query was invalid; using default query for {default_location}")
            vertical = extraction.fragment.get("vertical", "generic")
            return build_default_query(settings.default_city, settings.default_state, vertical), warnings
        raise ValidationError(list(result.errors))

    # ---------- stages ----------

    def _plan(self, query_text: str, query: Query) -> StageResult:
        default_query = query_text or default_places_query(query)
        fallback = VerificationPlan(places_queries=(default_query,))
        if self.planner is None:
            return StageResult(PipelineStage.PLANNING, fallback)
        try:
            raw = self.planner.plan(default_query)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Planning failed; continuing with default plan: %s", exc)
            return StageResult(PipelineStage.PLANNING, fallback, str(exc) or exc.__class__.__name__)
        return StageResult(PipelineStage.PLANNING, normalize_plan(raw, default_query))

    def _discover(self, plan: VerificationPlan, query: Query) -> StageResult:
        if self.discovery is None:
            return StageResult(PipelineStage.DISCOVERING, [], "no discovery collaborator configured")
        limit = self.settings.max_candidates
        try:
            records = self.discovery.search(plan.places_queries[0], limit)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Discovery failed for %r: %s", plan.places_queries[0], exc)
            return StageResult(PipelineStage.DISCOVERING, [], str(exc) or exc.__class__.__name__)
        if not isinstance(records, list):
            return StageResult(PipelineStage.DISCOVERING, [], "discovery returned a non-list payload")

        candidates: List[CompanyCandidate] = []
        skipped = 0
        for record in records:
            try:
                candidates.append(
                    to_candidate(
                        record,
                        fallback_city=query.geo.city,
                        fallback_state=query.geo.state,
                        vertical=query.vertical,
                    )
                )
            except ValueError as exc:
                skipped += 1
                logger.info("Skipping directory record: %s", exc)
        error = f"skipped {skipped} malformed record(s)" if skipped else None
        return StageResult(PipelineStage.DISCOVERING, candidates, error)

    def _audit_one(self, candidate: CompanyCandidate, plan: VerificationPlan) -> AuditResult:
        with self.auditor_factory() as auditor:
            return auditor.audit(
                candidate.website,
                paths=plan.website_paths_to_check,
                booking_vendors=plan.booking_vendor_patterns,
            )

    def _audit(
        self, candidates: Sequence[CompanyCandidate], plan: VerificationPlan, deadline: _Deadline
    ) -> Tuple[List[Tuple[CompanyCandidate, Optional[AuditResult]]], List[str]]:
        capped = list(candidates)[: self.settings.max_candidates]
        if not capped:
            return [], []

        problems: List[str] = []
        executor = ThreadPoolExecutor(max_workers=max(1, self.settings.audit_concurrency))
        futures: List[Future] = [executor.submit(self._audit_one, candidate, plan) for candidate in capped]
        timed_out = False
        try:
            _, not_done = wait(futures, timeout=deadline.remaining())
            timed_out = bool(not_done)
        finally:
            executor.shutdown(wait=not timed_out, cancel_futures=timed_out)

        audited: List[Tuple[CompanyCandidate, Optional[AuditResult]]] = []
        for candidate, future in zip(capped, futures):
            if not future.done():
                future.cancel()
                problems.append(f"{candidate.name}: audit did not finish before the pipeline deadline")
                audited.append((candidate, None))
                continue
            if future.cancelled():
                problems.append(f"{candidate.name}: audit cancelled at the pipeline deadline")
                audited.append((candidate, None))
                continue
            exc = future.exception()
            if exc is not None:
                logger.warning("Audit failed for %s: %s", candidate.name, exc)
                problems.append(f"{candidate.name}: {exc}")
                audited.append((candidate, None))
                continue
            audited.append((candidate, future.result()))
        return audited, problems

    def _score(
        self, audited: Sequence[Tuple[CompanyCandidate, Optional[AuditResult]]], query: Query
    ) -> Tuple[List[ScoredLead], int, List[str]]:
        leads: List[ScoredLead] = []
        problems: List[str] = []
        filtered = 0
        weights = query.scoring.weights
        for candidate, audit in audited:
            try:
                if not matches_constraints(lead_facts(candidate, audit), query.constraints):
                    filtered += 1
                    continue
                result = score_lead(
                    audit,
                    candidate,
                    weights=weights,
                    optional=query.constraints.optional,
                    target_vertical=query.vertical,
                    compliance_flags=query.compliance_flags,
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Scoring failed for %s", candidate.name)
                problems.append(f"{candidate.name}: {exc}")
                continue
            leads.append(build_scored_lead(candidate, audit, result))
        return sort_leads(leads, query.sort_by), filtered, problems

    def _synthesize(self, leads: Sequence[ScoredLead], evidence_log: List[Dict[str, Any]]) -> StageResult:
        try:
            raw = self.synthesizer.synthesize([lead.to_dict() for lead in leads], evidence_log)
            if not isinstance(raw, Mapping):
                raise UpstreamCollaboratorError("synthesis returned a non-object payload")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Synthesis failed; using fallback: %s", exc)
            return StageResult(PipelineStage.SYNTHESIZING, dict(SYNTHESIS_FALLBACK), str(exc) or exc.__class__.__name__)
        synthesis = dict(SYNTHESIS_FALLBACK)
        synthesis.update({key: raw[key] for key in SYNTHESIS_FALLBACK if key in raw})
        return StageResult(PipelineStage.SYNTHESIZING, synthesis)

    # ---------- entrypoint ----------

    def run(
        self,
        query_text: Optional[str] = None,
        query: Union[Query, Mapping[str, Any], None] = None,
        *,
        synthesize: Optional[bool] = None,
    ) -> PipelineResult:
        resolved, warnings = self.resolve_query(query_text, query)
        deadline = _Deadline(self.settings.pipeline_deadline_seconds, self.clock)
        result = PipelineResult(query=resolved, warnings=warnings)
        logger.info("Pipeline started: vertical=%s geo=%s, %s", resolved.vertical, resolved.geo.city, resolved.geo.state)

        def skipped(stage: PipelineStage, value: Any) -> Optional[StageResult]:
            if deadline.expired():
                return result.record(StageResult(stage, value, "pipeline deadline exceeded; stage skipped"))
            return None

        planning = skipped(PipelineStage.PLANNING, None) or result.record(self._plan((query_text or "").strip(), resolved))
        plan = planning.value or VerificationPlan(places_queries=(default_places_query(resolved),))
        result.plan = plan

        discovering = skipped(PipelineStage.DISCOVERING, []) or result.record(self._discover(plan, resolved))
        candidates = discovering.value or []
        result.candidates_discovered = len(candidates)

        audited: List[Tuple[CompanyCandidate, Optional[AuditResult]]] = []
        if candidates and skipped(PipelineStage.AUDITING, []) is None:
            audited, problems = self._audit(candidates, plan, deadline)
            for problem in problems:
                result.record(StageResult(PipelineStage.AUDITING, None, problem))
            result.record(StageResult(PipelineStage.AUDITING, audited))
        result.candidates_audited = sum(1 for _, audit in audited if audit is not None)
        for _, audit in audited:
            if audit is not None:
                result.evidence_log.extend(entry.to_dict() for entry in audit.evidence_log)

        # Scoring makes no outbound calls; the deadline does not gate it.
        if audited:
            leads, filtered, problems = self._score(audited, resolved)
            for problem in problems:
                result.record(StageResult(PipelineStage.SCORING, None, problem))
            result.record(StageResult(PipelineStage.SCORING, leads))
            result.leads = leads
            result.filtered_out = filtered

        enabled = self.settings.enable_synthesis if synthesize is None else synthesize
        if enabled and self.synthesizer is not None and result.leads:
            synthesizing = skipped(PipelineStage.SYNTHESIZING, dict(SYNTHESIS_FALLBACK)) or result.record(
                self._synthesize(result.leads, result.evidence_log)
            )
            result.synthesis = synthesizing.value

        result.stages.append(StageResult(PipelineStage.DONE, result.pipeline_success))
        logger.info(
            "Pipeline finished: %d lead(s), %d error(s), success=%s",
            len(result.leads),
            len(result.errors),
            result.pipeline_success,
        )
        return result
