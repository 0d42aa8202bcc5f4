"""HTTP entrypoint exposing validation, audit, scoring, recipes and full pipeline runs."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from leadscout.core.auditor import WebsiteAuditor
from leadscout.core.config import get_settings
from leadscout.core.errors import NotFoundError, ValidationError
from leadscout.core.extractor import extract_query_fragment
from leadscout.core.models import AuditResult
from leadscout.core.query import DEFAULT_COMPLIANCE_FLAGS, parse_predicates, parse_scoring, validate_query
from leadscout.core.recipes import compile_recipe
from leadscout.core.scoring import recommend_packages, score_lead
from leadscout.etl.transform import to_candidate
from leadscout.jobs.run_pipeline import build_orchestrator

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App ----------
app = Flask(__name__)


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _bad_request(path: str, message: str) -> ValidationError:
    return ValidationError([{"path": path, "message": message}])


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Reads settings only; never touches collaborators."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": settings.worker_port,
                "discovery_provider": settings.discovery_provider,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/validate")
def validate() -> Any:
    result = validate_query(request.get_json(silent=True))
    return jsonify(result.to_dict()), 200 if result.valid else 400


@app.post("/parse")
def parse() -> Any:
    """Free text -> partial query fragment plus warnings."""
    payload = _payload()
    text = payload.get("text")
    if not isinstance(text, str) or not text.strip():
        raise _bad_request("text", "text is required")
    default_location = payload.get("default_location")
    result = extract_query_fragment(text, default_location=default_location if isinstance(default_location, str) else None)
    return jsonify({"data": result.to_dict()}), 200


@app.post("/audit")
def audit_website() -> Any:
    payload = _payload()
    website_url = payload.get("website_url")
    if website_url is not None and not isinstance(website_url, str):
        raise _bad_request("website_url", "website_url must be a string")
    paths = payload.get("paths")
    if paths is not None and (not isinstance(paths, list) or not all(isinstance(p, str) for p in paths)):
        raise _bad_request("paths", "paths must be a list of strings")

    with WebsiteAuditor() as auditor:
        result = auditor.audit(website_url, paths=paths)
    return jsonify({"data": {"audit_result": result.to_dict()}}), 200


@app.post("/score")
def score() -> Any:
    """Score one lead record, optionally against a previously produced audit."""
    payload = _payload()
    lead = payload.get("lead")
    if not isinstance(lead, dict):
        raise _bad_request("lead", "lead must be an object")
    vertical = payload.get("vertical")
    try:
        candidate = to_candidate(lead, vertical=vertical if isinstance(vertical, str) else None)
    except ValueError as exc:
        raise _bad_request("lead", str(exc)) from exc

    audit = None
    raw_audit = payload.get("audit")
    if raw_audit is not None:
        if not isinstance(raw_audit, dict):
            raise _bad_request("audit", "audit must be an object")
        try:
            audit = AuditResult.from_dict(raw_audit)
        except (KeyError, TypeError, ValueError) as exc:
            raise _bad_request("audit", f"malformed audit: {exc}") from exc

    scoring = parse_scoring(payload.get("scoring"))
    optional = parse_predicates(payload.get("optional"), "optional")
    flags = payload.get("compliance_flags")
    if flags is None:
        flags = DEFAULT_COMPLIANCE_FLAGS
    elif not isinstance(flags, list) or not all(isinstance(flag, str) for flag in flags):
        raise _bad_request("compliance_flags", "compliance_flags must be a list of strings")

    result = score_lead(
        audit,
        candidate,
        weights=scoring.weights,
        optional=optional,
        target_vertical=vertical if isinstance(vertical, str) else None,
        compliance_flags=tuple(flags),
    )
    return jsonify({"data": {"name": candidate.name, **result.to_dict()}}), 200


@app.post("/recommend")
def recommend() -> Any:
    lead = _payload().get("lead")
    if not isinstance(lead, dict):
        raise _bad_request("lead", "lead must be an object")
    suggestions = recommend_packages(lead)
    return jsonify({"data": {"suggestions": [suggestion.to_dict() for suggestion in suggestions]}}), 200


@app.post("/recipe")
def recipe() -> Any:
    payload = _payload()
    code = payload.get("package")
    lead = payload.get("lead")
    if not isinstance(code, str) or not code:
        raise _bad_request("package", "package is required")
    if not isinstance(lead, dict):
        raise _bad_request("lead", "lead must be an object")
    return jsonify({"data": compile_recipe(code, lead).to_dict()}), 200


@app.post("/pipeline")
def run_pipeline() -> Any:
    """Run the full pipeline synchronously; body holds ``query_text`` or ``query``."""
    payload = _payload()
    query_text = payload.get("query_text")
    query = payload.get("query")
    if query_text is not None and not isinstance(query_text, str):
        raise _bad_request("query_text", "query_text must be a string")
    if query is not None and not isinstance(query, dict):
        raise _bad_request("query", "query must be an object")
    synthesize = payload.get("synthesize")

    orchestrator = build_orchestrator()
    result = orchestrator.run(
        query_text=query_text,
        query=query,
        synthesize=synthesize if isinstance(synthesize, bool) else None,
    )
    logger.info("Pipeline request finished with %d lead(s)", len(result.leads))
    return jsonify({"data": result.to_dict()}), 200


# ---------- Error handlers ----------


@app.errorhandler(ValidationError)
def handle_validation_error(exc: ValidationError) -> Any:
    return jsonify({"error": str(exc), "errors": exc.errors}), 400


@app.errorhandler(NotFoundError)
def handle_not_found(exc: NotFoundError) -> Any:
    return jsonify({"error": str(exc)}), 404


@app.errorhandler(Exception)
def handle_unexpected(exc: Exception) -> Any:
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("Unhandled error while serving %s: %s", request.path, exc)
    return jsonify({"error": "internal error"}), 500


def main() -> None:
    """PORT (injected by the hosting platform) wins over WORKER_PORT."""
    env_port = os.getenv("PORT")
    logger.info("[BOOT] ENV PORT=%s", env_port)

    port = int(env_port or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
