"""OpenAI-backed planning and synthesis collaborators.

Both calls are optional: the orchestrator substitutes defaults whenever they
raise ``PlannerError``.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from leadscout.core.config import Settings, get_settings
from leadscout.core.errors import UpstreamCollaboratorError

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = (
    "You plan verification; the code collects evidence. Emit a compact JSON plan with: "
    "Places queries (1 primary + up to 4 alternates), website paths to check, booking vendor "
    "patterns, enrichment order, and cross-validation rules. Keep it machine-readable and <=25 steps."
)
PLANNER_USER_TEMPLATE = """Plan a verification workflow for: "{query}". Output strict JSON with:
- places_queries: [primary, alternates...]
- website_paths_to_check: ["/","/book","/schedule","/appointments","/contact"]
- booking_vendor_patterns: ["calendly","acuityscheduling","squareup.com/appointments","housecallpro"]
- cross_validation_rules: short bullets
- enrichment_order: sources to try for contacts

Return ONLY the JSON object, no other text."""
SYNTHESIS_SYSTEM_PROMPT = (
    "Given deterministic fields and an evidence_log, produce JSON with confidence_reasons "
    "(bullets citing evidence items by URL), recommendation (one line) and ranked_summary. "
    "Do not override boolean flags; explain uncertainty if evidence is weak. Respond with JSON only."
)
# Keep synthesis prompts bounded.
MAX_SYNTHESIS_EVIDENCE = 200


class PlannerError(UpstreamCollaboratorError):
    """Raised when the model call fails or its output is not a JSON object."""


def parse_json_object(content: Optional[str]) -> Dict[str, Any]:
    """Parse model output, tolerating a surrounding markdown code fence."""
    clean = (content or "").strip()
    if clean.startswith("```"):
        clean = clean.split("```")[1]
        if clean.startswith("json"):
            clean = clean[4:]
    clean = clean.strip()
    try:
        data = json.loads(clean)
    except json.JSONDecodeError as exc:
        raise PlannerError(f"Model returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PlannerError("Model returned JSON that is not an object")
    return data


class OpenAIPlanner:
    """Planner and synthesizer sharing one OpenAI client."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Any] = None) -> None:
        self.settings = settings or get_settings()
        if client is None:
            if not self.settings.openai_api_key:
                raise PlannerError("OPENAI_API_KEY is not configured")
            client = OpenAI(api_key=self.settings.openai_api_key, timeout=self.settings.request_timeout * 3)
        self.client = client

    def _complete(self, model: str, system: str, user: str, max_tokens: int) -> Dict[str, Any]:
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=0.2,
                max_tokens=max_tokens,
            )
        except OpenAIError as exc:
            logger.warning("OpenAI call failed (model=%s): %s", model, exc)
            raise PlannerError(f"OpenAI call failed: {exc}") from exc
        return parse_json_object(response.choices[0].message.content)

    def plan(self, query_text: str) -> Dict[str, Any]:
        logger.info("Requesting verification plan for %r", query_text)
        return self._complete(
            self.settings.planner_model,
            PLANNER_SYSTEM_PROMPT,
            PLANNER_USER_TEMPLATE.format(query=query_text),
            max_tokens=1024,
        )

    def synthesize(self, leads: List[Dict[str, Any]], evidence_log: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload = json.dumps({"leads": leads, "evidence_log": evidence_log[:MAX_SYNTHESIS_EVIDENCE]}, default=str)
        return self._complete(self.settings.synthesis_model, SYNTHESIS_SYSTEM_PROMPT, payload, max_tokens=2048)
