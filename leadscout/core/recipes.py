"""Compile a package code and lead snapshot into a guarded, ordered action plan.

Recipes are data only. Guards are evaluated and steps executed elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple, Union

from leadscout.core.errors import NotFoundError
from leadscout.core.models import PackageCode, ScoredLead

RECIPE_VERSION = "1.0"
DEFAULT_PROVISION_AREA = "SC"

STEP_TYPES = ("generate", "provision", "configure", "testcall", "schedule", "notify")
STEP_PROVIDERS = ("openai.responses", "telephony", "messaging", "crm", "web", "email")


@dataclass(frozen=True)
class RecipeStep:
    type: str
    provider: str
    name: str
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in STEP_TYPES:
            raise ValueError(f"Unknown recipe step type: {self.type}")
        if self.provider not in STEP_PROVIDERS:
            raise ValueError(f"Unknown recipe step provider: {self.provider}")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "provider": self.provider, "name": self.name}
        if self.params:
            payload["params"] = dict(self.params)
        return payload


@dataclass(frozen=True)
class Recipe:
    package: PackageCode
    guards: Tuple[str, ...]
    steps: Tuple[RecipeStep, ...]
    human_approvals: Tuple[str, ...]
    context: Dict[str, Any] = field(default_factory=dict)
    version: str = RECIPE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "package": self.package.value,
            "guards": list(self.guards),
            "steps": [step.to_dict() for step in self.steps],
            "human_approvals": list(self.human_approvals),
            "context": self.context,
        }


def lead_snapshot(lead: Union[ScoredLead, Mapping[str, Any]]) -> Dict[str, Any]:
    record = lead.to_dict() if isinstance(lead, ScoredLead) else dict(lead)
    audit = record.get("audit") or {}
    return {
        "businessName": record.get("business_name") or record.get("name"),
        "city": record.get("city"),
        "state": record.get("state"),
        "website": record.get("website_url") or record.get("website"),
        "features": record.get("detected_features") or audit.get("detected_features") or {},
    }


def _receptionist(lead: Dict[str, Any]) -> Recipe:
    return Recipe(
        package=PackageCode.RECEPTIONIST,
        guards=("consent.voice == true",),
        human_approvals=("offer_one_pager", "voice_agent"),
        context={"lead": lead},
        steps=(
            RecipeStep("generate", "openai.responses", "offer_one_pager", {"package": "P1"}),
            RecipeStep("provision", "telephony", "buy_number", {"area": lead.get("state") or DEFAULT_PROVISION_AREA}),
            RecipeStep("configure", "telephony", "voice_agent", {"calendar": "google"}),
            RecipeStep("testcall", "telephony", "smoke_test"),
            RecipeStep("notify", "email", "client_summary"),
        ),
    )


def _follow_up(lead: Dict[str, Any]) -> Recipe:
    return Recipe(
        package=PackageCode.FOLLOW_UP,
        guards=("consent.sms == true || consent.email == true",),
        human_approvals=("offer_one_pager", "sequence_copy"),
        context={"lead": lead},
        steps=(
            RecipeStep("generate", "openai.responses", "offer_one_pager", {"package": "P2"}),
            RecipeStep("generate", "openai.responses", "sequence_copy", {"channels": ["email", "sms"]}),
            RecipeStep("configure", "crm", "webhook_ingest"),
            RecipeStep("schedule", "messaging", "sequence_activate", {"cadence": ["D0", "D1", "D3"]}),
        ),
    )


def _web_presence(lead: Dict[str, Any]) -> Recipe:
    return Recipe(
        package=PackageCode.WEB_PRESENCE,
        guards=(),
        human_approvals=("offer_one_pager", "site_copy"),
        context={"lead": lead},
        steps=(
            RecipeStep("generate", "openai.responses", "offer_one_pager", {"package": "P3"}),
            RecipeStep("generate", "openai.responses", "site_copy"),
            RecipeStep("provision", "web", "scaffold_site"),
            RecipeStep("configure", "web", "embed_chat_and_quote"),
            RecipeStep("notify", "email", "go_live_summary"),
        ),
    )


_BUILDERS = {
    PackageCode.RECEPTIONIST: _receptionist,
    PackageCode.FOLLOW_UP: _follow_up,
    PackageCode.WEB_PRESENCE: _web_presence,
}


def compile_recipe(code: Union[PackageCode, str], lead: Union[ScoredLead, Mapping[str, Any]]) -> Recipe:
    """Raise ``NotFoundError`` for codes outside P1/P2/P3."""

    try:
        package = PackageCode(code)
    except ValueError:
        raise NotFoundError(f"Unknown package code: {code}") from None
    return _BUILDERS[package](lead_snapshot(lead))
