import pytest

from leadscout.core.errors import NotFoundError
from leadscout.core.models import CompanyCandidate, PackageCode, Subscores, ScoredLead
from leadscout.core.recipes import RecipeStep, compile_recipe, lead_snapshot

LEAD = {
    "name": "Smile Dental",
    "city": "Columbia",
    "state": "SC",
    "website": "https://smile.example",
    "audit": {"detected_features": {"online_booking": {"found": False, "evidence": []}}},
}


def test_receptionist_recipe_steps_and_guards():
    recipe = compile_recipe("P1", LEAD)

    assert recipe.package is PackageCode.RECEPTIONIST
    assert recipe.guards == ("consent.voice == true",)
    assert [step.name for step in recipe.steps] == [
        "offer_one_pager",
        "buy_number",
        "voice_agent",
        "smoke_test",
        "client_summary",
    ]
    assert recipe.steps[1].params == {"area": "SC"}
    assert recipe.human_approvals == ("offer_one_pager", "voice_agent")


def test_receptionist_area_defaults_when_state_missing():
    recipe = compile_recipe(PackageCode.RECEPTIONIST, {"name": "No State Co"})

    assert recipe.steps[1].params == {"area": "SC"}


def test_follow_up_and_web_presence_recipes():
    follow_up = compile_recipe("P2", LEAD).to_dict()
    web = compile_recipe("P3", LEAD).to_dict()

    assert follow_up["guards"] == ["consent.sms == true || consent.email == true"]
    assert follow_up["steps"][-1] == {
        "type": "schedule",
        "provider": "messaging",
        "name": "sequence_activate",
        "params": {"cadence": ["D0", "D1", "D3"]},
    }
    assert web["guards"] == []
    assert [step["type"] for step in web["steps"]] == ["generate", "generate", "provision", "configure", "notify"]
    assert web["context"]["lead"]["businessName"] == "Smile Dental"
    assert web["version"] == "1.0"


def test_unknown_package_raises_not_found():
    with pytest.raises(NotFoundError):
        compile_recipe("P9", LEAD)


def test_lead_snapshot_from_scored_lead():
    lead = ScoredLead(
        candidate=CompanyCandidate(name="Acme Roofing", city="Greenville", state="SC", website="acme.example"),
        audit=None,
        score=40,
        subscores=Subscores(icp=40, pain=0, reachability=15, compliance_risk=10),
    )

    assert lead_snapshot(lead) == {
        "businessName": "Acme Roofing",
        "city": "Greenville",
        "state": "SC",
        "website": "acme.example",
        "features": {},
    }


def test_recipe_step_rejects_unknown_type():
    with pytest.raises(ValueError):
        RecipeStep("deploy", "web", "ship_it")
