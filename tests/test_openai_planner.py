from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from openai import OpenAIError

from leadscout.core.config import Settings
from leadscout.vendors.openai_planner import MAX_SYNTHESIS_EVIDENCE, OpenAIPlanner, PlannerError, parse_json_object


def _client(content=None, error=None):
    client = Mock()
    if error is not None:
        client.chat.completions.create.side_effect = error
    else:
        message = SimpleNamespace(content=content)
        client.chat.completions.create.return_value = SimpleNamespace(choices=[SimpleNamespace(message=message)])
    return client


def test_parse_json_object_strips_code_fence():
    assert parse_json_object('```json\n{"places_queries": ["a"]}\n```') == {"places_queries": ["a"]}
    assert parse_json_object(' {"a": 1} ') == {"a": 1}


@pytest.mark.parametrize("content", ["not json", "[1, 2]", None])
def test_parse_json_object_rejects_non_objects(content):
    with pytest.raises(PlannerError):
        parse_json_object(content)


def test_plan_uses_planner_model():
    client = _client('{"places_queries": ["dentists Columbia SC"]}')
    planner = OpenAIPlanner(Settings(planner_model="planner-x"), client=client)

    plan = planner.plan("dentists in Columbia, SC")

    assert plan == {"places_queries": ["dentists Columbia SC"]}
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "planner-x"
    assert 'Plan a verification workflow for: "dentists in Columbia, SC"' in kwargs["messages"][1]["content"]


def test_synthesize_truncates_evidence():
    client = _client('{"recommendation": "call"}')
    planner = OpenAIPlanner(Settings(synthesis_model="synth-x"), client=client)
    evidence = [{"url": f"https://e{i}.example"} for i in range(MAX_SYNTHESIS_EVIDENCE + 50)]

    assert planner.synthesize([{"name": "Smile"}], evidence) == {"recommendation": "call"}
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "synth-x"
    assert f"https://e{MAX_SYNTHESIS_EVIDENCE - 1}.example" in kwargs["messages"][1]["content"]
    assert f"https://e{MAX_SYNTHESIS_EVIDENCE}.example" not in kwargs["messages"][1]["content"]


def test_openai_errors_become_planner_errors():
    planner = OpenAIPlanner(Settings(), client=_client(error=OpenAIError("rate limited")))

    with pytest.raises(PlannerError, match="rate limited"):
        planner.plan("dentists in Columbia, SC")


def test_missing_key_without_client():
    with pytest.raises(PlannerError):
        OpenAIPlanner(Settings(openai_api_key=""))
