import pytest

from leadscout.core import query as query_module
from leadscout.core.errors import NotFoundError, ValidationError
from leadscout.core.query import (
    build_default_query,
    normalize_state,
    parse_predicates,
    parse_scoring,
    require_valid_query,
    validate_query,
)


def _base(**overrides):
    raw = {"version": 1, "vertical": "dentist", "geo": {"city": "Columbia", "state": "SC"}}
    raw.update(overrides)
    return raw


def _paths(result):
    return [err["path"] for err in result.errors]


def test_validate_defaults_and_normalizes_state_name():
    raw = {
        "version": 1,
        "vertical": "dentist",
        "geo": {"city": "Columbia", "state": "south carolina"},
        "constraints": {"must": [{"no_website": True}]},
        "result_size": {"target": 5},
    }

    result = validate_query(raw)

    assert result.valid is True
    query = result.query
    assert query.geo.state == "SC"
    assert query.geo.radius_km == 25
    assert query.result_size.target == 5
    assert query.constraints.must[0].to_dict() == {"no_website": True}
    assert query.sort_by == "score_desc"
    assert query.output_contract == "json"
    assert query.compliance_flags == ("respect_dnc", "two_party_recording_state_notes")
    assert query.scoring.weights == {"icp": 0.35, "pain": 0.35, "reachability": 0.20, "compliance_risk": 0.10}


def test_validation_is_idempotent():
    raw = _base(
        constraints={
            "must": [{"has_online_booking": False, "reviews_count_gt": 20}],
            "optional": [{"owner_identified": True}],
            "exclude": [{"franchise": True}],
        },
        scoring={"profile": "dentist-intake"},
        notify={"on_complete": True, "email": "ops@example.com"},
    )

    first = validate_query(raw)
    second = validate_query(first.query.to_dict())

    assert second.valid is True
    assert second.query == first.query
    assert second.query.to_dict() == first.query.to_dict()


def test_missing_geo_and_version_reported_without_type_checks():
    result = validate_query({"vertical": "dentist"})

    assert result.valid is False
    assert _paths(result) == ["version", "geo"]


def test_non_object_query_rejected():
    result = validate_query(["not", "a", "query"])

    assert result.valid is False
    assert result.errors[0]["path"] == ""


@pytest.mark.parametrize(
    "geo, path",
    [
        ({"state": "SC"}, "geo.city"),
        ({"city": "Columbia", "state": "Narnia"}, "geo.state"),
        ({"city": "Columbia", "state": "SC", "radius_km": 150}, "geo.radius_km"),
        ({"city": "Columbia", "state": "SC", "radius_km": "far"}, "geo.radius_km"),
    ],
)
def test_geo_errors(geo, path):
    result = validate_query(_base(geo=geo))

    assert result.valid is False
    assert path in _paths(result)


def test_unknown_vertical_and_predicate_rejected():
    result = validate_query(
        _base(vertical="bakery", constraints={"must": [{"has_drive_thru": True}, {"rating_gt": 7}]})
    )

    assert result.valid is False
    paths = _paths(result)
    assert "vertical" in paths
    assert "constraints.must[0].has_drive_thru" in paths
    assert "constraints.must[1].rating_gt" in paths


def test_employee_range_requires_ordered_pair():
    result = validate_query(_base(constraints={"must": [{"employee_count_range": [10, 2]}]}))

    assert result.valid is False
    assert _paths(result) == ["constraints.must[0].employee_count_range"]


def test_result_target_out_of_range():
    result = validate_query(_base(result_size={"target": 5000}))

    assert result.valid is False
    assert _paths(result) == ["result_size.target"]


def test_minimum_above_target_is_cross_field_error():
    result = validate_query(_base(result_size={"target": 10, "minimum": 20}))

    assert result.valid is False
    assert _paths(result) == ["result_size.minimum"]


def test_weights_must_sum_to_one():
    result = validate_query(
        _base(scoring={"weights": {"icp": 0.5, "pain": 0.5, "reachability": 0.5, "compliance_risk": 0.1}})
    )

    assert result.valid is False
    assert _paths(result) == ["scoring.weights"]


def test_partial_weight_override_merges_with_profile():
    result = validate_query(_base(scoring={"profile": "generic", "weights": {"icp": 0.30, "pain": 0.40}}))

    assert result.valid is True
    assert result.query.scoring.weights["pain"] == 0.40
    assert result.query.scoring.weights["reachability"] == 0.20


def test_partial_weight_override_is_not_sum_checked():
    result = validate_query(_base(scoring={"weights": {"icp": 0.5}}))

    assert result.valid is True
    assert result.query.scoring.weights["icp"] == 0.5
    assert result.query.scoring.weights["pain"] == 0.35
    assert parse_scoring({"weights": {"icp": 0.5}}).weights["icp"] == 0.5


@pytest.mark.parametrize("url", ["ftp://example.com/hook", "http://[::1/hook", "not a url"])
def test_notify_webhook_must_be_http(url):
    result = validate_query(_base(notify={"webhook_url": url}))

    assert result.valid is False
    assert _paths(result) == ["notify.webhook_url"]


def test_require_valid_query_raises_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        require_valid_query({"version": 2, "geo": {"city": "Columbia", "state": "SC"}})

    assert excinfo.value.errors[0]["path"] == "version"


def test_build_default_query():
    query = build_default_query("Greenville", "south carolina", "hvac")

    assert query.geo.city == "Greenville"
    assert query.geo.state == "SC"
    assert query.vertical == "hvac"


def test_normalize_state():
    assert normalize_state(" new   york ") == "NY"
    assert normalize_state("tx") == "TX"
    assert normalize_state("Atlantis") == "ATLANTIS"


def test_get_profile_weights_unknown_profile():
    with pytest.raises(NotFoundError):
        query_module.get_profile_weights("mystery")


def test_parse_predicates_and_scoring():
    predicates = parse_predicates([{"owner_identified": True}], "optional")
    assert predicates[0].get("owner_identified") is True
    assert parse_predicates(None) == ()

    with pytest.raises(ValidationError) as excinfo:
        parse_predicates([{"rating_gt": "high"}], "optional")
    assert excinfo.value.errors[0]["path"] == "optional[0].rating_gt"

    assert parse_scoring(None).profile == "generic"
    with pytest.raises(ValidationError):
        parse_scoring({"profile": "mystery"})
