import pytest
import requests

from leadscout.core.config import Settings
from leadscout.vendors import google_places


class DummyResponse:
    def __init__(self, status_code=200, payload=None, json_error=False):
        self.status_code = status_code
        self._payload = payload or {}
        self._json_error = json_error

    def json(self):
        if self._json_error:
            raise ValueError("not json")
        return self._payload


class DummySession:
    def __init__(self):
        self.calls = []
        self.response = None
        self.error = None

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, headers, timeout))
        if self.error:
            raise self.error
        return self.response


@pytest.fixture(autouse=True)
def patch_session(monkeypatch):
    session = DummySession()
    monkeypatch.setattr(google_places, "_SESSION", session)
    return session


def test_text_search_success(patch_session):
    patch_session.response = DummyResponse(payload={"places": [{"id": "1"}]})

    payload = google_places.text_search("dentists in Columbia, SC", "key", max_results=50)

    assert payload["places"] == [{"id": "1"}]
    url, body, headers, timeout = patch_session.calls[0]
    assert url.endswith("/places:searchText")
    assert body == {"textQuery": "dentists in Columbia, SC", "maxResultCount": 20}
    assert headers["X-Goog-Api-Key"] == "key"
    assert "places.websiteUri" in headers["X-Goog-FieldMask"]
    assert timeout == 10


def test_text_search_error_status(patch_session):
    patch_session.response = DummyResponse(status_code=403, payload={"error": {"message": "API key not valid"}})

    with pytest.raises(google_places.GooglePlacesError, match="API key not valid"):
        google_places.text_search("pizza", "key")


def test_text_search_network_error(patch_session):
    patch_session.error = requests.ConnectionError("dns")

    with pytest.raises(google_places.GooglePlacesError):
        google_places.text_search("pizza", "key")


def test_text_search_rejects_non_json(patch_session):
    patch_session.response = DummyResponse(json_error=True)

    with pytest.raises(google_places.GooglePlacesError):
        google_places.text_search("pizza", "key")


def test_text_search_requires_key(patch_session):
    with pytest.raises(google_places.GooglePlacesError):
        google_places.text_search("pizza", "")
    assert patch_session.calls == []


def test_discovery_caps_results(patch_session):
    patch_session.response = DummyResponse(payload={"places": [{"id": str(i)} for i in range(5)] + ["junk"]})
    discovery = google_places.PlacesDiscovery(Settings(google_api_key="key", request_timeout=3.0))

    records = discovery.search("dentists in Columbia, SC", 3)

    assert [record["id"] for record in records] == ["0", "1", "2"]
    assert patch_session.calls[0][1]["maxResultCount"] == 3
    assert patch_session.calls[0][3] == 3.0
