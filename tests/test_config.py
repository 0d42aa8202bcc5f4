import pytest

from leadscout.core import config


def setup_function(function):
    config.get_settings.cache_clear()


def teardown_function(function):
    config.get_settings.cache_clear()


def test_get_settings_reads_env(monkeypatch):
    monkeypatch.delenv("DISCOVERY_PROVIDER", raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "abc123")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("WORKER_PORT", "9100")
    monkeypatch.setenv("AUDIT_MAX_CANDIDATES", "5")
    monkeypatch.setenv("AUDIT_CONCURRENCY", "2")
    monkeypatch.setenv("PIPELINE_DEADLINE_SECONDS", "30")
    monkeypatch.setenv("DEFAULT_CITY", "Columbia")
    monkeypatch.setenv("DEFAULT_STATE", "sc")

    settings = config.get_settings()

    assert settings.google_api_key == "abc123"
    assert settings.openai_api_key == "sk-test"
    assert settings.worker_port == 9100
    assert settings.max_candidates == 5
    assert settings.audit_concurrency == 2
    assert settings.pipeline_deadline_seconds == 30.0
    assert settings.default_city == "Columbia"
    assert settings.default_state == "SC"


def test_get_settings_warns_when_missing(monkeypatch, caplog):
    for name in ("GOOGLE_API_KEY", "OPENAI_API_KEY", "DISCOVERY_PROVIDER", "WORKER_PORT", "AUDIT_MAX_CANDIDATES"):
        monkeypatch.delenv(name, raising=False)

    with caplog.at_level("WARNING"):
        settings = config.get_settings()

    messages = " ".join(caplog.messages)
    assert "GOOGLE_API_KEY is not configured" in messages
    assert "OPENAI_API_KEY is not configured" in messages
    assert settings.worker_port == 9000
    assert settings.max_candidates == 10
    assert settings.discovery_provider == "google_places"


def test_get_settings_rejects_unknown_provider(monkeypatch):
    monkeypatch.setenv("DISCOVERY_PROVIDER", "bing")

    with pytest.raises(config.ConfigError):
        config.get_settings()


def test_get_settings_rejects_non_integer(monkeypatch):
    monkeypatch.delenv("DISCOVERY_PROVIDER", raising=False)
    monkeypatch.setenv("AUDIT_CONCURRENCY", "many")

    with pytest.raises(config.ConfigError):
        config.get_settings()


def test_deadline_can_be_disabled(monkeypatch):
    monkeypatch.delenv("DISCOVERY_PROVIDER", raising=False)
    monkeypatch.delenv("AUDIT_CONCURRENCY", raising=False)
    monkeypatch.setenv("PIPELINE_DEADLINE_SECONDS", "off")

    assert config.get_settings().pipeline_deadline_seconds is None
