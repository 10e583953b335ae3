import pytest

from fraud_engine.config.settings import Settings


def _set_required_env(monkeypatch) -> None:
    monkeypatch.setenv("API_TOKEN", "test-api")
    monkeypatch.setenv("ADMIN_TOKEN", "test-admin")
    monkeypatch.setenv("METRICS_TOKEN", "test-metrics")
    monkeypatch.setenv("FINGERPRINT_HASH_KEY", "test-fingerprint-key")


def test_production_requires_security_settings(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    for key in [
        "API_TOKEN",
        "ADMIN_TOKEN",
        "METRICS_TOKEN",
        "FINGERPRINT_HASH_KEY",
    ]:
        monkeypatch.delenv(key, raising=False)

    with pytest.raises(ValueError) as excinfo:
        Settings(_env_file=None)

    message = str(excinfo.value)
    assert "API_TOKEN" in message
    assert "ADMIN_TOKEN" in message
    assert "METRICS_TOKEN" in message
    assert "FINGERPRINT_HASH_KEY" in message


def test_production_allows_with_required_settings(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    _set_required_env(monkeypatch)

    settings = Settings(_env_file=None)
    assert settings.app_env == "production"


def test_development_allows_missing_tokens(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.delenv("API_TOKEN", raising=False)

    settings = Settings(_env_file=None)
    assert settings.api_token is None


def test_review_threshold_below_block_threshold(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")

    with pytest.raises(ValueError) as excinfo:
        Settings(_env_file=None, review_score_threshold=80, block_score_threshold=80)

    assert "review_score_threshold" in str(excinfo.value)


def test_cors_origins_list(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")

    settings = Settings(_env_file=None, cors_allow_origins="https://a.example, https://b.example,")
    assert settings.cors_allow_origins_list == ["https://a.example", "https://b.example"]
