"""
Tests for reading settings from the environment.
"""

import pytest

from config import DEV_JWT_SECRET, Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("APP_ENV", "JWT_SECRET", "DEFAULT_MODEL_ID", "DEFAULT_MODEL_NAME", "DEFAULT_MODEL_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


class TestJwtSecret:
    """JWT_SECRET may only be omitted in development."""

    def test_development_falls_back(self):
        settings = Settings.from_env()

        assert settings.is_development
        assert settings.jwt_secret == DEV_JWT_SECRET

    @pytest.mark.parametrize("env", ["production", "test", "staging"])
    def test_required_elsewhere(self, monkeypatch, env):
        monkeypatch.setenv("APP_ENV", env)

        with pytest.raises(RuntimeError, match="JWT_SECRET"):
            Settings.from_env()

    def test_explicit_secret(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "test")
        monkeypatch.setenv("JWT_SECRET", "s3cret")

        assert Settings.from_env().jwt_secret == "s3cret"


class TestDefaultModel:
    def test_seed_settings(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_MODEL_ID", "deepseek-chat")
        monkeypatch.setenv("DEFAULT_MODEL_BASE_URL", "https://api.deepseek.com")

        model = Settings.from_env().default_model

        assert model.model_id == "deepseek-chat"
        assert model.name == "deepseek-chat"
        assert model.base_url == "https://api.deepseek.com"
