"""Unit tests for configuration loading."""

import pytest
from pydantic import ValidationError

from src.config.settings import Settings, get_settings


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        for name in ("FETCH_CONCURRENCY", "PAGE_SIZE", "MAX_RETRIES", "HIGH_SEASON_MONTHS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.fetch_concurrency == 5
        assert settings.page_size == 1000
        assert settings.fetch_timeout_seconds == 10.0
        assert settings.max_retries == 3
        assert settings.retry_backoff_seconds == 2.0
        assert settings.max_kwh_per_interval == 10000
        assert settings.max_kva_per_interval == 50000
        assert settings.max_other_value == 100000
        assert settings.high_season_months == [6, 7, 8]

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FETCH_CONCURRENCY", "2")
        monkeypatch.setenv("HIGH_SEASON_MONTHS", "[5, 6, 7]")

        settings = get_settings()

        assert settings.fetch_concurrency == 2
        assert settings.high_season_months == [5, 6, 7]

    def test_database_url_points_at_test_database(self):
        assert get_settings().database_url == "sqlite+aiosqlite:///:memory:"

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.delenv("PAGE_SIZE", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("PAGE_SIZE=250\n")

        assert Settings(_env_file=str(env_file)).page_size == 250

    def test_invalid_concurrency_is_rejected(self, monkeypatch):
        monkeypatch.setenv("FETCH_CONCURRENCY", "0")

        with pytest.raises(ValidationError):
            get_settings()
