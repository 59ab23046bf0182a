"""
Unit tests for engine settings.
"""

import pytest
from core.settings import Settings, get_settings, reset_settings
from pydantic import ValidationError


class TestSettingsDefaults:
    """Tests for default values."""

    @pytest.mark.unit
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.channel_tick_global_budget == 6
        assert settings.channel_tick_max_k == 3
        assert settings.max_responses_per_message == 1
        assert settings.max_responders_per_trigger == 2
        assert settings.turn_lease_ttl_ms == 90_000
        assert settings.response_lock_ttl_ms == 5_000
        assert settings.sticky_affinity_exclusive is True
        assert settings.log_level == "INFO"

    @pytest.mark.unit
    def test_tick_interval_in_seconds(self):
        settings = Settings(_env_file=None, channel_tick_ms=120_000, channel_tick_jitter_ms=1_500)

        assert settings.tick_interval_seconds == 120
        assert settings.tick_jitter_seconds == 1.5


class TestSettingsFromEnvironment:
    """Tests for environment parsing."""

    @pytest.mark.unit
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CHANNEL_TICK_GLOBAL_BUDGET", "12")
        monkeypatch.setenv("BOT_REPLY_COOLDOWN_MS", "0")

        settings = Settings(_env_file=None)

        assert settings.channel_tick_global_budget == 12
        assert settings.bot_reply_cooldown_ms == 0

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [("true", True), ("TRUE", True), ("false", False), ("no", False)])
    def test_bool_flags(self, monkeypatch, raw, expected):
        monkeypatch.setenv("TURN_BASED_MODE", raw)

        assert Settings(_env_file=None).turn_based_mode is expected

    @pytest.mark.unit
    def test_log_level_normalized(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")

        assert Settings(_env_file=None).log_level == "DEBUG"

    @pytest.mark.unit
    def test_unknown_log_level_falls_back(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")

        assert Settings(_env_file=None).log_level == "INFO"

    @pytest.mark.unit
    def test_score_threshold_validated(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, ambient_fallback_score=1.5)


class TestGetSettings:
    """Tests for the settings singleton."""

    @pytest.mark.unit
    def test_singleton(self):
        assert get_settings() is get_settings()

    @pytest.mark.unit
    def test_reset(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("CHANNEL_TICK_MAX_K", "5")
        reset_settings()

        second = get_settings()

        assert second is not first
        assert second.channel_tick_max_k == 5
