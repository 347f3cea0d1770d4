"""Tests for settings loading."""
from __future__ import annotations

from empire_core.config import DEFAULT_SETTINGS_PATH, Settings, SettingsLoader, get_settings


def test_bundled_settings_load():
    settings = get_settings()

    assert settings.dispatcher_workers == 2
    assert settings.default_max_retries == 3
    assert settings.default_timeout_seconds == 300
    assert settings.production_interval_seconds == 120
    assert settings.multiplier_floor == 0.0
    assert settings.multiplier_ceiling is None


def test_missing_sections_fall_back_to_defaults():
    settings = Settings.from_dict({})

    assert settings.poll_interval_seconds == 1.0
    assert settings.backoff_base_seconds == 30
    assert settings.cache_max_entries == 1000
    assert settings.alert_max_pending_jobs == 50


def test_values_are_coerced_and_bounded():
    settings = Settings.from_dict(
        {
            "dispatcher": {"workers": 0, "claim_retry_attempts": "5"},
            "modifiers": {"multiplier_floor": None, "multiplier_ceiling": "3"},
        }
    )

    assert settings.dispatcher_workers == 1
    assert settings.claim_retry_attempts == 5
    assert settings.multiplier_floor is None
    assert settings.multiplier_ceiling == 3.0


def test_loader_caches_until_forced(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("jobs:\n  default_max_retries: 7\n", encoding="utf-8")
    loader = SettingsLoader(path)

    first = loader.load()
    path.write_text("jobs:\n  default_max_retries: 9\n", encoding="utf-8")

    assert loader.load() is first
    assert loader.load(force=True).default_max_retries == 9
    assert loader.path == path
    assert SettingsLoader().path == DEFAULT_SETTINGS_PATH
