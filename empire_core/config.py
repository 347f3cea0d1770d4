"""Configuration loading utilities for the empire core."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"
DEFAULT_MODIFIERS_PATH = Path(__file__).parent / "data" / "modifiers.yaml"


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    poll_interval_seconds: float
    dispatcher_workers: int
    claim_retry_attempts: int
    claim_retry_delay_seconds: float
    worker_prefix: str
    default_priority: int
    default_max_retries: int
    default_timeout_seconds: int
    backoff_base_seconds: float
    backoff_max_seconds: float
    cache_ttl_seconds: float
    cache_max_entries: int
    multiplier_floor: Optional[float]
    multiplier_ceiling: Optional[float]
    production_interval_seconds: float
    default_storage_cap: int
    default_accumulator_cap: int
    starting_balance: int
    alert_max_pending_jobs: int
    alert_max_pending_age_hours: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        data = data or {}
        dispatcher_cfg = data.get("dispatcher", {})
        jobs_cfg = data.get("jobs", {})
        modifiers_cfg = data.get("modifiers", {})
        production_cfg = data.get("production", {})
        alerts_cfg = data.get("alerts", {})
        return Settings(
            poll_interval_seconds=float(dispatcher_cfg.get("poll_interval_seconds", 1.0)),
            dispatcher_workers=max(1, int(dispatcher_cfg.get("workers", 2))),
            claim_retry_attempts=max(1, int(dispatcher_cfg.get("claim_retry_attempts", 3))),
            claim_retry_delay_seconds=float(dispatcher_cfg.get("claim_retry_delay_seconds", 0.05)),
            worker_prefix=str(dispatcher_cfg.get("worker_prefix", "goblin")),
            default_priority=int(jobs_cfg.get("default_priority", 50)),
            default_max_retries=int(jobs_cfg.get("default_max_retries", 3)),
            default_timeout_seconds=int(jobs_cfg.get("default_timeout_seconds", 300)),
            backoff_base_seconds=float(jobs_cfg.get("backoff_base_seconds", 30)),
            backoff_max_seconds=float(jobs_cfg.get("backoff_max_seconds", 3600)),
            cache_ttl_seconds=float(modifiers_cfg.get("cache_ttl_seconds", 3600)),
            cache_max_entries=max(1, int(modifiers_cfg.get("cache_max_entries", 1000))),
            multiplier_floor=_optional_float(modifiers_cfg.get("multiplier_floor", 0.0)),
            multiplier_ceiling=_optional_float(modifiers_cfg.get("multiplier_ceiling")),
            production_interval_seconds=float(production_cfg.get("interval_seconds", 120)),
            default_storage_cap=int(production_cfg.get("default_storage_cap", 2000)),
            default_accumulator_cap=int(production_cfg.get("default_accumulator_cap", 2000)),
            starting_balance=int(production_cfg.get("starting_balance", 100)),
            alert_max_pending_jobs=int(alerts_cfg.get("max_pending_jobs", 50)),
            alert_max_pending_age_hours=float(alerts_cfg.get("max_pending_age_hours", 1.0)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = [
    "DEFAULT_MODIFIERS_PATH",
    "DEFAULT_SETTINGS_PATH",
    "Settings",
    "SettingsLoader",
    "get_settings",
]
