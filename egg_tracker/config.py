"""Configuration loading utilities for egg_tracker."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    database_path: str
    telemetry_path: str
    telemetry_retention_days: int
    storage_queue_size: int
    fetch_period: int
    check_period: int
    notify_interval: int
    cache_refresh_period: int
    cache_horizon: int
    gc_interval: int
    forced_refresh: int
    pending_mission_limit: int
    shutdown_timeout: float
    subscribe_query_interval: int
    subscribe_notify_interval: int
    subscribe_cache_refresh_period: int
    subscribe_cache_horizon: int
    subscribe_gc_interval: int
    estimate_tolerance: int
    contract_cache_recent: int
    max_accounts_per_user: int
    mission_reset_limit: int
    api_backend: str
    api_timeout: float
    api_codec: Optional[str]
    timezone: str
    message_limit: int
    admins: Tuple[int, ...]

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        data = data or {}
        storage_cfg = data.get("storage", {})
        monitor_cfg = data.get("monitor", {})
        subscriber_cfg = data.get("subscriber", {})
        contract_cfg = data.get("contracts", {})
        account_cfg = data.get("accounts", {})
        api_cfg = data.get("api", {})
        display_cfg = data.get("display", {})
        return Settings(
            database_path=str(storage_cfg.get("database_path", "egg_tracker.db")),
            telemetry_path=str(storage_cfg.get("telemetry_path", "telemetry.db")),
            telemetry_retention_days=int(storage_cfg.get("telemetry_retention_days", 30)),
            storage_queue_size=int(storage_cfg.get("queue_size", 16)),
            fetch_period=int(monitor_cfg.get("fetch_period", 1800)),
            check_period=int(monitor_cfg.get("check_period", 240)),
            notify_interval=int(monitor_cfg.get("notify_interval", 3)),
            cache_refresh_period=int(monitor_cfg.get("cache_refresh_period", 300)),
            cache_horizon=int(monitor_cfg.get("cache_horizon", 600)),
            gc_interval=int(monitor_cfg.get("gc_interval", 43200)),
            forced_refresh=int(monitor_cfg.get("forced_refresh", 14400)),
            pending_mission_limit=int(monitor_cfg.get("pending_mission_limit", 3)),
            shutdown_timeout=float(monitor_cfg.get("shutdown_timeout", 5)),
            subscribe_query_interval=int(subscriber_cfg.get("query_interval", 600)),
            subscribe_notify_interval=int(subscriber_cfg.get("notify_interval", 15)),
            subscribe_cache_refresh_period=int(subscriber_cfg.get("cache_refresh_period", 600)),
            subscribe_cache_horizon=int(subscriber_cfg.get("cache_horizon", 1200)),
            subscribe_gc_interval=int(subscriber_cfg.get("gc_interval", 43200)),
            estimate_tolerance=int(subscriber_cfg.get("estimate_tolerance", 30)),
            contract_cache_recent=int(contract_cfg.get("cache_recent_seconds", 300)),
            max_accounts_per_user=int(account_cfg.get("max_per_user", 4)),
            mission_reset_limit=int(account_cfg.get("mission_reset_limit", 3)),
            api_backend=str(api_cfg.get("backend", "https://ctx-dot-auxbrainhome.appspot.com")),
            api_timeout=float(api_cfg.get("timeout", 10)),
            api_codec=api_cfg.get("codec") or None,
            timezone=str(display_cfg.get("timezone", "Asia/Taipei")),
            message_limit=int(display_cfg.get("message_limit", 2000)),
            admins=tuple(int(item) for item in data.get("admins") or ()),
        )

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Apply ``EGG_TRACKER_*`` overrides from the environment."""

        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        database = env.get("EGG_TRACKER_DB")
        if database:
            overrides["database_path"] = database
        backend = env.get("EGG_TRACKER_API_BACKEND")
        if backend:
            overrides["api_backend"] = backend
        codec = env.get("EGG_TRACKER_CODEC")
        if codec:
            overrides["api_codec"] = codec
        admins = env.get("EGG_TRACKER_ADMINS")
        if admins:
            parsed = []
            for item in admins.split(","):
                item = item.strip()
                if not item:
                    continue
                try:
                    parsed.append(int(item))
                except ValueError:
                    logger.warning("Invalid admin id %s in EGG_TRACKER_ADMINS", item)
            overrides["admins"] = tuple(parsed)
        if not overrides:
            return self
        return replace(self, **overrides)

    def is_admin(self, chat_id: int) -> bool:
        return chat_id in self.admins


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


def get_settings(path: Path | None = None) -> Settings:
    """Load settings, honouring ``EGG_TRACKER_SETTINGS`` and env overrides."""

    if path is None:
        env_path = os.environ.get("EGG_TRACKER_SETTINGS")
        if env_path:
            path = Path(env_path)
    return SettingsLoader(path).load().with_env()


__all__ = ["DEFAULT_SETTINGS_PATH", "Settings", "SettingsLoader", "get_settings"]
