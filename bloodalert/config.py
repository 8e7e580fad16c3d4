from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
import os

import yaml


@dataclass(frozen=True)
class ApiConfig:
    base_url: str = "http://localhost:3002"
    timeout_seconds: float = 10.0
    user_agent: str = "bloodalert/1.0 (urgent blood request monitor)"


@dataclass(frozen=True)
class PollingConfig:
    urgent_interval_seconds: float = 180.0
    emergency_interval_seconds: float = 120.0


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: float = 120.0
    reconcile_delay_seconds: float = 1.0


@dataclass(frozen=True)
class PopupConfig:
    auto_close_seconds: float = 15.0
    # "batch": every new record of the displayed batch counts as shown
    # "displayed": only the record actually put on screen
    mark_policy: str = "batch"


@dataclass(frozen=True)
class ToneConfig:
    enabled: bool = True
    sample_rate: int = 22050


@dataclass(frozen=True)
class PathsConfig:
    work_dir: str = "/var/lib/bloodalert"
    state_file: Optional[str] = None
    handoff_file: Optional[str] = None

    def resolve(self, value: Optional[str], default_name: str) -> Path:
        return Path(value) if value else Path(self.work_dir) / default_name


@dataclass(frozen=True)
class AppConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    popup: PopupConfig = field(default_factory=PopupConfig)
    tone: ToneConfig = field(default_factory=ToneConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


def _env(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    return v if v not in (None, "") else default


def _env_bool(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = raw.get(name) or {}
    if not isinstance(sec, dict):
        raise ValueError(f"config section '{name}' must be a mapping")
    return sec


def _positive(name: str, value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None
    if v <= 0:
        raise ValueError(f"{name} must be positive, got {v}")
    return v


def load_config(path: str | None = None) -> AppConfig:
    """
    Load YAML config (all sections optional), then apply BLOODALERT_* env
    overrides. Raises ValueError on invalid values.
    """
    raw: Dict[str, Any] = {}
    if path:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"config file {path} must contain a mapping")

    api_raw = _section(raw, "api")
    polling_raw = _section(raw, "polling")
    cache_raw = _section(raw, "cache")
    popup_raw = _section(raw, "popup")
    tone_raw = _section(raw, "tone")
    paths_raw = _section(raw, "paths")

    d_api = ApiConfig()
    api = ApiConfig(
        base_url=str(_env("BLOODALERT_API_BASE_URL", api_raw.get("base_url", d_api.base_url))).rstrip("/"),
        timeout_seconds=_positive(
            "api.timeout_seconds",
            _env("BLOODALERT_TIMEOUT_SECONDS", api_raw.get("timeout_seconds", d_api.timeout_seconds)),
        ),
        user_agent=str(api_raw.get("user_agent", d_api.user_agent)),
    )

    d_poll = PollingConfig()
    polling = PollingConfig(
        urgent_interval_seconds=_positive(
            "polling.urgent_interval_seconds",
            polling_raw.get("urgent_interval_seconds", d_poll.urgent_interval_seconds),
        ),
        emergency_interval_seconds=_positive(
            "polling.emergency_interval_seconds",
            polling_raw.get("emergency_interval_seconds", d_poll.emergency_interval_seconds),
        ),
    )

    d_cache = CacheConfig()
    cache = CacheConfig(
        ttl_seconds=_positive("cache.ttl_seconds", cache_raw.get("ttl_seconds", d_cache.ttl_seconds)),
        reconcile_delay_seconds=float(cache_raw.get("reconcile_delay_seconds", d_cache.reconcile_delay_seconds)),
    )

    d_popup = PopupConfig()
    mark_policy = str(_env("BLOODALERT_MARK_POLICY", popup_raw.get("mark_policy", d_popup.mark_policy))).strip().lower()
    if mark_policy not in ("batch", "displayed"):
        raise ValueError(f"popup.mark_policy must be 'batch' or 'displayed', got {mark_policy!r}")
    popup = PopupConfig(
        auto_close_seconds=_positive(
            "popup.auto_close_seconds",
            _env("BLOODALERT_AUTO_CLOSE_SECONDS", popup_raw.get("auto_close_seconds", d_popup.auto_close_seconds)),
        ),
        mark_policy=mark_policy,
    )

    d_tone = ToneConfig()
    tone_enabled: Any = tone_raw.get("enabled", d_tone.enabled)
    env_tone = _env("BLOODALERT_TONE_ENABLED")
    if env_tone is not None:
        tone_enabled = _env_bool(env_tone)
    tone = ToneConfig(
        enabled=bool(tone_enabled),
        sample_rate=int(tone_raw.get("sample_rate", d_tone.sample_rate)),
    )

    paths = PathsConfig(**paths_raw)

    return AppConfig(
        api=api,
        polling=polling,
        cache=cache,
        popup=popup,
        tone=tone,
        paths=paths,
    )
