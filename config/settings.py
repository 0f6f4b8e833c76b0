"""
YAML settings for the WAFlow service, one dataclass per section.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./waflow.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"              # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle_seconds: int = 1800
    sqlite_busy_timeout_seconds: float = 30.0


@dataclass
class WhatsAppConfig:
    base_url: str = "https://graph.facebook.com/v18.0"
    access_token: str = ""
    phone_number_id: str = ""
    verify_token: str = ""
    init_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 15.0


@dataclass
class FlowEngineConfig:
    max_invalid_responses: int = 0      # 0 = re-prompt forever
    default_timeout_minutes: int = 30
    timeout_sweep_seconds: int = 60
    max_node_visits: int = 200          # per triggered run / resumed step
    max_delay_seconds: float = 300.0
    webhook_timeout_seconds: float = 10.0


@dataclass
class SchedulerConfig:
    enabled: bool = True
    message_interval_seconds: int = 60
    startup_delay_seconds: int = 5
    sending_stale_seconds: int = 300    # claimed but never confirmed → failed
    wakeup_horizon_seconds: int = 60    # one-shot timers only for sends due within this


@dataclass
class LeadFetchConfig:
    enabled: bool = True
    api_url: str = "https://mapi.indiamart.com/wservce/crm/crmListing/v2/"
    config_refresh_seconds: int = 300
    retry_interval_seconds: int = 300
    request_timeout_seconds: float = 30.0
    first_run_lookback_hours: int = 24
    overdue_fetch_delay_seconds: float = 1.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass
class Settings:
    app_name: str = "WAFlow"
    debug: bool = False
    timezone: str = "Asia/Kolkata"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    flow_engine: FlowEngineConfig = field(default_factory=FlowEngineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    lead_fetch: LeadFetchConfig = field(default_factory=LeadFetchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = {
    "database": DatabaseConfig,
    "whatsapp": WhatsAppConfig,
    "flow_engine": FlowEngineConfig,
    "scheduler": SchedulerConfig,
    "lead_fetch": LeadFetchConfig,
    "logging": LoggingConfig,
}

_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

_settings: Optional[Settings] = None


def _expand_env(value: Any) -> Any:
    """
    Expand ``${VAR}`` and ``${VAR:-default}`` in every string of a YAML tree.

    An unset variable without a default is left as written so a missing
    secret shows up verbatim instead of as an empty string.
    """
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if not isinstance(value, str):
        return value

    def lookup(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        if name in os.environ:
            return os.environ[name]
        return default if default is not None else match.group(0)

    return _ENV_REF.sub(lookup, value)


def _build_section(cls, raw: Optional[dict[str, Any]]):
    """Instantiate a config dataclass from a YAML mapping, ignoring unknown keys."""
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _default_path() -> str:
    return os.environ.get("WAFLOW_CONFIG") or str(Path(__file__).with_name("settings.yaml"))


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Read settings from ``config_path`` (or ``$WAFLOW_CONFIG``, or the bundled
    settings.yaml) and make them the process settings. A missing file yields
    the dataclass defaults.
    """
    global _settings
    path = Path(config_path or _default_path())

    raw: dict[str, Any] = {}
    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})

    top_level = {f.name for f in fields(Settings)} - set(_SECTIONS)
    settings = Settings(**{k: v for k, v in raw.items() if k in top_level})
    for name, cls in _SECTIONS.items():
        setattr(settings, name, _build_section(cls, raw.get(name)))

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
