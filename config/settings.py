"""
Configuration loader for the notification core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./notify_core.db"           # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    echo: bool = False                                 # log every SQL statement
    pool_size: int = 10                                # ignored for SQLite
    max_overflow: int = 20
    pool_timeout: float = 30.0
    pool_recycle: int = 1800


@dataclass
class BrokerConfig:
    backend: str = "memory"                 # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "notify"
    consumer_group: str = "notify-workers"
    consumer_name: str = ""
    reconnect_initial_delay: float = 5.0    # seconds, doubles per failed attempt
    reconnect_max_delay: float = 60.0
    health_check_interval: float = 30.0
    delayed_poll_interval: float = 1.0      # seconds between delay-exchange scans
    poll_block_ms: int = 1000               # XREADGROUP block time
    pending_claim_idle_ms: int = 300000     # reclaim entries idle this long from dead consumers


@dataclass
class SchedulerConfig:
    sweep_interval: float = 60.0            # overdue-task sweep period (seconds)
    sweep_batch_size: int = 100
    default_max_attempts: int = 3
    retry_backoff_base: float = 30.0        # seconds; 0 republishes immediately
    retry_backoff_max: float = 3600.0
    processing_timeout: float = 900.0       # PROCESSING longer than this is treated as abandoned


@dataclass
class BulkConfig:
    batch_size: int = 100
    batch_interval_ms: int = 1000
    default_recipient_name: str = "there"


@dataclass
class ChannelConfig:
    enabled: bool = True
    rate_limit: int = 100                   # max sends per window
    rate_window: float = 60.0               # window length in seconds
    per_recipient: bool = True              # key the limiter by channel:recipient
    transport: str = "log"                  # "log" | "smtp" | "http"
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class LimitsConfig:
    max_attachment_bytes: int = 5 * 1024 * 1024
    max_sms_length: int = 160
    min_push_token_length: int = 64


def _default_channels() -> dict[str, ChannelConfig]:
    return {
        "email": ChannelConfig(rate_limit=100),
        "sms": ChannelConfig(rate_limit=10),
        "push": ChannelConfig(rate_limit=1000),
    }


@dataclass
class Settings:
    app_name: str = "NotifyCore"
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=_default_channels)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], default):
    """Build a dataclass section, keeping defaults for keys the YAML omits."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    merged = {**default.__dict__, **known}
    return cls(**merged)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "NOTIFY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.json_logs = raw.get("json_logs", settings.json_logs)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "broker" in raw:
            settings.broker = _section(BrokerConfig, raw["broker"], settings.broker)
        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"], settings.scheduler)
        if "bulk" in raw:
            settings.bulk = _section(BulkConfig, raw["bulk"], settings.bulk)
        if "limits" in raw:
            settings.limits = _section(LimitsConfig, raw["limits"], settings.limits)

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                base = settings.channels.get(ch_name, ChannelConfig())
                settings.channels[ch_name] = _section(ChannelConfig, ch_data or {}, base)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    """Drop the cached settings (tests)."""
    global _settings
    _settings = None
