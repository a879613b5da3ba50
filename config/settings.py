"""
Configuration loader for the SMS delivery pipeline.
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
    url: str = "sqlite:///./sms_pipeline.db"           # postgresql:// | mysql:// | sqlite://


@dataclass
class QueuePolicyConfig:
    attempts: int = 3
    backoff_type: str = "exponential"   # "exponential" | "fixed"
    backoff_delay: int = 2000           # milliseconds
    max_backoff: int = 60000            # milliseconds, cap for exponential backoff
    remove_on_complete: int = 100       # completed jobs kept per queue
    remove_on_fail: int = 50            # failed jobs kept per queue
    concurrency: int = 5


def _default_policies() -> dict[str, QueuePolicyConfig]:
    return {
        "sms-send": QueuePolicyConfig(
            attempts=3, backoff_type="exponential", backoff_delay=2000,
            remove_on_complete=100, remove_on_fail=50, concurrency=20,
        ),
        "campaign-send": QueuePolicyConfig(
            attempts=2, backoff_type="fixed", backoff_delay=5000,
            remove_on_complete=50, remove_on_fail=25, concurrency=5,
        ),
        "automation-trigger": QueuePolicyConfig(
            attempts=2, backoff_type="exponential", backoff_delay=1000,
            remove_on_complete=200, remove_on_fail=100, concurrency=10,
        ),
    }


@dataclass
class QueueConfig:
    backend: str = "redis"              # "redis" for production, "memory" for dev
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "sms-workers"
    health_check_interval: int = 30     # min seconds between broker pings
    operation_timeout: float = 5.0      # seconds per broker call
    poll_interval: float = 1.0          # fallback table poll, seconds
    stalled_after: float = 600          # unacknowledged broker entries are reclaimed after, seconds
    policies: dict[str, QueuePolicyConfig] = field(default_factory=_default_policies)


@dataclass
class GatewayConfig:
    provider: str = "mock"              # "http" | "mock"
    base_url: str = "https://api.mitto.ch"
    api_key: str = ""
    sender: str = ""
    timeout: float = 15.0


@dataclass
class SchedulerConfig:
    interval: int = 60
    startup_delay: int = 60
    batch_size: int = 50


@dataclass
class DeliverySyncConfig:
    interval: int = 300
    startup_delay: int = 60
    campaign_limit: int = 50
    concurrency: int = 10


@dataclass
class EventsConfig:
    enabled: bool = True
    interval: int = 300
    startup_delay: int = 60
    fallback_minutes: int = 10
    watermark_sample_size: int = 50
    page_size: int = 50
    retention_days: int = 7
    feed_url: str = ""
    access_token: str = ""
    timeout: float = 15.0
    templates: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "sms-pipeline"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    delivery_sync: DeliverySyncConfig = field(default_factory=DeliverySyncConfig)
    events: EventsConfig = field(default_factory=EventsConfig)


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


def _section(cls, raw: dict[str, Any]):
    """Build a dataclass section, ignoring unknown keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def parse_settings(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-loaded mapping."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)

    if "database" in raw:
        settings.database = _section(DatabaseConfig, raw["database"])

    if "queue" in raw:
        q = dict(raw["queue"])
        policies = _default_policies()
        for name, policy in (q.pop("policies", None) or {}).items():
            base = policies.get(name, QueuePolicyConfig())
            merged = {**base.__dict__, **policy}
            policies[name] = _section(QueuePolicyConfig, merged)
        settings.queue = _section(QueueConfig, q)
        settings.queue.policies = policies

    if "gateway" in raw:
        settings.gateway = _section(GatewayConfig, raw["gateway"])

    if "scheduler" in raw:
        settings.scheduler = _section(SchedulerConfig, raw["scheduler"])

    if "delivery_sync" in raw:
        settings.delivery_sync = _section(DeliverySyncConfig, raw["delivery_sync"])

    if "events" in raw:
        settings.events = _section(EventsConfig, raw["events"])

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SMS_PIPELINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = parse_settings(raw)
    return _settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
