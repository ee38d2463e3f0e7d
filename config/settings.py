"""
Configuration loader for the reply relay.
Reads settings from YAML file with environment variable substitution.
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
    url: str = "sqlite:///./data/reply_relay.db"      # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"


@dataclass
class QueueConfig:
    batch_size: int = 10
    max_retries: int = 3                # outbound rows at this retry_count are parked
    stale_grace_seconds: int = 600      # processing/sending rows older than this are reset each tick
    tick_interval_seconds: float = 45.0
    lock_path: str = "./data/tick.lock"
    history_limit: int = 20             # thread messages handed to the guard and generator
    max_slot_wait_seconds: float = 5.0  # longest a tick will sleep for a rate limiter slot
    fetch_timeout_seconds: float = 30.0
    generate_timeout_seconds: float = 30.0
    emit_timeout_seconds: float = 30.0
    conversation_filter: list[str] = field(default_factory=list)
    generation_timeout_message: str = (
        "Sorry, your request took longer than {timeout} seconds to process, "
        "so I stopped working on it. Try asking again with a shorter or "
        "more specific question."
    )


@dataclass
class RateLimitConfig:
    bucket_size: int = 5
    refill_rate: float = 1 / 65         # tokens per second, stays under one call per minute
    state_file: str = "./data/rate_limit_state.json"


@dataclass
class LoopGuardConfig:
    max_responses_per_thread: int = 10
    max_responses_per_actor_per_hour: int = 20
    max_similar_responses: int = 3
    emergency_stop_threshold: int = 20
    similarity_threshold: float = 0.8
    circle_window: int = 6              # trailing thread messages inspected for circles
    thread_window_seconds: int = 3600
    actor_window_seconds: int = 3600
    emergency_window_seconds: int = 600
    recovery_window_seconds: int = 1800
    conversation_circle_detection: bool = True
    trigger_word_sanitization: bool = True
    trigger_words: list[str] = field(default_factory=lambda: ["AI", "ШІ"])


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "ReplyRelay"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    loop_guard: LoopGuardConfig = field(default_factory=LoopGuardConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a YAML value to the type of the dataclass default (env substitution yields strings)."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int) and not isinstance(default, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _build_section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    section = cls()
    for f in fields(cls):
        if f.name in raw and raw[f.name] is not None:
            setattr(section, f.name, _coerce(raw[f.name], getattr(section, f.name)))
    return section


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _coerce(raw.get("debug", settings.debug), False)

        if "database" in raw:
            settings.database = _build_section(DatabaseConfig, raw["database"] or {})
        if "queue" in raw:
            settings.queue = _build_section(QueueConfig, raw["queue"] or {})
        if "rate_limit" in raw:
            settings.rate_limit = _build_section(RateLimitConfig, raw["rate_limit"] or {})
        if "loop_guard" in raw:
            settings.loop_guard = _build_section(LoopGuardConfig, raw["loop_guard"] or {})
        if "logging" in raw:
            settings.logging = _build_section(LoggingConfig, raw["logging"] or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
