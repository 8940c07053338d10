from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from utils.constants import DEFAULT_EDIT_WINDOW_MINUTES, DEFAULT_SESSION_TTL_DAYS


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/crm.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    channel_prefix: str = "crm"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "crm.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class TicketConfig:
    edit_window_minutes: int = DEFAULT_EDIT_WINDOW_MINUTES
    ticket_number_prefix: str = "T"


@dataclass(slots=True)
class SessionConfig:
    ttl_days: int = DEFAULT_SESSION_TTL_DAYS
    key_prefix: str = "crm:session"


@dataclass(slots=True)
class ApiConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class WebhookLogConfig:
    enabled: bool = False
    url: str = ""


@dataclass(slots=True)
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    webhook_log: WebhookLogConfig = field(default_factory=WebhookLogConfig)


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _setting(raw: dict[str, Any], section: str, key: str, default: Any, env: str | None = None) -> Any:
    """Environment first, then the YAML section, then the default. The default's type decides the cast."""
    value = _get_env_str(env) if env else None
    if value is None:
        value = _deep_get(raw, section, key)
    if isinstance(default, bool):
        return _as_bool(value, default)
    if isinstance(default, int):
        return _as_int(value, default)
    return default if value is None else str(value)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def load_config(config_path: Path) -> AppConfig:
    load_dotenv(config_path.parent.parent / ".env")
    raw = _load_yaml(config_path)
    defaults = AppConfig()

    edit_window = _setting(raw, "tickets", "edit_window_minutes", DEFAULT_EDIT_WINDOW_MINUTES, env="EDIT_WINDOW_MINUTES")
    if edit_window <= 0:
        raise ConfigError("tickets.edit_window_minutes must be positive")

    return AppConfig(
        database=DatabaseConfig(
            url=_setting(raw, "database", "url", defaults.database.url, env="DATABASE_URL"),
            pool_min_size=_setting(raw, "database", "pool_min_size", defaults.database.pool_min_size, env="DB_POOL_MIN"),
            pool_max_size=_setting(raw, "database", "pool_max_size", defaults.database.pool_max_size, env="DB_POOL_MAX"),
            timeout_seconds=_setting(
                raw, "database", "timeout_seconds", defaults.database.timeout_seconds, env="DB_TIMEOUT_SECONDS"
            ),
        ),
        redis=RedisConfig(
            enabled=_setting(raw, "redis", "enabled", False, env="REDIS_ENABLED"),
            url=_setting(raw, "redis", "url", defaults.redis.url, env="REDIS_URL"),
            channel_prefix=_setting(raw, "redis", "channel_prefix", defaults.redis.channel_prefix),
        ),
        logging=LoggingConfig(
            level=_setting(raw, "logging", "level", defaults.logging.level, env="LOG_LEVEL"),
            directory=_setting(raw, "logging", "directory", defaults.logging.directory),
            file_name=_setting(raw, "logging", "file_name", defaults.logging.file_name),
            max_bytes=_setting(raw, "logging", "max_bytes", defaults.logging.max_bytes),
            backup_count=_setting(raw, "logging", "backup_count", defaults.logging.backup_count),
            json_console=_setting(raw, "logging", "json_console", False),
        ),
        tickets=TicketConfig(
            edit_window_minutes=edit_window,
            ticket_number_prefix=_setting(raw, "tickets", "ticket_number_prefix", defaults.tickets.ticket_number_prefix),
        ),
        session=SessionConfig(
            ttl_days=_setting(raw, "session", "ttl_days", DEFAULT_SESSION_TTL_DAYS),
            key_prefix=_setting(raw, "session", "key_prefix", defaults.session.key_prefix),
        ),
        api=ApiConfig(
            enabled=_setting(raw, "api", "enabled", True),
            host=_setting(raw, "api", "host", defaults.api.host),
            port=_setting(raw, "api", "port", defaults.api.port, env="PORT"),
            api_key=_setting(raw, "api", "api_key", "", env="CRM_API_KEY"),
        ),
        webhook_log=WebhookLogConfig(
            enabled=_setting(raw, "webhook_log", "enabled", False),
            url=_setting(raw, "webhook_log", "url", "", env="WEBHOOK_LOG_URL"),
        ),
    )
