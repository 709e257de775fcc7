"""
Configuration module for Quadly.

This module centralizes all configuration management using environment variables
with appropriate defaults and validation.
"""

import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass

from quadly.shared.exceptions import ConfigurationError
from quadly.shared.logging_config import LogLevel, LogFormat

DEFAULT_QUADLET_DIR = "~/.config/containers/systemd"


@dataclass
class QuadletConfig:
    """Where quadlet artifacts live."""
    directory: Path


@dataclass
class MonitoringConfig:
    """Status polling and subscriber settings."""
    poll_interval: float
    subscriber_buffer: int
    query_timeout: float
    query_retries: int


@dataclass
class ServerConfig:
    """HTTP server configuration settings."""
    host: str
    port: int
    environment: str
    shutdown_timeout: int


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: LogLevel
    format: LogFormat
    log_file: Optional[str]
    audit_file: Optional[str]
    enable_audit: bool


@dataclass
class AppConfig:
    """Complete application configuration."""
    quadlets: QuadletConfig
    monitoring: MonitoringConfig
    server: ServerConfig
    logging: LoggingConfig


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')


def get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}", config_key=key)


def get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", config_key=key)


def _get_env_enum(key: str, enum_cls, default):
    raw = os.getenv(key)
    if not raw:
        return default
    for member in enum_cls:
        if member.value.lower() == raw.strip().lower():
            return member
    raise ConfigurationError(f"{key} has unsupported value {raw!r}", config_key=key)


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    quadlet_dir = Path(os.getenv("QUADLY_QUADLET_DIR", DEFAULT_QUADLET_DIR)).expanduser()

    monitoring_config = MonitoringConfig(
        poll_interval=get_env_float("QUADLY_POLL_INTERVAL", 2.0),
        subscriber_buffer=get_env_int("QUADLY_SUBSCRIBER_BUFFER", 64),
        query_timeout=get_env_float("QUADLY_QUERY_TIMEOUT", 5.0),
        query_retries=get_env_int("QUADLY_QUERY_RETRIES", 0)
    )

    if monitoring_config.poll_interval <= 0:
        raise ConfigurationError("QUADLY_POLL_INTERVAL must be positive", config_key="QUADLY_POLL_INTERVAL")
    if monitoring_config.subscriber_buffer <= 0:
        raise ConfigurationError("QUADLY_SUBSCRIBER_BUFFER must be positive", config_key="QUADLY_SUBSCRIBER_BUFFER")
    if monitoring_config.query_timeout <= 0:
        raise ConfigurationError("QUADLY_QUERY_TIMEOUT must be positive", config_key="QUADLY_QUERY_TIMEOUT")
    if monitoring_config.query_retries < 0:
        raise ConfigurationError("QUADLY_QUERY_RETRIES cannot be negative", config_key="QUADLY_QUERY_RETRIES")

    server_config = ServerConfig(
        host=os.getenv("HTTP_HOST", "127.0.0.1"),
        port=get_env_int("HTTP_PORT", 3000),
        environment=os.getenv("ENVIRONMENT", "production"),
        shutdown_timeout=get_env_int("SHUTDOWN_TIMEOUT", 30)
    )

    logging_config = LoggingConfig(
        level=_get_env_enum("LOG_LEVEL", LogLevel, LogLevel.INFO),
        format=_get_env_enum("LOG_FORMAT", LogFormat, LogFormat.STANDARD),
        log_file=os.getenv("LOG_FILE") or None,
        audit_file=os.getenv("AUDIT_LOG_FILE") or None,
        enable_audit=get_env_bool("AUDIT_LOG_ENABLED", True)
    )

    return AppConfig(
        quadlets=QuadletConfig(directory=quadlet_dir),
        monitoring=monitoring_config,
        server=server_config,
        logging=logging_config
    )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next call reloads it."""
    global _config
    _config = None
