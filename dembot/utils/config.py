"""
Configuration management for DemBot acquisition.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "dembot"
    version: str = "0.1.0"
    log_level: str = "INFO"
    data_dir: str = "data"
    logs_dir: str = "logs"
    json_logs: bool = True


class CacheConfig(BaseModel):
    """Smart cache configuration.

    Durations are in seconds. ``cache_file`` is resolved against the
    project root when relative.
    """

    model_config = ConfigDict(extra="forbid")

    ttl_seconds: float = 600.0  # 10 minutes for profiles
    max_size: int = 2000
    cleanup_interval_seconds: float = 60.0
    persistent: bool = True
    cache_file: str = "data/smart-cache.json"


class BatchPresetConfig(BaseModel):
    """One set of batch executor defaults."""

    model_config = ConfigDict(extra="forbid")

    max_concurrency: int = 5
    batch_size: int = 10
    delay_between_batches: float = 1.0
    retry_attempts: int = 2
    retry_delay: float = 2.0


class BatchConfig(BaseModel):
    """Batch executor configuration.

    ``profiles`` and ``races`` are the presets used by the domain wrappers:
    profile pages are heavier, so they run with lower concurrency and a
    longer pause between batches.
    """

    model_config = ConfigDict(extra="forbid")

    default: BatchPresetConfig = Field(default_factory=BatchPresetConfig)
    profiles: BatchPresetConfig = Field(
        default_factory=lambda: BatchPresetConfig(
            max_concurrency=3,
            batch_size=5,
            delay_between_batches=2.0,
        )
    )
    races: BatchPresetConfig = Field(
        default_factory=lambda: BatchPresetConfig(
            max_concurrency=4,
            batch_size=8,
            delay_between_batches=1.5,
        )
    )


class SessionConfig(BaseModel):
    """Session pool configuration."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = "https://powerplayusa.net"
    login_path: str = "/login"
    max_sessions: int = 3
    max_idle_seconds: float = 300.0  # 5 minutes
    cleanup_interval_seconds: float = 60.0
    nav_timeout_seconds: float = 30.0


class BrowserConfig(BaseModel):
    """Browser configuration for the Playwright launcher."""

    model_config = ConfigDict(extra="forbid")

    headless: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )
    accept_language: str = "en-US,en;q=0.9"
    timezone_id: str = "America/New_York"
    viewport_width: int = 1366
    viewport_height: int = 768
    # Resource types aborted on every page (Playwright resource_type names)
    block_resource_types: list[str] = Field(
        default_factory=lambda: [
            "image",
            "media",
            "font",
            "stylesheet",
            "beacon",
            "preload",
            "prefetch",
            "websocket",
        ]
    )
    block_third_party: bool = True


class AuthConfig(BaseModel):
    """Authentication configuration.

    ``cookie`` is a raw ``Cookie`` header value. A bare value without ``=``
    is treated as the value of ``cookie_name``.
    """

    model_config = ConfigDict(extra="forbid")

    cookie: str | None = None
    cookie_name: str = "ppusa_session"


class MetricsConfig(BaseModel):
    """Performance monitor configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    metrics_file: str = "data/performance-metrics.json"


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides.

    local.yaml holds machine-specific overrides under a ``settings`` key:

        settings:
          cache:
            persistent: false

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config: dict[str, Any] = {}

    base_path = config_dir / "settings.yaml"
    if base_path.exists():
        with open(base_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    local_path = config_dir / "local.yaml"
    if local_path.exists():
        with open(local_path, encoding="utf-8") as f:
            local_overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, local_overrides.get("settings", {}))

    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with DEMBOT_ and use
    double underscores for nested keys.

    Example:
        DEMBOT_CACHE__TTL_SECONDS=120

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    prefix = "DEMBOT_"

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == "DEMBOT_CONFIG_DIR":
            continue

        key_path = key[len(prefix) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    # The login cookie is traditionally exported without the prefix
    cookie = os.environ.get("PPUSA_COOKIE")
    if cookie:
        auth = config.setdefault("auth", {})
        if not auth.get("cookie"):
            auth["cookie"] = cookie

    return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config_dir = Path(os.environ.get("DEMBOT_CONFIG_DIR", "config"))

    config = _load_yaml_config(config_dir)
    config = _apply_env_overrides(config)

    return Settings(**config)


def reset_settings() -> None:
    """Drop the cached settings (for testing only)."""
    get_settings.cache_clear()


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    # Assuming this file is at dembot/utils/config.py
    return Path(__file__).parent.parent.parent


def resolve_path(path: str | Path) -> Path:
    """Resolve a configured path against the project root.

    Args:
        path: Absolute path, or path relative to the project root.

    Returns:
        Absolute path.
    """
    path = Path(path)
    if path.is_absolute():
        return path
    return get_project_root() / path


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    settings = get_settings()

    dirs = [
        resolve_path(settings.general.data_dir),
        resolve_path(settings.general.logs_dir),
        resolve_path(settings.cache.cache_file).parent,
    ]

    for dir_path in dirs:
        dir_path.mkdir(parents=True, exist_ok=True)
