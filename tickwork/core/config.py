"""
Tickwork Configuration — loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (TICKWORK_*)
3. Project config (./tickwork.toml)
4. User config (~/.tickwork/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    TICKWORK_TICK_INTERVAL → scheduler.tick_interval
    TICKWORK_DB_PATH → scheduler.db_path
    TICKWORK_TIMEZONE → scheduler.default_timezone
    TICKWORK_LOG_DIR → logging.dir

Jobs are declared as an array of tables:

    [[jobs]]
    name = "Health Check"
    every = "30 minutes"
    no_longer_than = "5 minutes"
    run = { command = "curl -fsS http://localhost:8080/health" }
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from tickwork.core.errors import ConfigError

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SchedulerConfig(BaseModel):
    """Scheduler loop configuration."""

    enabled: bool = True
    tick_interval: float = Field(default=60.0, gt=0)  # seconds
    db_path: str = "~/.tickwork/runs.db"
    default_timezone: str | None = None  # None = host local zone


class LoggingConfig(BaseModel):
    """Log file and console configuration."""

    dir: str = "~/.tickwork/logs"
    console_level: str = "WARNING"
    file_level: str = "DEBUG"
    log_events: bool = True


class ExecutorConfig(BaseModel):
    """Shell executor configuration."""

    shell: str | None = None  # None = /bin/sh via the platform default
    cwd: str = "."


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TickworkConfig(BaseModel):
    """Root configuration for Tickwork."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    jobs: list[dict[str, Any]] = Field(default_factory=list)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> TickworkConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        merged: dict[str, Any] = {}

        # Layer 1: User config (~/.tickwork/config.toml)
        user_config_path = user_path or Path.home() / ".tickwork" / "config.toml"
        if user_config_path.exists():
            _deep_merge(merged, _load_toml(user_config_path))

        # Layer 2: Project config (./tickwork.toml)
        project_config_path = project_path or Path.cwd() / "tickwork.toml"
        if project_config_path.exists():
            _deep_merge(merged, _load_toml(project_config_path))

        # Layer 3: Environment variables
        _deep_merge(merged, _load_from_env())

        # Layer 4: Explicit overrides
        if overrides:
            _deep_merge(merged, overrides)

        _substitute_env_vars(merged)

        try:
            return TickworkConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def get_db_path(self) -> Path:
        """Resolved path of the run-record database."""
        return Path(self.scheduler.db_path).expanduser()

    def get_log_dir(self) -> Path:
        """Resolved log directory."""
        return Path(self.logging.dir).expanduser()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file."""
    import tomllib

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def _load_from_env() -> dict[str, Any]:
    """Load configuration from TICKWORK_* environment variables."""
    result: dict[str, Any] = {}

    env_mapping = {
        "TICKWORK_ENABLED": ("scheduler", "enabled"),
        "TICKWORK_TICK_INTERVAL": ("scheduler", "tick_interval"),
        "TICKWORK_DB_PATH": ("scheduler", "db_path"),
        "TICKWORK_TIMEZONE": ("scheduler", "default_timezone"),
        "TICKWORK_LOG_DIR": ("logging", "dir"),
        "TICKWORK_LOG_LEVEL": ("logging", "console_level"),
        "TICKWORK_SHELL": ("executor", "shell"),
    }

    for env_var, (section, key) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            result.setdefault(section, {})[key] = _convert_value(value)

    return result


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _substitute(value: str) -> str:
    return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)


def _substitute_env_vars(data: dict | list) -> None:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    items = data.items() if isinstance(data, dict) else enumerate(data)
    for key, value in list(items):
        if isinstance(value, (dict, list)):
            _substitute_env_vars(value)
        elif isinstance(value, str):
            data[key] = _substitute(value)
