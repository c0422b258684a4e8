"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.

Precedence (highest first):
1. Environment variables (VERIFYFORGE_*)
2. Local config file (verifyforge_config.json)
3. Default values
"""

import os
import json
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field, fields

from verifyforge.output import print_warning

CONFIG_FILENAME = "verifyforge_config.json"
ENV_PREFIX = "VERIFYFORGE_"

# Classification thresholds
DEFAULT_MAX_LOOPS = 1
LARGE_CHANGE_FILES = 20
LIGHT_MAX_FILES = 4
LIGHT_MAX_LINES = 99
CIRCUIT_BREAKER_THRESHOLD = 3

# Cache housekeeping
CACHE_MAX_AGE_DAYS = 30
STATE_DIR = ".verifyforge"


def _read_config_file(config_path: Path) -> dict:
    """Read a JSON config file, warning (not failing) on bad content."""
    if not config_path.exists():
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print_warning(f"Failed to load config file {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        print_warning(f"Ignoring config file {config_path}: expected a JSON object")
        return {}
    return data


def _coerce(value: str, target):
    if isinstance(target, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(target, int):
        return int(value)
    if isinstance(target, float):
        return float(value)
    if isinstance(target, list):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def _apply_overrides(instance, file_config: dict, env_section: str = "", skip: tuple = ()) -> None:
    """Apply file values then environment variables onto a dataclass instance."""
    for f in fields(instance):
        if f.name in skip:
            continue
        if f.name in file_config:
            setattr(instance, f.name, file_config[f.name])
        env_name = f"{ENV_PREFIX}{env_section}{f.name.upper()}"
        env_value = os.environ.get(env_name)
        if env_value is not None:
            try:
                setattr(instance, f.name, _coerce(env_value, getattr(instance, f.name)))
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_name}: {env_value!r}") from e


@dataclass
class AnomalyConfig:
    """Settings for the advisory anomaly monitor."""
    window_sessions: int = 5
    min_samples: int = 5
    z_threshold: float = 2.0
    trend_window: int = 3
    trend_ratio: float = 1.5

    # Static session-end thresholds
    error_rate_threshold: float = 0.20
    min_calls_for_error_rate: int = 5
    token_threshold: float = 100_000

    @classmethod
    def from_env(cls, file_config: Optional[dict] = None) -> "AnomalyConfig":
        """Load anomaly settings from an optional dict and VERIFYFORGE_ANOMALY_* variables."""
        config = cls()
        _apply_overrides(config, file_config or {}, env_section="ANOMALY_")
        return config


@dataclass
class VerifyConfig:
    """Verify Forge configuration."""
    default_max_loops: int = DEFAULT_MAX_LOOPS
    large_change_files: int = LARGE_CHANGE_FILES
    light_max_files: int = LIGHT_MAX_FILES
    light_max_lines: int = LIGHT_MAX_LINES
    circuit_breaker_threshold: int = CIRCUIT_BREAKER_THRESHOLD
    extra_security_keywords: list[str] = field(default_factory=list)
    state_dir: str = STATE_DIR
    cache_max_age_days: int = CACHE_MAX_AGE_DAYS
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "VerifyConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (verifyforge_config.json)
        3. Default values
        """
        file_config = _read_config_file(Path(config_path or CONFIG_FILENAME))
        anomaly_section = file_config.pop("anomaly", {}) or {}

        config = cls()
        _apply_overrides(config, file_config, skip=("anomaly",))
        config.anomaly = AnomalyConfig.from_env(anomaly_section)
        return config
