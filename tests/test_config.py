"""
Tests for Configuration Loading
===============================

Tests for config.py - defaults, config file and environment precedence.
"""

import json
import pytest
import tempfile
from pathlib import Path

from verifyforge.config import AnomalyConfig, VerifyConfig


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clean_env(monkeypatch):
    """Strip VERIFYFORGE_* variables leaking in from the environment."""
    import os
    for name in list(os.environ):
        if name.startswith("VERIFYFORGE_"):
            monkeypatch.delenv(name)
    return monkeypatch


def write_config(directory: Path, data) -> Path:
    path = directory / "verifyforge_config.json"
    path.write_text(json.dumps(data))
    return path


class TestVerifyConfig:
    """Precedence: defaults < file < environment."""

    def test_defaults(self, temp_project, clean_env):
        config = VerifyConfig.load(temp_project / "missing.json")
        assert config.default_max_loops == 1
        assert config.large_change_files == 20
        assert config.light_max_files == 4
        assert config.light_max_lines == 99
        assert config.circuit_breaker_threshold == 3
        assert config.cache_max_age_days == 30
        assert config.state_dir == ".verifyforge"
        assert config.anomaly == AnomalyConfig()

    def test_file_overrides(self, temp_project, clean_env):
        path = write_config(temp_project, {
            "default_max_loops": 3,
            "extra_security_keywords": ["jwt"],
            "anomaly": {"z_threshold": 3.0},
        })
        config = VerifyConfig.load(path)
        assert config.default_max_loops == 3
        assert config.extra_security_keywords == ["jwt"]
        assert config.anomaly.z_threshold == 3.0
        assert config.anomaly.window_sessions == 5

    def test_env_beats_file(self, temp_project, clean_env):
        path = write_config(temp_project, {"default_max_loops": 3})
        clean_env.setenv("VERIFYFORGE_DEFAULT_MAX_LOOPS", "7")
        clean_env.setenv("VERIFYFORGE_EXTRA_SECURITY_KEYWORDS", "oauth, jwt")
        clean_env.setenv("VERIFYFORGE_ANOMALY_TREND_RATIO", "2.5")

        config = VerifyConfig.load(path)
        assert config.default_max_loops == 7
        assert config.extra_security_keywords == ["oauth", "jwt"]
        assert config.anomaly.trend_ratio == 2.5

    def test_bad_file_falls_back_to_defaults(self, temp_project, clean_env):
        path = temp_project / "verifyforge_config.json"
        path.write_text("{not json")
        assert VerifyConfig.load(path).default_max_loops == 1

    def test_non_object_file_ignored(self, temp_project, clean_env):
        path = write_config(temp_project, [1, 2, 3])
        assert VerifyConfig.load(path).large_change_files == 20

    def test_bad_env_value_raises(self, temp_project, clean_env):
        clean_env.setenv("VERIFYFORGE_LIGHT_MAX_FILES", "several")
        with pytest.raises(ValueError, match="VERIFYFORGE_LIGHT_MAX_FILES"):
            VerifyConfig.load(temp_project / "missing.json")


class TestAnomalyConfig:
    """Anomaly settings on their own."""

    def test_from_env(self, clean_env):
        clean_env.setenv("VERIFYFORGE_ANOMALY_MIN_SAMPLES", "8")
        config = AnomalyConfig.from_env({"token_threshold": 50_000})
        assert config.min_samples == 8
        assert config.token_threshold == 50_000
        assert config.error_rate_threshold == 0.20
