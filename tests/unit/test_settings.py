"""
Unit tests for config/settings.py
"""

import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from experiment_engine.config.settings import (
    AnalysisSettings,
    BanditSettings,
    LoggingSettings,
    Settings,
    StorageSettings,
    get_settings,
)


class TestAnalysisSettings:
    """Tests for AnalysisSettings model."""

    def test_default_values(self):
        """Test default analysis settings."""
        settings = AnalysisSettings()
        assert settings.significance_level == 0.05
        assert settings.power == 0.80
        assert settings.confidence_level == 0.95
        assert settings.multiple_testing_correction == "benjamini_hochberg"

    def test_significance_level_bounds(self):
        """Alpha must lie strictly between 0 and 1."""
        with pytest.raises(ValidationError):
            AnalysisSettings(significance_level=1.5)
        with pytest.raises(ValidationError):
            AnalysisSettings(significance_level=0)

    def test_unknown_correction_rejected(self):
        """Only the supported corrections are accepted."""
        with pytest.raises(ValidationError):
            AnalysisSettings(multiple_testing_correction="holm")


class TestBanditSettings:
    """Tests for BanditSettings model."""

    def test_default_values(self):
        """Test default bandit settings."""
        settings = BanditSettings()
        assert settings.exploration_epsilon == 0.05
        assert settings.thompson_draws == 10000

    def test_negative_epsilon_rejected(self):
        """Exploration floor cannot be negative."""
        with pytest.raises(ValidationError):
            BanditSettings(exploration_epsilon=-0.1)


class TestStorageSettings:
    """Tests for StorageSettings model."""

    def test_backend_normalized(self):
        """Backend names are case-insensitive."""
        assert StorageSettings(backend="FILE").backend == "file"

    def test_unknown_backend_rejected(self):
        """Test invalid backend."""
        with pytest.raises(ValidationError):
            StorageSettings(backend="redis")


class TestSettings:
    """Tests for main Settings class."""

    def test_default_values(self):
        """Test default settings."""
        settings = Settings()
        assert settings.app_name == "Experiment Engine"
        assert isinstance(settings.analysis, AnalysisSettings)
        assert isinstance(settings.logging, LoggingSettings)

    def test_environment_override(self, monkeypatch):
        """Nested values can be set from the environment."""
        monkeypatch.setenv("EXPERIMENT_ENGINE_ANALYSIS__SIGNIFICANCE_LEVEL", "0.01")
        settings = Settings()
        assert settings.analysis.significance_level == 0.01

    def test_load_yaml_config_missing_file(self):
        """A missing file yields an empty mapping."""
        assert Settings.load_yaml_config(Path("/nonexistent/engine.yaml")) == {}

    def test_load_engine_config(self):
        """YAML sections replace defaults."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "engine.yaml"
            path.write_text(yaml.safe_dump({
                "analysis": {"power": 0.9, "max_looks": 3},
                "bandit": {"exploration_epsilon": 0.1},
            }))
            settings = Settings()
            settings.load_engine_config(path)

        assert settings.analysis.power == 0.9
        assert settings.analysis.max_looks == 3
        assert settings.bandit.exploration_epsilon == 0.1

    def test_environment_wins_over_yaml(self, monkeypatch):
        """Sections set from the environment are not replaced by YAML."""
        monkeypatch.setenv("EXPERIMENT_ENGINE_ANALYSIS__POWER", "0.95")
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "engine.yaml"
            path.write_text(yaml.safe_dump({"analysis": {"power": 0.9}}))
            settings = Settings()
            settings.load_engine_config(path)

        assert settings.analysis.power == 0.95

    def test_bundled_engine_yaml(self):
        """The shipped engine.yaml loads into valid settings."""
        get_settings.cache_clear()
        try:
            settings = get_settings()
            assert settings.analysis.bootstrap_iterations == 2000
            assert settings.bandit.thompson_draws == 10000
        finally:
            get_settings.cache_clear()
