"""
Unit tests for the experimentation service facade.
"""

import pytest

import experiment_engine.engine.service as service_module
from experiment_engine.core.exceptions import InvalidConfigurationError, NotFoundError
from experiment_engine.engine.service import (
    ExperimentationService,
    create_ab_test,
    get_experimentation_service,
)
from experiment_engine.monitoring.metrics import REGISTRY
from experiment_engine.storage.file import FileExperimentStorage
from experiment_engine.storage.models import ExperimentStatus, ExperimentType
from experiment_engine.storage.results import Verdict


class TestFactories:
    """Tests for module-level factories."""

    @pytest.fixture(autouse=True)
    def reset_singleton(self, monkeypatch):
        """Start each test without a cached service."""
        monkeypatch.setattr(service_module, "_service", None)

    def test_singleton(self):
        """get_experimentation_service returns one shared instance."""
        first = get_experimentation_service()
        assert isinstance(first, ExperimentationService)
        assert get_experimentation_service() is first

    def test_create_ab_test(self, service):
        """Convenience builder creates a two-arm draft."""
        test = create_ab_test(service, "Headline", goal_id="click", control_weight=0.6)
        assert test.status == ExperimentStatus.DRAFT
        assert test.test_type == ExperimentType.SIMPLE_AB
        assert test.allocation.weights == pytest.approx({"control": 0.6, "treatment": 0.4})
        assert test.primary_goal.goal_id == "click"

    def test_create_ab_test_extra_keys(self, service):
        """Extra keyword arguments pass through to the configuration."""
        test = create_ab_test(service, "Headline", tags=["copy"], minimum_sample_size=500)
        assert test.tags == ["copy"]
        assert test.minimum_sample_size == 500


class TestErrorMetrics:
    """Tests for error accounting."""

    def test_errors_are_counted_and_reraised(self, service):
        """Engine errors are counted by type and component."""
        labels = {"error_type": "NotFoundError", "component": "tracking"}
        before = REGISTRY.get_sample_value("experiment_errors_total", labels) or 0.0

        with pytest.raises(NotFoundError):
            service.track_exposure("missing", "u1")

        assert REGISTRY.get_sample_value("experiment_errors_total", labels) == before + 1

    def test_invalid_profile(self, service, running_test):
        """Malformed collaborator data is a configuration error."""
        with pytest.raises(InvalidConfigurationError):
            service.assign_user_to_variant(running_test.test_id, "u1", device_info={"device_type": "toaster"})


class TestEndToEnd:
    """Full experiment flows."""

    def test_ab_flow(self, service, running_test):
        """Assign, expose, convert, analyze and conclude."""
        test_id = running_test.test_id
        for i in range(2400):
            user_id = f"user_{i}"
            variant_id = service.assign_user_to_variant(test_id, user_id)
            service.track_exposure(test_id, user_id)
            rate_every = 10 if variant_id == "control" else 5
            if i % rate_every == 0:
                service.track_conversion(test_id, user_id, "purchase")
                service.track_conversion(test_id, user_id, "revenue", 30.0)

        result = service.analyze_test(test_id)
        assert result.verdict == Verdict.SIGNIFICANT_WINNER
        assert result.winning_variant == "treatment"
        assert sum(s.exposures for s in result.summaries) == 2400

        service.stop_test(test_id)
        assert service.get_tests(status="concluded")[0].test_id == test_id

    def test_file_backed_flow(self, tmp_path, settings, ab_config):
        """Counters and assignments survive a restart on the file backend."""
        service = ExperimentationService(storage=FileExperimentStorage(tmp_path), settings=settings)
        test = service.create_test(ab_config)
        service.start_test(test.test_id)
        variant_id = service.assign_user_to_variant(test.test_id, "u1")
        service.track_conversion(test.test_id, "u1", "purchase")

        restarted = ExperimentationService(storage=FileExperimentStorage(tmp_path), settings=settings)
        reloaded = restarted.get_test(test.test_id)
        assert reloaded.status == ExperimentStatus.RUNNING
        assert reloaded.get_variant(variant_id).conversions == {"purchase": 1}
        assert restarted.assign_user_to_variant(test.test_id, "u1") == variant_id
        assert restarted.track_conversion(test.test_id, "u1", "purchase") is False
