"""
Unit tests for test lifecycle management.
"""

from datetime import timedelta

import pytest

from experiment_engine.core.exceptions import (
    AlreadyRunningError,
    InvalidConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    TestConcludedError,
)
from experiment_engine.storage.models import (
    BanditStrategy,
    ExperimentStatus,
    ExperimentType,
    InferenceMethod,
)


class TestBuildAndValidate:
    """Tests for configuration parsing and validation."""

    def test_create_from_config(self, service, ab_config):
        """A valid config becomes a draft test with settings defaults."""
        test = service.create_test(ab_config)
        assert test.status == ExperimentStatus.DRAFT
        assert test.test_type == ExperimentType.SIMPLE_AB
        assert test.allocation.weights == {"control": 0.5, "treatment": 0.5}
        assert test.statistics.method == InferenceMethod.FREQUENTIST
        assert test.statistics.bootstrap_iterations == 400
        assert test.planned_duration == timedelta(days=14)
        assert [g.goal_id for g in test.goals] == ["purchase", "revenue"]

    def test_generated_test_id(self, service, ab_config):
        """A missing test id is generated."""
        del ab_config["test_id"]
        test = service.create_test(ab_config)
        assert test.test_id.startswith("test_")

    def test_weights_from_allocation(self, service, ab_config):
        """Weights may be given in the allocation block."""
        for variant in ab_config["variants"]:
            del variant["weight"]
        ab_config["allocation"] = {"weights": {"control": 0.3, "treatment": 0.7}}
        assert service.create_test(ab_config).allocation.weights == {"control": 0.3, "treatment": 0.7}

    def test_planned_duration(self, service, ab_config):
        """Duration accepts seconds or days."""
        ab_config["planned_duration_seconds"] = 3600
        assert service.create_test(ab_config).planned_duration == timedelta(hours=1)

    @pytest.mark.parametrize("mutate,field_name", [
        (lambda c: c["variants"].pop(), "variants"),
        (lambda c: c["variants"][1].update(variant_id="control"), "variants"),
        (lambda c: c["variants"][1].update(is_control=True), "is_control"),
        (lambda c: c["variants"][0].update(is_control=False), "is_control"),
        (lambda c: c["variants"][1].update(weight=0.6), "weights"),
        (lambda c: c["variants"][1].update(weight=-0.5), "weights"),
        (lambda c: c.update(name="  "), "name"),
        (lambda c: c.update(allocation={"rollout_percentage": 150}), "rollout_percentage"),
        (lambda c: c.update(allocation={"exploration_epsilon": 0.6}), "exploration_epsilon"),
        (lambda c: c["secondary_goals"].append({"goal_id": "purchase"}), "goals"),
        (lambda c: c["primary_goal"].update(minimum_detectable_effect=0), "minimum_detectable_effect"),
        (lambda c: c["primary_goal"].update(expected_baseline=1.5), "expected_baseline"),
        (lambda c: c.update(statistics={"significance_level": 1.0}), "significance_level"),
        (lambda c: c.update(statistics={"max_looks": 0}), "max_looks"),
        (lambda c: c.update(minimum_sample_size=0), "minimum_sample_size"),
        (lambda c: c.update(max_sample_size=10), "max_sample_size"),
        (lambda c: c.update(planned_duration_days=0), "planned_duration"),
    ])
    def test_invalid_configs(self, service, ab_config, mutate, field_name):
        """Each violated invariant is rejected with the offending field."""
        mutate(ab_config)
        with pytest.raises(InvalidConfigurationError) as exc_info:
            service.create_test(ab_config)
        assert exc_info.value.field_name == field_name
        assert service.get_tests() == []

    def test_missing_required_field(self, service, ab_config):
        """Test missing primary goal."""
        del ab_config["primary_goal"]
        with pytest.raises(InvalidConfigurationError) as exc_info:
            service.create_test(ab_config)
        assert exc_info.value.field_name == "primary_goal"

    def test_malformed_enum(self, service, ab_config):
        """Unknown enum values are configuration errors."""
        ab_config["test_type"] = "split_url"
        with pytest.raises(InvalidConfigurationError):
            service.create_test(ab_config)

    def test_duplicate_test_id(self, service, ab_config):
        """Test ids are unique."""
        service.create_test(ab_config)
        with pytest.raises(InvalidConfigurationError):
            service.create_test(ab_config)

    def test_weight_tolerance(self, service, ab_config):
        """Small floating drift in the weight sum is accepted."""
        ab_config["variants"][0]["weight"] = 0.4999
        assert service.create_test(ab_config) is not None

    def test_bandit_defaults(self, service, ab_config):
        """Bandit tests default to Thompson sampling."""
        ab_config["test_type"] = "multi_armed_bandit"
        test = service.create_test(ab_config)
        assert test.allocation.bandit_strategy == BanditStrategy.THOMPSON_SAMPLING


class TestTransitions:
    """Tests for status transitions."""

    def test_start_and_stop(self, service, ab_config):
        """draft -> running -> concluded stamps the timestamps."""
        test = service.create_test(ab_config)
        assert service.start_test(test.test_id) is True
        assert test.status == ExperimentStatus.RUNNING
        assert test.ends_at - test.activated_at == test.planned_duration

        assert service.stop_test(test.test_id) is True
        assert test.status == ExperimentStatus.CONCLUDED
        assert test.concluded_at is not None

    def test_start_running_test(self, service, running_test):
        """Starting twice is rejected."""
        with pytest.raises(AlreadyRunningError):
            service.start_test(running_test.test_id)

    def test_restart_concluded_test(self, service, running_test):
        """Concluded tests cannot be restarted."""
        service.stop_test(running_test.test_id)
        with pytest.raises(TestConcludedError):
            service.start_test(running_test.test_id)

    def test_stop_draft(self, service, ab_config):
        """Only running tests can be stopped."""
        test = service.create_test(ab_config)
        with pytest.raises(InvalidTransitionError):
            service.stop_test(test.test_id)

    def test_archive(self, service, ab_config, running_test):
        """Drafts can be archived; running tests cannot."""
        ab_config["test_id"] = "other"
        draft = service.create_test(ab_config)
        assert service.archive_test(draft.test_id) is True
        assert draft.status == ExperimentStatus.ARCHIVED
        with pytest.raises(InvalidTransitionError):
            service.archive_test(running_test.test_id)
        with pytest.raises(TestConcludedError):
            service.start_test(draft.test_id)

    def test_unknown_test(self, service):
        """Transitions on unknown tests raise NotFoundError."""
        for operation in (service.start_test, service.stop_test, service.archive_test):
            with pytest.raises(NotFoundError):
                operation("missing")


class TestEditing:
    """Tests for update_test and clone_test."""

    def test_update_draft(self, service, ab_config):
        """Drafts can be edited and revalidated."""
        test = service.create_test(ab_config)
        updated = service.update_test(test.test_id, name="Renamed", tags=["ui"])
        assert updated.name == "Renamed"
        assert service.get_test(test.test_id).tags == ["ui"]
        assert updated.created_at == test.created_at

    def test_update_variants_resets_weights(self, service, ab_config):
        """Replacing variants without weights gives an equal split."""
        test = service.create_test(ab_config)
        updated = service.update_test(test.test_id, variants=[
            {"variant_id": "control", "is_control": True},
            {"variant_id": "b"},
            {"variant_id": "c"},
        ])
        assert updated.allocation.weights == pytest.approx({"control": 1 / 3, "b": 1 / 3, "c": 1 / 3})

    def test_update_invalid_keeps_original(self, service, ab_config):
        """A failed edit leaves the stored test unchanged."""
        test = service.create_test(ab_config)
        with pytest.raises(InvalidConfigurationError):
            service.update_test(test.test_id, minimum_sample_size=-1)
        assert service.get_test(test.test_id).minimum_sample_size == 100

    def test_update_running_rejected(self, service, running_test):
        """Running tests are not editable."""
        with pytest.raises(InvalidTransitionError):
            service.update_test(running_test.test_id, name="x")

    def test_update_cannot_change_id(self, service, ab_config):
        """Test renaming the id."""
        test = service.create_test(ab_config)
        with pytest.raises(InvalidConfigurationError):
            service.update_test(test.test_id, test_id="other")

    def test_clone(self, service, running_test):
        """Clones are fresh drafts with the same configuration."""
        service.assign_user_to_variant(running_test.test_id, "u1")
        service.track_exposure(running_test.test_id, "u1")

        clone = service.clone_test(running_test.test_id)
        assert clone.test_id != running_test.test_id
        assert clone.status == ExperimentStatus.DRAFT
        assert clone.name == "Checkout button color (copy)"
        assert all(v.exposures == 0 for v in clone.variants)
        assert clone.allocation.weights == running_test.allocation.weights
        assert clone.last_result is None


class TestQueries:
    """Tests for query operations."""

    def test_get_tests_filters(self, service, ab_config, running_test):
        """Filter by status and tag."""
        ab_config.update(test_id="draft_one", tags=["other"])
        service.create_test(ab_config)

        assert [t.test_id for t in service.get_tests(status="running")] == [running_test.test_id]
        assert [t.test_id for t in service.get_tests(tag="other")] == ["draft_one"]
        assert len(service.get_tests()) == 2

    def test_get_test_missing(self, service):
        """Unknown ids return None."""
        assert service.get_test("missing") is None

    def test_user_experiments(self, service, running_test):
        """User view joins assignment with activity."""
        variant_id = service.assign_user_to_variant(running_test.test_id, "u1")
        service.track_conversion(running_test.test_id, "u1", "purchase")

        assert service.get_user_assignments("u1") == {running_test.test_id: variant_id}
        [experiment] = service.get_user_experiments("u1")
        assert experiment.variant_id == variant_id
        assert experiment.status == ExperimentStatus.RUNNING
        assert experiment.exposures == 1
        assert experiment.converted_goals == frozenset({"purchase"})
        assert experiment.to_dict()["converted_goals"] == ["purchase"]
        assert service.get_user_experiments("nobody") == []
