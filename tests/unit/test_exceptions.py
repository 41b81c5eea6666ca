"""
Unit tests for core/exceptions.py
"""

import pytest

from experiment_engine.core.exceptions import (
    AlreadyRunningError,
    AnalysisCancelledError,
    ExperimentEngineError,
    InvalidConfigurationError,
    InvalidTransitionError,
    NoAssignmentError,
    NotFoundError,
    StorageError,
    StorageTimeoutError,
    TestConcludedError,
    UnknownGoalError,
)


class TestExperimentEngineError:
    """Tests for base ExperimentEngineError."""

    def test_basic_error(self):
        """Test basic error creation."""
        error = ExperimentEngineError("Something went wrong")
        assert str(error) == "[ExperimentEngineError] Something went wrong"
        assert error.message == "Something went wrong"
        assert error.error_code == "ExperimentEngineError"

    def test_error_with_code(self):
        """Test error with custom error code."""
        error = ExperimentEngineError("Failed", error_code="EXP001")
        assert error.error_code == "EXP001"
        assert "[EXP001]" in str(error)

    def test_error_with_details(self):
        """Test error with details."""
        error = ExperimentEngineError("Operation failed", details={"key": "value"})
        assert error.details["key"] == "value"
        assert "Details:" in str(error)

    def test_to_dict(self):
        """Test conversion to dictionary."""
        error = ExperimentEngineError("Test error", error_code="T1", details={"foo": "bar"})
        d = error.to_dict()
        assert d["error_type"] == "ExperimentEngineError"
        assert d["error_code"] == "T1"
        assert d["message"] == "Test error"
        assert d["details"]["foo"] == "bar"


class TestConfigurationErrors:
    """Tests for configuration errors."""

    def test_invalid_configuration_error(self):
        """Field name and value are carried in details."""
        error = InvalidConfigurationError("Bad weights", field_name="weights", invalid_value=1.2)
        assert error.field_name == "weights"
        assert error.invalid_value == 1.2
        assert error.details["field_name"] == "weights"
        assert error.details["invalid_value"] == "1.2"
        assert isinstance(error, ExperimentEngineError)

    def test_extra_details_are_merged(self):
        """Caller-supplied details survive alongside the field name."""
        error = InvalidConfigurationError("Bad", field_name="x", details={"errors": 2})
        assert error.details == {"errors": 2, "field_name": "x"}


class TestLookupErrors:
    """Tests for lookup errors."""

    def test_not_found_error(self):
        """Test NotFoundError."""
        error = NotFoundError("Unknown test", entity="test", entity_id="t1")
        assert error.entity == "test"
        assert error.entity_id == "t1"
        assert error.details["entity_id"] == "t1"

    def test_unknown_goal_is_not_found(self):
        """UnknownGoalError is a NotFoundError for goals."""
        error = UnknownGoalError("No such goal", goal_id="signup")
        assert isinstance(error, NotFoundError)
        assert error.entity == "goal"
        assert error.goal_id == "signup"


class TestLifecycleErrors:
    """Tests for lifecycle errors."""

    def test_invalid_transition_error(self):
        """Statuses are carried in details."""
        error = InvalidTransitionError("No", current_status="draft", target_status="concluded")
        assert error.details == {"current_status": "draft", "target_status": "concluded"}

    @pytest.mark.parametrize("cls", [AlreadyRunningError, TestConcludedError])
    def test_subclasses(self, cls):
        """Specific transition errors are InvalidTransitionErrors."""
        error = cls("No", current_status="running")
        assert isinstance(error, InvalidTransitionError)
        assert error.current_status == "running"


class TestOtherErrors:
    """Tests for tracking, storage and analysis errors."""

    def test_no_assignment_error(self):
        """Test NoAssignmentError."""
        error = NoAssignmentError("No assignment", test_id="t1", user_id="u1")
        assert error.test_id == "t1"
        assert error.user_id == "u1"
        assert error.details == {"test_id": "t1", "user_id": "u1"}

    def test_storage_timeout_error(self):
        """Test StorageTimeoutError."""
        error = StorageTimeoutError("Too slow", timeout_seconds=2.5, backend="file")
        assert isinstance(error, StorageError)
        assert error.backend == "file"
        assert error.details["timeout_seconds"] == 2.5

    def test_analysis_cancelled_error(self):
        """Zero completed iterations is still reported."""
        error = AnalysisCancelledError("Cancelled", test_id="t1", iterations_completed=0)
        assert error.iterations_completed == 0
        assert error.details["iterations_completed"] == 0
