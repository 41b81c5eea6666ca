"""
Custom exception hierarchy for the experimentation engine.

Provides a structured exception hierarchy for different error categories:
- Configuration errors (malformed tests rejected before any state change)
- Lookup errors (unknown test, variant or goal)
- Lifecycle errors (illegal status transitions)
- Tracking errors (events without an assignment, undefined goals)
- Storage errors (backend failures and timeouts)
- Analysis errors (cooperative cancellation)

Insufficient data is deliberately absent: it is reported as an inconclusive
verdict on the analysis result, never raised.
"""

from __future__ import annotations

from typing import Any


class ExperimentEngineError(Exception):
    """Base exception for all experimentation engine errors.

    All custom exceptions in the engine inherit from this class.
    Provides structured error information including error code, message,
    and additional context.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Optional error code for programmatic handling.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def __str__(self) -> str:
        """Return formatted error string."""
        if self.details:
            return f"[{self.error_code}] {self.message} - Details: {self.details}"
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class InvalidConfigurationError(ExperimentEngineError):
    """Raised when a test configuration or input fails validation.

    Examples:
        - Variant weights that do not sum to 1.0
        - Fewer than two variants, or not exactly one control
        - Event properties outside the supported scalar types
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        invalid_value: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the configuration error.

        Args:
            message: Human-readable error message.
            field_name: Name of the field that failed validation.
            invalid_value: The value that failed validation.
            **kwargs: Additional context passed to parent.
        """
        details = kwargs.pop("details", {})
        if field_name:
            details["field_name"] = field_name
        if invalid_value is not None:
            details["invalid_value"] = str(invalid_value)
        super().__init__(message, details=details, **kwargs)
        self.field_name = field_name
        self.invalid_value = invalid_value


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(ExperimentEngineError):
    """Raised when a test, variant or goal id is unknown."""

    def __init__(
        self,
        message: str,
        entity: str | None = None,
        entity_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if entity:
            details["entity"] = entity
        if entity_id:
            details["entity_id"] = entity_id
        super().__init__(message, details=details, **kwargs)
        self.entity = entity
        self.entity_id = entity_id


class UnknownGoalError(NotFoundError):
    """Raised when a conversion references a goal the test does not define."""

    def __init__(self, message: str, goal_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, entity="goal", entity_id=goal_id, **kwargs)
        self.goal_id = goal_id


# =============================================================================
# Lifecycle Errors
# =============================================================================


class InvalidTransitionError(ExperimentEngineError):
    """Raised when a lifecycle transition is not allowed.

    Examples:
        - Starting a test that is already running
        - Editing variants of a running test
        - Tracking events against a concluded test
    """

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        target_status: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if current_status:
            details["current_status"] = current_status
        if target_status:
            details["target_status"] = target_status
        super().__init__(message, details=details, **kwargs)
        self.current_status = current_status
        self.target_status = target_status


class AlreadyRunningError(InvalidTransitionError):
    """Raised when starting a test that is already running."""

    pass


class TestConcludedError(InvalidTransitionError):
    """Raised when operating on a test that has reached a terminal status."""

    __test__ = False  # keep pytest from collecting this class


# =============================================================================
# Tracking Errors
# =============================================================================


class NoAssignmentError(ExperimentEngineError):
    """Raised when an event is tracked for a user with no assignment.

    Callers decide whether to assign and retry; the event is never
    silently dropped.
    """

    def __init__(
        self,
        message: str,
        test_id: str | None = None,
        user_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if test_id:
            details["test_id"] = test_id
        if user_id:
            details["user_id"] = user_id
        super().__init__(message, details=details, **kwargs)
        self.test_id = test_id
        self.user_id = user_id


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(ExperimentEngineError):
    """Raised when the storage backend fails.

    Examples:
        - Unwritable snapshot file
        - Corrupted persisted state
    """

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if backend:
            details["backend"] = backend
        super().__init__(message, details=details, **kwargs)
        self.backend = backend


class StorageTimeoutError(StorageError):
    """Raised when a storage operation exceeds its time budget."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, details=details, **kwargs)
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Analysis Errors
# =============================================================================


class AnalysisCancelledError(ExperimentEngineError):
    """Raised when a caller abandons a long-running analysis.

    Partial results are discarded; there is no resumable state.
    """

    def __init__(
        self,
        message: str,
        test_id: str | None = None,
        iterations_completed: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if test_id:
            details["test_id"] = test_id
        if iterations_completed is not None:
            details["iterations_completed"] = iterations_completed
        super().__init__(message, details=details, **kwargs)
        self.test_id = test_id
        self.iterations_completed = iterations_completed
