"""
Core infrastructure layer for the experimentation engine.

Contains collaborator-facing type definitions and the exception hierarchy
shared across all modules.
"""

from .data_types import (
    DeviceInfo,
    DeviceType,
    EventProperties,
    PropertyValue,
    SessionInfo,
    UserProfile,
    validate_properties,
)
from .exceptions import (
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

__all__ = [
    # Data types
    "DeviceInfo",
    "DeviceType",
    "EventProperties",
    "PropertyValue",
    "SessionInfo",
    "UserProfile",
    "validate_properties",
    # Exceptions
    "AlreadyRunningError",
    "AnalysisCancelledError",
    "ExperimentEngineError",
    "InvalidConfigurationError",
    "InvalidTransitionError",
    "NoAssignmentError",
    "NotFoundError",
    "StorageError",
    "StorageTimeoutError",
    "TestConcludedError",
    "UnknownGoalError",
]
