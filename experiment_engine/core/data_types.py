"""
Pydantic models and type definitions for collaborator-facing data.

Defines strict type contracts for the plain data objects that callers pass
into the engine: user profile, session info, device info, and the scalar
property maps attached to tracked events.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from experiment_engine.core.exceptions import InvalidConfigurationError


# Closed set of scalar types allowed in event properties and targeting values.
PropertyValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr, datetime]
EventProperties = dict[str, PropertyValue]

_PROPERTIES_ADAPTER: TypeAdapter[EventProperties] = TypeAdapter(EventProperties)


class DeviceType(str, Enum):
    """Device class reported by the client."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class UserProfile(BaseModel):
    """User profile supplied by the caller for audience targeting."""

    user_id: str = Field(..., min_length=1, description="Stable user identifier")
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Targeting attributes (subject, level, locale, ...)",
    )

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Normalize the user identifier."""
        v = v.strip()
        if not v:
            raise ValueError("user_id must not be blank")
        return v

    model_config = ConfigDict(frozen=True)


class SessionInfo(BaseModel):
    """Session context captured at assignment time."""

    session_id: str = ""
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    referrer: str | None = None
    user_agent: str = ""
    landing_page: str = ""

    model_config = ConfigDict(frozen=True)


class DeviceInfo(BaseModel):
    """Device context captured at assignment time."""

    device_type: DeviceType = DeviceType.DESKTOP
    operating_system: str = ""
    browser: str = ""
    screen_resolution: str | None = None
    timezone: str = "UTC"

    model_config = ConfigDict(frozen=True)


def validate_properties(properties: dict[str, Any] | None) -> EventProperties:
    """Validate an event property map against the closed scalar set.

    Args:
        properties: Raw property mapping from the caller.

    Returns:
        Validated mapping of str to bool/int/float/str/datetime.

    Raises:
        InvalidConfigurationError: If any value falls outside the scalar set.
    """
    if not properties:
        return {}
    try:
        return _PROPERTIES_ADAPTER.validate_python(properties)
    except ValidationError as e:
        raise InvalidConfigurationError(
            "Event properties must map strings to str, int, float, bool or datetime",
            field_name="properties",
            invalid_value=properties,
            details={"errors": e.error_count()},
        ) from e


def coerce_model(model_cls: type[BaseModel], value: Any, field_name: str) -> Any:
    """Accept either a model instance or a plain dict and return the model.

    Raises:
        InvalidConfigurationError: If the dict does not validate.
    """
    if isinstance(value, model_cls):
        return value
    if value is None:
        value = {}
    try:
        return model_cls.model_validate(value)
    except ValidationError as e:
        raise InvalidConfigurationError(
            f"Invalid {field_name}: {e.error_count()} validation error(s)",
            field_name=field_name,
            invalid_value=value,
        ) from e
