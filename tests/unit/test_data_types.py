"""
Unit tests for core/data_types.py
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from experiment_engine.core.data_types import (
    DeviceInfo,
    DeviceType,
    SessionInfo,
    UserProfile,
    coerce_model,
    validate_properties,
)
from experiment_engine.core.exceptions import InvalidConfigurationError


class TestUserProfile:
    """Tests for UserProfile model."""

    def test_user_id_is_stripped(self):
        """Surrounding whitespace is removed."""
        assert UserProfile(user_id="  u1 ").user_id == "u1"

    def test_blank_user_id_rejected(self):
        """Test blank user id."""
        with pytest.raises(ValidationError):
            UserProfile(user_id="   ")

    def test_profile_is_frozen(self):
        """Profiles are immutable."""
        profile = UserProfile(user_id="u1", attributes={"level": 3})
        with pytest.raises(ValidationError):
            profile.user_id = "u2"


class TestSessionAndDevice:
    """Tests for SessionInfo and DeviceInfo."""

    def test_defaults(self):
        """Test default session and device."""
        assert SessionInfo().referrer is None
        assert DeviceInfo().device_type == DeviceType.DESKTOP

    def test_device_type_from_string(self):
        """Enum values parse from strings."""
        assert DeviceInfo(device_type="mobile").device_type == DeviceType.MOBILE

    def test_unknown_device_type_rejected(self):
        """Test invalid device type."""
        with pytest.raises(ValidationError):
            DeviceInfo(device_type="watch")


class TestValidateProperties:
    """Tests for event property validation."""

    def test_empty(self):
        """None and empty maps validate to an empty dict."""
        assert validate_properties(None) == {}
        assert validate_properties({}) == {}

    def test_scalar_types_accepted(self):
        """Every supported scalar passes through unchanged."""
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        props = {"flag": True, "count": 3, "ratio": 0.5, "name": "x", "at": now}
        result = validate_properties(props)
        assert result["flag"] is True
        assert result["count"] == 3
        assert result["at"] == now

    def test_nested_values_rejected(self):
        """Lists and dicts are outside the scalar set."""
        with pytest.raises(InvalidConfigurationError) as exc_info:
            validate_properties({"items": [1, 2]})
        assert exc_info.value.field_name == "properties"


class TestCoerceModel:
    """Tests for coerce_model."""

    def test_instance_passes_through(self):
        """An existing model is returned as-is."""
        device = DeviceInfo()
        assert coerce_model(DeviceInfo, device, "device_info") is device

    def test_dict_is_validated(self):
        """A dict becomes a model."""
        session = coerce_model(SessionInfo, {"session_id": "s1"}, "session_info")
        assert isinstance(session, SessionInfo)
        assert session.session_id == "s1"

    def test_none_gives_defaults(self):
        """None builds a default model."""
        assert coerce_model(DeviceInfo, None, "device_info") == DeviceInfo()

    def test_invalid_dict_raises(self):
        """Validation errors become InvalidConfigurationError."""
        with pytest.raises(InvalidConfigurationError) as exc_info:
            coerce_model(UserProfile, {"attributes": {}}, "user_profile")
        assert exc_info.value.field_name == "user_profile"
