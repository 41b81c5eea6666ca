"""
Audience targeting and exclusion rules.

Criteria address a targeting context through dotted paths:

    user_id
    attributes.<name>[.<nested>...]
    session.<field>
    device.<field>

A path whose first segment is not one of those roots is looked up inside
``attributes``, so ``subject`` and ``attributes.subject`` are equivalent.
"""

from __future__ import annotations

from numbers import Number
from typing import Any

from experiment_engine.core.data_types import DeviceInfo, SessionInfo, UserProfile
from experiment_engine.storage.models import (
    AudienceSegment,
    CriterionOperator,
    ExclusionCriteria,
    SegmentCriterion,
)

CONTEXT_ROOTS = ("user_id", "attributes", "session", "device")

_MISSING = object()


def build_context(
    user: UserProfile,
    session: SessionInfo | None = None,
    device: DeviceInfo | None = None,
) -> dict[str, Any]:
    """Flatten collaborator objects into the dictionary criteria are evaluated against."""
    return {
        "user_id": user.user_id,
        "attributes": dict(user.attributes),
        "session": session.model_dump(mode="json") if session else {},
        "device": device.model_dump(mode="json") if device else {},
    }


def resolve_field(context: dict[str, Any], path: str) -> Any:
    """Walk a dotted path; returns None when any segment is absent."""
    parts = path.split(".")
    if parts[0] not in CONTEXT_ROOTS:
        parts = ["attributes", *parts]

    current: Any = context
    for part in parts:
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def evaluate_criterion(context: dict[str, Any], criterion: SegmentCriterion) -> bool:
    """Evaluate one criterion against a targeting context."""
    actual = resolve_field(context, criterion.field)
    expected = criterion.value
    op = criterion.operator

    if op == CriterionOperator.EXISTS:
        return actual is not None
    if op == CriterionOperator.EQUALS:
        return actual == expected
    if op == CriterionOperator.NOT_EQUALS:
        return actual != expected
    if op == CriterionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op == CriterionOperator.NOT_IN:
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    if op == CriterionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return False
    if op == CriterionOperator.GREATER_THAN:
        return _is_number(actual) and _is_number(expected) and actual > expected
    if op == CriterionOperator.LESS_THAN:
        return _is_number(actual) and _is_number(expected) and actual < expected
    return False


def matches_audience(context: dict[str, Any], audience: AudienceSegment) -> bool:
    """True if every criterion matches. An empty segment matches everyone."""
    return all(evaluate_criterion(context, c) for c in audience.criteria)


def matching_exclusion(
    context: dict[str, Any],
    exclusions: list[ExclusionCriteria],
) -> ExclusionCriteria | None:
    """Return the first exclusion group whose criteria all match."""
    for exclusion in exclusions:
        if exclusion.criteria and all(evaluate_criterion(context, c) for c in exclusion.criteria):
            return exclusion
    return None


def segment_snapshot(context: dict[str, Any], audience: AudienceSegment) -> dict[str, Any]:
    """Segment id plus the values the criteria matched on, frozen into the assignment."""
    return {
        "segment_id": audience.segment_id,
        "matched": {c.field: resolve_field(context, c.field) for c in audience.criteria},
    }
