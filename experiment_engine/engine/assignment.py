"""
Deterministic variant assignment.

A user's bucket is the first 8 bytes of SHA-256 over ``"{test_id}:{user_id}"``
read as a big-endian integer and divided by 2**64, giving a stable value in
[0, 1). Variants own consecutive slices of that interval in definition order,
sized by their current allocation weight. Rollout eligibility uses an
independent bucket salted with ``"rollout"`` so that the rollout cut does not
correlate with the variant split.
"""

from __future__ import annotations

import hashlib
from typing import Sequence

from experiment_engine.core.data_types import DeviceInfo, SessionInfo, UserProfile
from experiment_engine.engine.targeting import (
    build_context,
    matches_audience,
    matching_exclusion,
    segment_snapshot,
)
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import ABTest, Assignment, Variant

logger = get_logger(__name__, LogCategory.ASSIGNMENT)

ROLLOUT_SALT = "rollout"


def hash_bucket(test_id: str, user_id: str, salt: str | None = None) -> float:
    """Stable bucket in [0, 1) for a (test, user) pair."""
    key = f"{test_id}:{user_id}" if salt is None else f"{salt}:{test_id}:{user_id}"
    hash_bytes = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(hash_bytes[:8], byteorder="big") / 2**64


def select_variant(variants: Sequence[Variant], weights: dict[str, float], bucket: float) -> str:
    """Walk cumulative weights in variant order and pick the bucket's slice.

    Floating drift that leaves the bucket past the last boundary falls
    through to the last variant.
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += weights.get(variant.variant_id, 0.0)
        if bucket < cumulative:
            return variant.variant_id
    return variants[-1].variant_id


def in_rollout(test: ABTest, user_id: str) -> bool:
    percentage = test.allocation.rollout_percentage
    if percentage >= 100.0:
        return True
    return hash_bucket(test.test_id, user_id, ROLLOUT_SALT) < percentage / 100.0


class AssignmentEngine:
    """Assigns users to variants and persists the binding exactly once."""

    def __init__(self, storage: ExperimentStorage) -> None:
        self.storage = storage
        self._metrics = get_metrics_collector()

    def assign(
        self,
        test: ABTest,
        user: UserProfile,
        session: SessionInfo | None = None,
        device: DeviceInfo | None = None,
    ) -> str | None:
        """Return the user's variant, creating the assignment if needed.

        Returns None when the test is not running, the user falls outside
        the audience, matches an exclusion, or is outside the rollout.
        An existing assignment always wins, even if targeting would now fail.
        """
        if not test.is_running:
            self._metrics.record_assignment_skipped(test.test_id, "not_running")
            return None

        user_id = user.user_id
        existing = self.storage.get_assignment(test.test_id, user_id)
        if existing is not None:
            return existing.variant_id

        context = build_context(user, session, device)
        if not matches_audience(context, test.audience):
            self._metrics.record_assignment_skipped(test.test_id, "audience")
            return None

        exclusion = matching_exclusion(context, test.exclusions)
        if exclusion is not None:
            logger.debug(
                f"User {user_id} excluded from {test.test_id}: {exclusion.reason}",
                extra={"test_id": test.test_id, "user_id": user_id},
            )
            self._metrics.record_assignment_skipped(test.test_id, "excluded")
            return None

        if not in_rollout(test, user_id):
            self._metrics.record_assignment_skipped(test.test_id, "rollout")
            return None

        # Read the allocation reference once; bandit updates replace it wholesale.
        allocation = test.allocation
        variant_id = select_variant(
            test.variants, allocation.weights, hash_bucket(test.test_id, user_id)
        )

        assignment = Assignment(
            test_id=test.test_id,
            user_id=user_id,
            variant_id=variant_id,
            segment_snapshot=segment_snapshot(context, test.audience),
            session=context["session"],
            device=context["device"],
        )
        stored, created = self.storage.create_assignment_if_absent(assignment)

        if created:
            self._metrics.record_assignment(test.test_id, stored.variant_id)
            logger.debug(
                f"Assigned {user_id} to {stored.variant_id}",
                extra={"test_id": test.test_id, "user_id": user_id, "variant_id": stored.variant_id},
            )
        return stored.variant_id
