"""
Storage interface for experiments, assignments and events.

Backends return live ABTest objects whose variant counters are mutated in
place under per-variant locks. `commit_event` records a tracked event; a
backend that persists may rebuild counters from its event log.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod

from experiment_engine.storage.models import (
    ABTest,
    Assignment,
    AssignmentActivity,
    TrackedEvent,
    TrafficAllocation,
)


class StripedLock:
    """Fixed pool of re-entrant locks selected by key hash."""

    def __init__(self, stripes: int = 64) -> None:
        self._locks = [threading.RLock() for _ in range(max(1, stripes))]

    def lock_for(self, *key: str) -> threading.RLock:
        return self._locks[hash(key) % len(self._locks)]


class ExperimentStorage(ABC):
    """Abstract base class for experiment storage backends."""

    backend_name = "abstract"

    def __init__(self, lock_stripes: int = 64) -> None:
        self._stripes = StripedLock(lock_stripes)

    def assignment_lock(self, test_id: str, user_id: str) -> threading.RLock:
        """Lock guarding the assignment and activity of one (test, user)."""
        return self._stripes.lock_for(test_id, user_id)

    def test_lock(self, test_id: str) -> threading.RLock:
        """Lock guarding per-test bookkeeping such as sequential looks."""
        return self._stripes.lock_for(test_id)

    def reserve_look(self, test: ABTest) -> tuple[int, bool]:
        """Spend the next sequential look of a test.

        Looks are capped at ``statistics.max_looks``; once the cap is reached
        every call gets the final look again.

        Returns:
            The look number and whether this call consumed a new look.
        """
        with self.test_lock(test.test_id):
            previous = test.looks_spent
            look = min(previous + 1, test.statistics.max_looks)
            test.looks_spent = look
            return look, look > previous

    def release_look(self, test: ABTest, look: int) -> bool:
        """Give back a look that was reserved but not used.

        Only the most recent look can be returned; a look already followed
        by another reservation stays spent.
        """
        with self.test_lock(test.test_id):
            if test.looks_spent != look:
                return False
            test.looks_spent = look - 1
            return True

    # Tests

    @abstractmethod
    def save_test(self, test: ABTest) -> None:
        """Insert or replace a test."""
        pass

    @abstractmethod
    def get_test(self, test_id: str) -> ABTest | None:
        """Get a test by id."""
        pass

    @abstractmethod
    def list_tests(self) -> list[ABTest]:
        """Get all tests in creation order."""
        pass

    @abstractmethod
    def update_allocation(self, test_id: str, allocation: TrafficAllocation) -> None:
        """Atomically replace a test's traffic allocation."""
        pass

    # Assignments

    @abstractmethod
    def create_assignment_if_absent(self, assignment: Assignment) -> tuple[Assignment, bool]:
        """Store an assignment unless one exists for (test, user).

        Returns:
            The stored assignment and whether this call created it.
        """
        pass

    @abstractmethod
    def get_assignment(self, test_id: str, user_id: str) -> Assignment | None:
        pass

    @abstractmethod
    def list_assignments(self, test_id: str) -> list[Assignment]:
        pass

    @abstractmethod
    def get_user_assignments(self, user_id: str) -> list[Assignment]:
        pass

    @abstractmethod
    def get_activity(self, test_id: str, user_id: str) -> AssignmentActivity | None:
        pass

    @abstractmethod
    def list_activities(self, test_id: str) -> list[AssignmentActivity]:
        pass

    # Events

    @abstractmethod
    def commit_event(
        self,
        event: TrackedEvent,
        test: ABTest,
        activity: AssignmentActivity,
    ) -> None:
        """Append an accepted event to its test's log.

        Called under the (test, user) lock before the event is applied to
        the activity and counters; must not take the store-wide lock.
        """
        pass

    @abstractmethod
    def list_events(self, test_id: str | None = None) -> list[TrackedEvent]:
        pass
