"""
In-memory experiment storage.

The store-wide lock only guards test-level writes such as saves and
allocation updates. The hot path relies on the (test, user) stripe locks
and on per-test event logs, so tracking never waits on another test or on
a long-running reader.
"""

from __future__ import annotations

import threading
from dataclasses import replace

from experiment_engine.core.exceptions import NotFoundError
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    Assignment,
    AssignmentActivity,
    TrackedEvent,
    TrafficAllocation,
    utc_now,
)


class EventLog:
    """Append-only event list of one test with its own lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[TrackedEvent] = []

    def append(self, event: TrackedEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> list[TrackedEvent]:
        with self._lock:
            return list(self._events)


class InMemoryExperimentStorage(ExperimentStorage):
    """Process-local storage backed by dictionaries."""

    backend_name = "memory"

    def __init__(self, lock_stripes: int = 64) -> None:
        super().__init__(lock_stripes)
        self._lock = threading.RLock()
        self._tests: dict[str, ABTest] = {}
        self._assignments: dict[tuple[str, str], Assignment] = {}
        self._by_user: dict[str, dict[str, Assignment]] = {}
        self._by_test: dict[str, list[Assignment]] = {}
        self._activities: dict[tuple[str, str], AssignmentActivity] = {}
        self._event_logs: dict[str, EventLog] = {}

    def _event_log(self, test_id: str) -> EventLog:
        log = self._event_logs.get(test_id)
        if log is None:
            # setdefault is atomic, so racing creators agree on one log
            log = self._event_logs.setdefault(test_id, EventLog())
        return log

    def save_test(self, test: ABTest) -> None:
        with self._lock:
            test.updated_at = utc_now()
            self._tests[test.test_id] = test
            self._event_log(test.test_id)

    def get_test(self, test_id: str) -> ABTest | None:
        return self._tests.get(test_id)

    def list_tests(self) -> list[ABTest]:
        with self._lock:
            return list(self._tests.values())

    def update_allocation(self, test_id: str, allocation: TrafficAllocation) -> None:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                raise NotFoundError(f"Unknown test: {test_id}", entity="test", entity_id=test_id)
            test.allocation = allocation
            test.updated_at = utc_now()

    def create_assignment_if_absent(self, assignment: Assignment) -> tuple[Assignment, bool]:
        with self.assignment_lock(assignment.test_id, assignment.user_id):
            existing = self._assignments.get(assignment.key)
            if existing is not None:
                return existing, False
            self._insert_assignment(assignment)
            return assignment, True

    def _insert_assignment(self, assignment: Assignment) -> None:
        """Index an assignment and open its activity; caller holds its stripe lock."""
        self._activities[assignment.key] = AssignmentActivity(
            test_id=assignment.test_id,
            user_id=assignment.user_id,
            variant_id=assignment.variant_id,
        )
        self._by_user.setdefault(assignment.user_id, {})[assignment.test_id] = assignment
        self._by_test.setdefault(assignment.test_id, []).append(assignment)
        self._assignments[assignment.key] = assignment

    def get_assignment(self, test_id: str, user_id: str) -> Assignment | None:
        return self._assignments.get((test_id, user_id))

    def list_assignments(self, test_id: str) -> list[Assignment]:
        return list(self._by_test.get(test_id, ()))

    def get_user_assignments(self, user_id: str) -> list[Assignment]:
        return list(self._by_user.get(user_id, {}).values())

    def get_activity(self, test_id: str, user_id: str) -> AssignmentActivity | None:
        return self._activities.get((test_id, user_id))

    def list_activities(self, test_id: str) -> list[AssignmentActivity]:
        # Activity containers are replaced, never mutated, so a shallow copy
        # is a consistent per-user view without any lock.
        activities = []
        for assignment in list(self._by_test.get(test_id, ())):
            activity = self._activities.get(assignment.key)
            if activity is not None:
                activities.append(replace(activity))
        return activities

    def commit_event(
        self,
        event: TrackedEvent,
        test: ABTest,
        activity: AssignmentActivity,
    ) -> None:
        self._event_log(event.test_id).append(event)

    def list_events(self, test_id: str | None = None) -> list[TrackedEvent]:
        if test_id is not None:
            log = self._event_logs.get(test_id)
            return log.snapshot() if log is not None else []
        events = [e for log in list(self._event_logs.values()) for e in log.snapshot()]
        events.sort(key=lambda e: e.timestamp)
        return events
