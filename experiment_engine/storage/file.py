"""
File-based experiment storage.

Layout of the storage directory:

- ``experiments.json``: test definitions, status, allocation and the last
  analysis, rewritten atomically on test-level changes only
- ``assignments.jsonl``: one line per assignment, appended when created
- ``events.jsonl``: one line per tracked event, appended as it happens

Variant counters and per-user activity are not written on the hot path;
they are rebuilt on load by replaying the event log in order.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from experiment_engine.core.exceptions import StorageError
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.storage.memory import InMemoryExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    Assignment,
    AssignmentActivity,
    TrackedEvent,
    TrafficAllocation,
    apply_event,
    utc_now,
)

logger = get_logger(__name__, LogCategory.STORAGE)

STATE_FILE = "experiments.json"
ASSIGNMENTS_FILE = "assignments.jsonl"
EVENTS_FILE = "events.jsonl"


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    with open(path, "r") as f:
        return [json.loads(line) for line in f if line.strip()]


class FileExperimentStorage(InMemoryExperimentStorage):
    """JSON test snapshot plus append-only assignment and event logs."""

    backend_name = "file"

    def __init__(self, directory: str | Path, lock_stripes: int = 64) -> None:
        super().__init__(lock_stripes)
        self._directory = Path(directory)
        self._state_path = self._directory / STATE_FILE
        self._assignments_path = self._directory / ASSIGNMENTS_FILE
        self._events_path = self._directory / EVENTS_FILE
        self._load()

    @property
    def directory(self) -> Path:
        return self._directory

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        """Load tests and assignments, then replay events into the counters."""
        with self._lock:
            self._tests.clear()
            self._assignments.clear()
            self._by_user.clear()
            self._by_test.clear()
            self._activities.clear()
            self._event_logs.clear()

            try:
                if self._state_path.exists():
                    with open(self._state_path, "r") as f:
                        data = json.load(f)
                    for test_data in data.get("tests", []):
                        test = ABTest.from_dict(test_data)
                        for variant in test.variants:
                            variant.reset()
                        self._tests[test.test_id] = test
                        self._event_log(test.test_id)

                for assignment_data in _read_jsonl(self._assignments_path):
                    self._insert_assignment(Assignment.from_dict(assignment_data))

                events = [TrackedEvent.from_dict(e) for e in _read_jsonl(self._events_path)]
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to load experiment state from {self._directory}: {e}")
                raise StorageError(
                    f"Failed to load experiment state: {e}",
                    backend=self.backend_name,
                    details={"path": str(self._directory)},
                ) from e

            replayed = sum(self._replay(event) for event in events)

        logger.info(
            f"Loaded {len(self._tests)} tests from {self._directory}",
            extra={"extra_data": {
                "assignments": len(self._assignments),
                "events": len(events),
                "replayed": replayed,
            }},
        )

    def _replay(self, event: TrackedEvent) -> bool:
        """Apply one logged event; events without a test or assignment are kept but skipped."""
        self._event_log(event.test_id).append(event)
        test = self._tests.get(event.test_id)
        activity = self._activities.get((event.test_id, event.user_id))
        if test is None or activity is None:
            logger.warning(
                f"Skipping replay of orphan event {event.event_id}",
                extra={"test_id": event.test_id, "user_id": event.user_id},
            )
            return False
        apply_event(test, activity, event)
        return True

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def _snapshot(self) -> dict[str, Any]:
        return {
            "tests": [t.to_dict() for t in self._tests.values()],
            "updated_at": utc_now().isoformat(),
        }

    def _save(self) -> None:
        """Rewrite the test snapshot atomically."""
        with self._lock:
            tmp_path = self._state_path.with_suffix(".json.tmp")
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w") as f:
                    json.dump(self._snapshot(), f, indent=2, default=str)
                os.replace(tmp_path, self._state_path)
            except OSError as e:
                logger.error(f"Failed to save experiment state to {self._state_path}: {e}")
                raise StorageError(
                    f"Failed to save experiment state: {e}",
                    backend=self.backend_name,
                    details={"path": str(self._state_path)},
                ) from e

    def _append(self, path: Path, record: dict[str, Any], **details: Any) -> None:
        """Append one JSON line with a single unbuffered write."""
        line = (json.dumps(record, default=str) + "\n").encode("utf-8")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            with open(path, "ab", buffering=0) as f:
                f.write(line)
        except OSError as e:
            logger.error(f"Failed to append to {path}: {e}")
            raise StorageError(
                f"Failed to append to {path.name}: {e}",
                backend=self.backend_name,
                details={"path": str(path), **details},
            ) from e

    def save_test(self, test: ABTest) -> None:
        with self._lock:
            super().save_test(test)
            self._save()

    def update_allocation(self, test_id: str, allocation: TrafficAllocation) -> None:
        with self._lock:
            super().update_allocation(test_id, allocation)
            self._save()

    def create_assignment_if_absent(self, assignment: Assignment) -> tuple[Assignment, bool]:
        with self.assignment_lock(assignment.test_id, assignment.user_id):
            existing = self._assignments.get(assignment.key)
            if existing is not None:
                return existing, False
            self._append(self._assignments_path, assignment.to_dict(), user_id=assignment.user_id)
            self._insert_assignment(assignment)
            return assignment, True

    def commit_event(
        self,
        event: TrackedEvent,
        test: ABTest,
        activity: AssignmentActivity,
    ) -> None:
        self._append(self._events_path, event.to_dict(), event_id=event.event_id)
        super().commit_event(event, test, activity)

    def reload(self) -> None:
        """Reload state from disk, discarding in-memory changes."""
        self._load()
