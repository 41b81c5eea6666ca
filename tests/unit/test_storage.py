"""
Unit tests for storage models and backends.
"""

import json
import math
import threading
from datetime import datetime, timedelta, timezone

import pytest

from experiment_engine.core.exceptions import NotFoundError, StorageError
from experiment_engine.engine.service import ExperimentationService
from experiment_engine.storage import create_storage
from experiment_engine.storage.file import FileExperimentStorage
from experiment_engine.storage.memory import InMemoryExperimentStorage
from experiment_engine.storage.models import (
    SAMPLE_LIMIT,
    TIME_SERIES_LIMIT,
    ABTest,
    Assignment,
    AssignmentActivity,
    EventType,
    ExperimentStatus,
    Goal,
    MetricType,
    RunningAggregate,
    TrackedEvent,
    TrafficAllocation,
    Variant,
)


def _test(test_id="t1"):
    return ABTest(
        test_id=test_id,
        name="Test",
        variants=[Variant("a", is_control=True), Variant("b")],
        allocation=TrafficAllocation(weights={"a": 0.5, "b": 0.5}),
        primary_goal=Goal("purchase"),
    )


class TestRunningAggregate:
    """Tests for RunningAggregate."""

    def test_statistics(self):
        """Mean and unbiased variance of 1..4."""
        agg = RunningAggregate()
        for v in (1.0, 2.0, 3.0, 4.0):
            agg.add(v)
        assert agg.count == 4
        assert agg.mean == 2.5
        assert agg.variance == pytest.approx(5 / 3)
        assert agg.min_value == 1.0
        assert agg.max_value == 4.0

    def test_empty(self):
        """An empty aggregate has zero mean and variance and no extremes."""
        agg = RunningAggregate()
        assert agg.mean == 0.0
        assert agg.variance == 0.0
        restored = RunningAggregate.from_dict(agg.to_dict())
        assert restored.min_value == math.inf

    def test_percentiles(self):
        """Percentiles interpolate over the retained sample."""
        agg = RunningAggregate()
        for v in range(1, 101):
            agg.add(float(v))
        assert agg.percentile(50) == pytest.approx(50.5)
        assert agg.percentiles() == pytest.approx(
            {"p50": 50.5, "p90": 90.1, "p95": 95.05, "p99": 99.01}
        )
        assert RunningAggregate().percentiles() == {"p50": 0.0, "p90": 0.0, "p95": 0.0, "p99": 0.0}

    def test_sample_and_time_series_are_bounded(self):
        """Only the most recent values are kept; totals still cover everything."""
        agg = RunningAggregate()
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(TIME_SERIES_LIMIT + 250):
            agg.add(float(i), start + timedelta(seconds=i))

        assert agg.count == TIME_SERIES_LIMIT + 250
        assert len(agg.sample) == SAMPLE_LIMIT
        assert len(agg.time_series) == TIME_SERIES_LIMIT
        assert agg.time_series[0].value == 250.0
        assert agg.time_series[-1].count == agg.count
        assert agg.time_series[-1].timestamp == start + timedelta(seconds=TIME_SERIES_LIMIT + 249)
        assert agg.min_value == 0.0

    def test_copy_is_independent(self):
        """Copies do not share the sample or time series."""
        agg = RunningAggregate()
        agg.add(1.0)
        copied = agg.copy()
        agg.add(2.0)
        assert list(copied.sample) == [1.0]
        assert len(copied.time_series) == 1

    def test_serialization_keeps_distribution(self):
        """Sample and time series survive a JSON round trip."""
        agg = RunningAggregate()
        for v in (3.0, 1.0, 2.0):
            agg.add(v)
        restored = RunningAggregate.from_dict(json.loads(json.dumps(agg.to_dict())))
        assert list(restored.sample) == [3.0, 1.0, 2.0]
        assert restored.percentiles() == agg.percentiles()
        assert restored.time_series[1].timestamp == agg.time_series[1].timestamp
        assert restored.sample.maxlen == SAMPLE_LIMIT


class TestTrackedEventSerialization:
    """Tests for TrackedEvent.to_dict / from_dict."""

    def test_datetime_property_round_trip(self):
        """Datetime property values come back as datetimes, strings as strings."""
        seen_at = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
        event = TrackedEvent(
            "e1", EventType.EXPOSURE, "t1", "u1", "a",
            properties={"seen_at": seen_at, "page": "2026-03-01T12:30:00+00:00", "count": 3},
        )
        restored = TrackedEvent.from_dict(json.loads(json.dumps(event.to_dict())))
        assert restored.properties["seen_at"] == seen_at
        assert isinstance(restored.properties["seen_at"], datetime)
        assert restored.properties["page"] == "2026-03-01T12:30:00+00:00"
        assert restored.properties["count"] == 3


class TestVariant:
    """Tests for Variant counters."""

    def test_unique_conversions_vs_values(self):
        """Repeat conversions add value without adding converters."""
        variant = Variant("a")
        variant.record_conversion("g", 10.0, new_converter=True)
        variant.record_conversion("g", 5.0, new_converter=False)
        snap = variant.snapshot()
        assert snap.conversion_count("g") == 1
        assert snap.goal_aggregate("g").total == 15.0
        assert snap.goal_aggregate("missing").count == 0

    def test_snapshot_is_independent(self):
        """Later updates do not leak into an earlier snapshot."""
        variant = Variant("a")
        variant.record_metric("time", 1.0)
        snap = variant.snapshot()
        variant.record_metric("time", 2.0)
        assert snap.metrics["time"].count == 1

    def test_reset(self):
        """Test counter reset."""
        variant = Variant("a")
        variant.record_exposure()
        variant.record_conversion("g", 1.0, new_converter=True)
        variant.reset()
        assert variant.exposures == 0
        assert variant.conversions == {}


class TestABTestSerialization:
    """Tests for ABTest.to_dict / from_dict."""

    def test_preserves_counters_and_status(self):
        """Counters, status and goal configuration survive serialization."""
        test = _test()
        test.status = ExperimentStatus.RUNNING
        test.secondary_goals = [Goal("revenue", metric_type=MetricType.CONTINUOUS)]
        test.variants[1].record_exposure()
        test.variants[1].record_conversion("revenue", 9.5, new_converter=True)

        restored = ABTest.from_dict(json.loads(json.dumps(test.to_dict())))

        assert restored.status == ExperimentStatus.RUNNING
        assert restored.get_variant("b").exposures == 1
        assert restored.get_variant("b").goal_values["revenue"].total == 9.5
        assert restored.get_goal("revenue").metric_type == MetricType.CONTINUOUS
        assert restored.planned_duration == test.planned_duration
        assert restored.control.variant_id == "a"


class TestInMemoryStorage:
    """Tests for InMemoryExperimentStorage."""

    def test_save_and_get(self, storage):
        """Test saving and listing tests."""
        storage.save_test(_test("t1"))
        storage.save_test(_test("t2"))
        assert storage.get_test("t1").test_id == "t1"
        assert storage.get_test("missing") is None
        assert [t.test_id for t in storage.list_tests()] == ["t1", "t2"]

    def test_create_assignment_if_absent(self, storage):
        """The first assignment wins; later ones return it."""
        first, created = storage.create_assignment_if_absent(Assignment("t1", "u1", "a"))
        second, created_again = storage.create_assignment_if_absent(Assignment("t1", "u1", "b"))
        assert created is True
        assert created_again is False
        assert second is first
        assert storage.get_activity("t1", "u1").variant_id == "a"
        assert [a.test_id for a in storage.get_user_assignments("u1")] == ["t1"]

    def test_concurrent_create_assignment(self, storage):
        """Exactly one of many racing creations succeeds."""
        barrier = threading.Barrier(8)
        results = []

        def create(variant_id):
            barrier.wait()
            results.append(storage.create_assignment_if_absent(Assignment("t1", "u1", variant_id)))

        threads = [threading.Thread(target=create, args=(f"v{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for _, created in results if created) == 1
        assert len({a.variant_id for a, _ in results}) == 1
        assert len(storage.list_assignments("t1")) == 1

    def test_update_allocation(self, storage):
        """Allocation is replaced wholesale."""
        storage.save_test(_test())
        new_allocation = TrafficAllocation(weights={"a": 0.2, "b": 0.8})
        storage.update_allocation("t1", new_allocation)
        assert storage.get_test("t1").allocation is new_allocation

    def test_update_allocation_unknown_test(self, storage):
        """Test unknown test id."""
        with pytest.raises(NotFoundError):
            storage.update_allocation("missing", TrafficAllocation(weights={}))

    def test_list_events_filters_by_test(self, storage):
        """Events are filtered by test id."""
        test = _test()
        storage.save_test(test)
        storage.create_assignment_if_absent(Assignment("t1", "u1", "a"))
        activity = storage.get_activity("t1", "u1")
        storage.commit_event(TrackedEvent("e1", EventType.EXPOSURE, "t1", "u1", "a"), test, activity)
        storage.commit_event(TrackedEvent("e2", EventType.EXPOSURE, "t2", "u1", "a"), test, activity)
        assert [e.event_id for e in storage.list_events("t1")] == ["e1"]
        assert len(storage.list_events()) == 2

    def test_reserve_and_release_look(self, storage):
        """Looks are handed out once each and only the latest can be returned."""
        test = _test()
        test.statistics.max_looks = 2
        storage.save_test(test)

        assert storage.reserve_look(test) == (1, True)
        assert storage.reserve_look(test) == (2, True)
        assert storage.reserve_look(test) == (2, False)
        assert storage.release_look(test, 1) is False
        assert storage.release_look(test, 2) is True
        assert test.looks_spent == 1

    def test_event_path_ignores_store_lock(self, storage):
        """Appending events and reading activity do not wait on the store-wide lock."""
        test = _test()
        storage.save_test(test)
        storage.create_assignment_if_absent(Assignment("t1", "u1", "a"))
        activity = storage.get_activity("t1", "u1")
        done = threading.Event()

        def work():
            storage.commit_event(TrackedEvent("e1", EventType.EXPOSURE, "t1", "u1", "a"), test, activity)
            storage.list_activities("t1")
            storage.list_events("t1")
            done.set()

        with storage._lock:
            worker = threading.Thread(target=work, daemon=True)
            worker.start()
            finished = done.wait(timeout=5)
        worker.join()

        assert finished
        assert [e.event_id for e in storage.list_events("t1")] == ["e1"]


class TestFileStorage:
    """Tests for FileExperimentStorage."""

    def test_state_survives_reload(self, tmp_path):
        """Tests, assignments, activity and events are reloaded from disk."""
        store = FileExperimentStorage(tmp_path)
        test = _test()
        store.save_test(test)
        store.create_assignment_if_absent(Assignment("t1", "u1", "b", session={"session_id": "s1"}))
        activity = store.get_activity("t1", "u1")
        event = TrackedEvent("e1", EventType.CONVERSION, "t1", "u1", "b", value=1.0, goal_id="purchase")
        activity.record_conversion("purchase", 1.0, event.timestamp)
        test.get_variant("b").record_conversion("purchase", 1.0, new_converter=True)
        store.commit_event(event, test, activity)

        reopened = FileExperimentStorage(tmp_path)
        assert reopened.get_test("t1").get_variant("b").conversions == {"purchase": 1}
        assert reopened.get_assignment("t1", "u1").session == {"session_id": "s1"}
        assert reopened.get_activity("t1", "u1").converted_goals == {"purchase"}
        assert reopened.list_events("t1")[0].goal_id == "purchase"

    def test_counters_replayed_from_event_log(self, tmp_path, settings, ab_config):
        """Reopening rebuilds counters, distributions and activity from events.jsonl."""
        service = ExperimentationService(storage=FileExperimentStorage(tmp_path), settings=settings)
        test = service.create_test(ab_config)
        service.start_test(test.test_id)
        for i in range(20):
            user_id = f"user_{i}"
            service.assign_user_to_variant(test.test_id, user_id)
            service.track_exposure(test.test_id, user_id)
            if i % 4 == 0:
                service.track_conversion(test.test_id, user_id, "revenue", value=float(i))
            service.track_metric(test.test_id, user_id, "time_on_page", float(i))
        service.track_exposure(test.test_id, "user_0")
        expected = {v.variant_id: v.snapshot() for v in test.variants}

        reopened = FileExperimentStorage(tmp_path)

        for variant in reopened.get_test(test.test_id).variants:
            snap = variant.snapshot()
            before = expected[variant.variant_id]
            assert snap.exposures == before.exposures
            assert snap.conversions == before.conversions
            assert snap.goal_aggregate("revenue").total == before.goal_aggregate("revenue").total
            assert set(snap.metrics) == set(before.metrics)
            for name, aggregate in snap.metrics.items():
                assert aggregate.percentiles() == before.metrics[name].percentiles()
                assert list(aggregate.time_series) == list(before.metrics[name].time_series)
        assert sum(v.exposures for v in reopened.get_test(test.test_id).variants) == 20
        assert reopened.get_activity(test.test_id, "user_0").exposures == 2
        assert len(reopened.list_events(test.test_id)) == len(service.storage.list_events(test.test_id))

    def test_tracking_appends_without_rewriting_snapshot(self, tmp_path, settings, ab_config):
        """Events go to events.jsonl; experiments.json is left untouched."""
        service = ExperimentationService(storage=FileExperimentStorage(tmp_path), settings=settings)
        test = service.create_test(ab_config)
        service.start_test(test.test_id)
        service.assign_user_to_variant(test.test_id, "u1")
        state_path = tmp_path / "experiments.json"
        before = state_path.read_bytes()
        mtime = state_path.stat().st_mtime_ns

        service.track_exposure(test.test_id, "u1")
        service.track_conversion(test.test_id, "u1", "purchase")
        service.track_metric(test.test_id, "u1", "time_on_page", 12.5)

        assert state_path.read_bytes() == before
        assert state_path.stat().st_mtime_ns == mtime
        lines = (tmp_path / "events.jsonl").read_text().splitlines()
        assert [json.loads(line)["event_type"] for line in lines] == ["exposure", "conversion", "metric"]

    def test_datetime_property_survives_reload(self, tmp_path):
        """Datetime event properties are datetimes again after reopening."""
        store = FileExperimentStorage(tmp_path)
        test = _test()
        store.save_test(test)
        store.create_assignment_if_absent(Assignment("t1", "u1", "a"))
        seen_at = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
        event = TrackedEvent("e1", EventType.EXPOSURE, "t1", "u1", "a", properties={"seen_at": seen_at})
        store.commit_event(event, test, store.get_activity("t1", "u1"))

        reopened = FileExperimentStorage(tmp_path)
        assert reopened.list_events("t1")[0].properties["seen_at"] == seen_at

    def test_orphan_events_are_kept_but_not_counted(self, tmp_path):
        """Events without a matching assignment replay into the log only."""
        store = FileExperimentStorage(tmp_path)
        test = _test()
        store.save_test(test)
        event = TrackedEvent("e1", EventType.EXPOSURE, "t1", "ghost", "a")
        store.commit_event(event, test, AssignmentActivity("t1", "ghost", "a"))

        reopened = FileExperimentStorage(tmp_path)
        assert reopened.get_test("t1").get_variant("a").exposures == 0
        assert [e.event_id for e in reopened.list_events("t1")] == ["e1"]

    def test_reload_discards_unsaved_changes(self, tmp_path):
        """Test reload from disk."""
        store = FileExperimentStorage(tmp_path)
        store.save_test(_test())
        store.get_test("t1").name = "changed in memory"
        store.reload()
        assert store.get_test("t1").name == "Test"

    def test_corrupt_state_raises(self, tmp_path):
        """Unreadable state surfaces as StorageError."""
        (tmp_path / "experiments.json").write_text("{not json")
        with pytest.raises(StorageError) as exc_info:
            FileExperimentStorage(tmp_path)
        assert exc_info.value.backend == "file"


class TestCreateStorage:
    """Tests for create_storage."""

    def test_memory_backend(self):
        """Test default backend."""
        assert isinstance(create_storage(), InMemoryExperimentStorage)

    def test_file_backend(self, tmp_path):
        """Test file backend."""
        store = create_storage("file", tmp_path)
        assert isinstance(store, FileExperimentStorage)
        assert store.directory == tmp_path

    def test_file_backend_requires_path(self):
        """Test missing path."""
        with pytest.raises(ValueError):
            create_storage("file")
