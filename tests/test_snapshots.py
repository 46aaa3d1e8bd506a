import datetime as dt
import json

import pytest

from conftest import pacific
from occupancy import OccupancyStatus
from snapshots import SnapshotStore, build_snapshot
from upstream import PersistenceFailure

NOW = dt.datetime(2026, 10, 19, 20, 0, tzinfo=dt.timezone.utc)


def snapshot_at(when, count=10):
    return {
        "timestamp": when.isoformat(),
        "dayOfWeek": 1,
        "hour": 12,
        "minute": 0,
        "currentCount": count,
        "maxCapacity": 100,
        "percentage": count / 100,
        "isOpen": True,
    }


def status(occupancy=40, capacity=200, is_open=True, when=None):
    return OccupancyStatus(
        occupancy=occupancy,
        capacity=capacity,
        percent=None,
        status="Go",
        message="",
        updated_at=when or pacific(2026, 10, 18, 18, 5),
        is_open=is_open,
    )


def test_load_missing_file_is_empty(history_path):
    assert SnapshotStore(history_path).load() == []


def test_append_creates_parent_directory(history_path):
    store = SnapshotStore(history_path)

    store.append(snapshot_at(NOW), now=NOW)

    assert json.loads(history_path.read_text())[0]["currentCount"] == 10


def test_append_prunes_entries_older_than_retention(history_path):
    store = SnapshotStore(history_path)
    old = snapshot_at(NOW - dt.timedelta(days=91), count=1)
    recent = snapshot_at(NOW - dt.timedelta(days=89), count=2)
    history_path.parent.mkdir(parents=True)
    history_path.write_text(json.dumps([old, recent]))

    store.append(snapshot_at(NOW, count=3), now=NOW)

    assert [entry["currentCount"] for entry in store.load()] == [2, 3]


def test_old_snapshot_removed_by_next_append(history_path):
    store = SnapshotStore(history_path)
    store.append(snapshot_at(NOW - dt.timedelta(days=120), count=1), now=NOW - dt.timedelta(days=120))
    assert len(store.load()) == 1

    store.append(snapshot_at(NOW, count=2), now=NOW)

    assert [entry["currentCount"] for entry in store.load()] == [2]


def test_build_snapshot_uses_pacific_calendar():
    snapshot = build_snapshot(status(occupancy=50, capacity=200))

    assert snapshot["dayOfWeek"] == 0  # Sunday
    assert snapshot["hour"] == 18
    assert snapshot["minute"] == 5
    assert snapshot["timestamp"] == "2026-10-19T01:05:00+00:00"
    assert snapshot["percentage"] == 0.25
    assert snapshot["isOpen"] is True


def test_build_snapshot_defaults_capacity_to_100():
    snapshot = build_snapshot(status(occupancy=30, capacity=None, is_open=False))

    assert snapshot["maxCapacity"] == 100
    assert snapshot["percentage"] == 0.3
    assert snapshot["isOpen"] is False


def test_record_status_appends(history_path):
    store = SnapshotStore(history_path)

    assert store.record_status(status(when=dt.datetime.now(dt.timezone.utc))) is True
    assert len(store.load()) == 1


def test_record_status_recovers_from_corrupt_history(history_path, caplog):
    history_path.parent.mkdir(parents=True)
    history_path.write_text("{not json")
    store = SnapshotStore(history_path)

    assert store.record_status(status()) is True
    assert store.record_status(status(occupancy=60)) is True

    saved = json.loads(history_path.read_text())
    assert [entry["currentCount"] for entry in saved] == [40, 60]
    corrupt = history_path.with_name("capacity_history.json.corrupt")
    assert corrupt.read_text() == "{not json"
    assert "Capacity history unreadable" in caplog.text


def test_load_still_raises_on_corrupt_history(history_path):
    history_path.parent.mkdir(parents=True)
    history_path.write_text("[{\"timestamp\": ")

    with pytest.raises(PersistenceFailure):
        SnapshotStore(history_path).load()


def test_record_status_reports_failed_write(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    store = SnapshotStore(blocker / "history.json")

    assert store.record_status(status()) is False
    assert "Could not store capacity snapshot" in caplog.text


def test_load_raises_persistence_failure_on_non_array(history_path):
    history_path.parent.mkdir(parents=True)
    history_path.write_text(json.dumps({"snapshots": []}))

    with pytest.raises(PersistenceFailure):
        SnapshotStore(history_path).load()


def test_between_is_inclusive(history_path):
    store = SnapshotStore(history_path)
    for days_ago in (10, 5, 1):
        store.append(snapshot_at(NOW - dt.timedelta(days=days_ago), count=days_ago), now=NOW)

    found = store.between(NOW - dt.timedelta(days=5), NOW - dt.timedelta(days=1))

    assert [entry["currentCount"] for entry in found] == [5, 1]
