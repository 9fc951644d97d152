from __future__ import annotations

from pathlib import Path

import pytest

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.events.reducers import task_reducer
from pm_track.shared.errors import StorageError, ValidationError


def test_sequence_numbers_are_contiguous_per_aggregate() -> None:
    store = EventStore(PMDatabase())

    store.append("TaskCreated", "task", "a", {"project_id": "p", "title": "A"})
    store.append("TaskCreated", "task", "b", {"project_id": "p", "title": "B"})
    store.append("TaskUpdated", "task", "a", {"title": "A2"})
    store.append("TaskUpdated", "task", "b", {"title": "B2"})
    store.append("TaskUpdated", "task", "a", {"title": "A3"})

    assert [e.sequence_number for e in store.get_events("task", "a")] == [1, 2, 3]
    assert [e.sequence_number for e in store.get_events("task", "b")] == [1, 2]
    assert store.get_version("task", "a") == 3
    assert store.get_version("task", "missing") == 0


def test_append_returns_recorded_event_with_utc_timestamp() -> None:
    store = EventStore(PMDatabase())

    event = store.append(
        "ProjectCreated", "project", "p1", {"name": "Alpha"}, metadata={"actor": "cli"}
    )

    assert event.sequence_number == 1
    assert event.payload == {"name": "Alpha"}
    assert event.metadata == {"actor": "cli"}
    assert event.recorded_at.endswith("Z")
    assert store.get_events("project", "p1") == [event]


def test_get_events_from_version_skips_earlier_events() -> None:
    store = EventStore(PMDatabase())
    for title in ("one", "two", "three"):
        store.append("TaskUpdated", "task", "t", {"title": title})

    events = store.get_events("task", "t", from_version=1)

    assert [e.payload["title"] for e in events] == ["two", "three"]
    assert store.get_events("task", "other") == []


def test_get_events_by_type_spans_aggregates() -> None:
    store = EventStore(PMDatabase())
    store.append("TaskCreated", "task", "a", {"project_id": "p", "title": "A"})
    store.append("SprintCreated", "sprint", "s", {"project_id": "p", "name": "S1"})
    store.append("TaskCreated", "task", "b", {"project_id": "p", "title": "B"})

    created = store.get_events_by_type("TaskCreated")

    assert [e.aggregate_id for e in created] == ["a", "b"]


def test_unknown_aggregate_type_is_rejected() -> None:
    store = EventStore(PMDatabase())

    with pytest.raises(ValidationError):
        store.append("WidgetCreated", "widget", "w", {})

    assert store.db.query("SELECT * FROM events") == []


def test_replay_folds_history_through_reducer() -> None:
    store = EventStore(PMDatabase())
    store.append("TaskCreated", "task", "t", {"project_id": "p", "title": "Write docs"})
    store.append("TaskStatusChanged", "task", "t", {"from": "todo", "to": "in_progress"})

    state = store.replay("task", "t", task_reducer)

    assert state is not None
    assert state.status == "in_progress"
    assert state.version == 2


def test_failed_transaction_rolls_back_every_write() -> None:
    db = PMDatabase()
    store = EventStore(db)

    with pytest.raises(StorageError):
        with db.transaction() as conn:
            store.append("TaskCreated", "task", "t", {"project_id": "p", "title": "A"})
            conn.execute("INSERT INTO no_such_table VALUES (1)")

    assert store.get_events("task", "t") == []


def test_nested_transactions_join_the_outer_block() -> None:
    db = PMDatabase()
    store = EventStore(db)

    with pytest.raises(RuntimeError):
        with db.transaction():
            store.append("TaskCreated", "task", "t", {"project_id": "p", "title": "A"})
            assert db.in_transaction
            raise RuntimeError("abort")

    assert store.get_version("task", "t") == 0
    assert not db.in_transaction


def test_sqlite_connection_uses_wal_and_busy_timeout(tmp_path: Path) -> None:
    db = PMDatabase(tmp_path / "nested" / "pm.db")

    journal_mode = db.conn.execute("PRAGMA journal_mode").fetchone()[0]
    busy_timeout = db.conn.execute("PRAGMA busy_timeout").fetchone()[0]

    assert str(journal_mode).lower() == "wal"
    assert int(busy_timeout) == 5000
    db.close()


def test_events_survive_reopening_the_database(tmp_path: Path) -> None:
    path = tmp_path / "pm.db"
    first = PMDatabase(path)
    EventStore(first).append("ProjectCreated", "project", "p", {"name": "Alpha"})
    first.close()

    second = PMDatabase(path)
    events = EventStore(second).get_events("project", "p")

    assert len(events) == 1
    assert events[0].payload == {"name": "Alpha"}
    second.close()
