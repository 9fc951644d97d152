from __future__ import annotations

from typing import Any

from pm_track.control_plane.events.event_store import Event
from pm_track.control_plane.events.models import TaskCreated, UnknownEvent, parse_event
from pm_track.control_plane.events.reducers import (
    apply_task_event,
    project_reducer,
    sprint_reducer,
    task_reducer,
)


def _events(aggregate_type: str, aggregate_id: str, *items: tuple[str, dict[str, Any]]) -> list[Event]:
    return [
        Event(
            id=index,
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload,
            sequence_number=index,
            recorded_at=f"2024-03-0{index}T10:00:00.000000Z",
        )
        for index, (event_type, payload) in enumerate(items, start=1)
    ]


def test_update_overlays_only_provided_fields() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A", "priority": "high"}),
        ("TaskUpdated", {"title": "B"}),
    )

    state = task_reducer(events)

    assert state is not None
    assert state.title == "B"
    assert state.priority == "high"
    assert state.created_at == "2024-03-01T10:00:00.000000Z"
    assert state.updated_at == "2024-03-02T10:00:00.000000Z"
    assert state.version == 2


def test_explicit_null_clears_optional_but_not_required_fields() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A", "assignee": "ana"}),
        ("TaskUpdated", {"assignee": None, "title": None}),
    )

    state = task_reducer(events)

    assert state is not None
    assert state.assignee is None
    assert state.title == "A"


def test_reducer_is_deterministic() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A", "labels": ["ui"]}),
        ("TaskEstimated", {"points": 5}),
        ("TaskStatusChanged", {"from": "todo", "to": "done"}),
    )

    assert task_reducer(events) == task_reducer(list(events))


def test_unknown_event_type_leaves_state_untouched() -> None:
    created, unknown = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A"}),
        ("TaskArchivedSomewhere", {"why": "future"}),
    )

    before = apply_task_event(None, created)
    after = apply_task_event(before, unknown)

    assert after == before
    assert isinstance(parse_event(unknown), UnknownEvent)


def test_events_before_creation_fold_to_nothing() -> None:
    events = _events("task", "t1", ("TaskUpdated", {"title": "orphan"}))

    assert task_reducer(events) is None
    assert task_reducer([]) is None


def test_status_changes_stamp_started_and_completed_times() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A"}),
        ("TaskStatusChanged", {"from": "todo", "to": "in_progress"}),
        ("TaskStatusChanged", {"from": "in_progress", "to": "done"}),
    )

    state = task_reducer(events)

    assert state is not None
    assert state.started_at == "2024-03-02T10:00:00.000000Z"
    assert state.completed_at == "2024-03-03T10:00:00.000000Z"

    reopened = task_reducer(
        _events(
            "task",
            "t1",
            ("TaskCreated", {"project_id": "p", "title": "A"}),
            ("TaskStatusChanged", {"to": "in_progress"}),
            ("TaskStatusChanged", {"to": "done"}),
            ("TaskStatusChanged", {"to": "todo"}),
        )
    )
    assert reopened is not None
    assert reopened.status == "todo"
    assert reopened.started_at is None
    assert reopened.completed_at is None


def test_commit_links_are_deduplicated_by_sha() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A"}),
        ("TaskLinkedToCommit", {"commit_sha": "abc1234", "branch": "main"}),
        ("TaskLinkedToCommit", {"commitSha": "abc1234"}),
        ("TaskLinkedToCommit", {"commit_sha": "def5678"}),
    )

    state = task_reducer(events)

    assert state is not None
    assert [commit["sha"] for commit in state.linked_commits] == ["abc1234", "def5678"]
    assert state.linked_commits[0]["branch"] == "main"


def test_issue_link_and_sync_marker() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A"}),
        ("TaskLinkedToIssue", {"issue_number": 12, "url": "https://example.test/12"}),
        (
            "TaskSyncedWithIssue",
            {"issue_number": 12, "synced_at": "2024-03-03T12:00:00Z", "remote_updated_at": "x"},
        ),
    )

    state = task_reducer(events)

    assert state is not None
    assert state.issue_number == 12
    assert state.issue_url == "https://example.test/12"
    assert state.last_synced_at == "2024-03-03T12:00:00Z"
    # The sync marker does not count as a local change.
    assert state.updated_at == "2024-03-02T10:00:00.000000Z"


def test_camel_case_payloads_are_accepted() -> None:
    event = _events("task", "t1", ("TaskCreated", {"projectId": "p", "title": "A"}))[0]

    variant = parse_event(event)

    assert isinstance(variant, TaskCreated)
    assert variant.project_id == "p"


def test_delete_marks_task_deleted() -> None:
    events = _events(
        "task",
        "t1",
        ("TaskCreated", {"project_id": "p", "title": "A"}),
        ("TaskDeleted", {"reason": "dup"}),
    )

    state = task_reducer(events)

    assert state is not None
    assert state.deleted


def test_sprint_lifecycle() -> None:
    events = _events(
        "sprint",
        "s1",
        (
            "SprintCreated",
            {"project_id": "p", "name": "S1", "start_date": "2024-03-01", "end_date": "2024-03-14"},
        ),
        ("SprintStarted", {}),
        ("SprintCompleted", {"total_points": 8, "completed_points": 5}),
    )

    state = sprint_reducer(events)

    assert state is not None
    assert state.status == "completed"
    assert state.started_at == "2024-03-02T10:00:00.000000Z"
    assert (state.velocity_committed, state.velocity_completed) == (8, 5)


def test_project_settings_merge_and_archive() -> None:
    events = _events(
        "project",
        "p1",
        ("ProjectCreated", {"name": "Alpha", "settings": {"a": 1}}),
        ("ProjectUpdated", {"settings": {"b": 2}}),
        ("ProjectArchived", {}),
    )

    state = project_reducer(events)

    assert state is not None
    assert state.settings == {"a": 1, "b": 2}
    assert state.status == "archived"
