"""Pure folds from an ordered event sequence to current aggregate state.

Reducers never read the clock, never touch storage, and never reject an event: an
unknown tag or an unreadable payload leaves the accumulator untouched. Every timestamp
in the folded state comes from an event's ``recorded_at``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from pm_track.control_plane.events.event_store import Event
from pm_track.control_plane.events.models import (
    EventPayload,
    ProjectArchived,
    ProjectCreated,
    ProjectUpdated,
    SprintCancelled,
    SprintCompleted,
    SprintCreated,
    SprintStarted,
    SprintUpdated,
    TaskAddedToSprint,
    TaskCreated,
    TaskDeleted,
    TaskEstimated,
    TaskLinkedToCommit,
    TaskLinkedToIssue,
    TaskRemovedFromSprint,
    TaskStatusChanged,
    TaskSyncedWithIssue,
    TaskUpdated,
    parse_event,
)

# Overlaying an explicit null onto these would produce an invalid record.
_REQUIRED_TASK_FIELDS = frozenset({"project_id", "title", "priority", "type", "status"})
_REQUIRED_SPRINT_FIELDS = frozenset({"project_id", "name", "start_date", "end_date"})
_REQUIRED_PROJECT_FIELDS = frozenset({"name"})


@dataclass(frozen=True)
class TaskState:
    id: str
    project_id: str
    title: str
    created_at: str
    updated_at: str
    status: str = "todo"
    priority: str = "medium"
    type: str = "task"
    description: str | None = None
    sprint_id: str | None = None
    parent_id: str | None = None
    assignee: str | None = None
    labels: tuple[str, ...] = ()
    due_date: str | None = None
    estimate_points: int | None = None
    estimate_hours: float | None = None
    linked_commits: tuple[dict[str, Any], ...] = ()
    linked_issues: tuple[dict[str, Any], ...] = ()
    issue_number: int | None = None
    issue_url: str | None = None
    last_synced_at: str | None = None
    remote_updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    version: int = 0
    deleted: bool = False


@dataclass(frozen=True)
class SprintState:
    id: str
    project_id: str
    name: str
    start_date: str
    end_date: str
    created_at: str
    updated_at: str
    goal: str | None = None
    status: str = "planning"
    velocity_committed: int = 0
    velocity_completed: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    version: int = 0


@dataclass(frozen=True)
class ProjectState:
    id: str
    name: str
    created_at: str
    updated_at: str
    description: str | None = None
    status: str = "active"
    settings: dict[str, Any] = field(default_factory=dict)
    version: int = 0


def _overlay_fields(provided: dict[str, Any], required: frozenset[str]) -> dict[str, Any]:
    return {
        key: value
        for key, value in provided.items()
        if not (value is None and key in required)
    }


def _touch(state: Any, event: Event, **changes: Any) -> Any:
    return replace(state, updated_at=event.recorded_at, version=event.sequence_number, **changes)


def task_reducer(events: Sequence[Event]) -> TaskState | None:
    state: TaskState | None = None
    for event in events:
        state = apply_task_event(state, event)
    return state


def apply_task_event(state: TaskState | None, event: Event) -> TaskState | None:
    variant: EventPayload = parse_event(event)

    if isinstance(variant, TaskCreated):
        if state is not None:
            return _touch(state, event, **_task_overlay(variant.provided()))
        seed = _task_overlay(variant.provided())
        return TaskState(
            id=event.aggregate_id,
            project_id=str(seed.pop("project_id", "") or ""),
            title=str(seed.pop("title", "") or ""),
            created_at=event.recorded_at,
            updated_at=event.recorded_at,
            version=event.sequence_number,
            **seed,
        )

    if state is None:
        return None

    if isinstance(variant, TaskUpdated):
        return _touch(state, event, **_task_overlay(variant.provided()))

    if isinstance(variant, TaskEstimated):
        provided = variant.provided()
        changes: dict[str, Any] = {}
        if "points" in provided:
            changes["estimate_points"] = provided["points"]
        if "hours" in provided:
            changes["estimate_hours"] = provided["hours"]
        return _touch(state, event, **changes)

    if isinstance(variant, TaskStatusChanged):
        if not variant.to:
            return state
        return _touch(state, event, **_status_transition(state, variant.to, event.recorded_at))

    if isinstance(variant, TaskAddedToSprint):
        return _touch(state, event, sprint_id=variant.sprint_id)

    if isinstance(variant, TaskRemovedFromSprint):
        if variant.sprint_id and variant.sprint_id != state.sprint_id:
            return state
        return _touch(state, event, sprint_id=None)

    if isinstance(variant, TaskLinkedToCommit):
        if not variant.commit_sha:
            return state
        if any(commit.get("sha") == variant.commit_sha for commit in state.linked_commits):
            return replace(state, version=event.sequence_number)
        commit = {
            "sha": variant.commit_sha,
            "branch": variant.branch,
            "message": variant.message,
            "linked_at": event.recorded_at,
        }
        return _touch(state, event, linked_commits=state.linked_commits + (commit,))

    if isinstance(variant, TaskLinkedToIssue):
        if variant.issue_number is None:
            return state
        issue = {
            "number": variant.issue_number,
            "url": variant.url,
            "repo": variant.repo,
            "linked_at": event.recorded_at,
        }
        linked = tuple(
            existing for existing in state.linked_issues if existing.get("number") != variant.issue_number
        )
        return _touch(
            state,
            event,
            linked_issues=linked + (issue,),
            issue_number=variant.issue_number,
            issue_url=variant.url or state.issue_url,
        )

    if isinstance(variant, TaskSyncedWithIssue):
        # Bookkeeping only; updated_at keeps tracking local changes.
        return replace(
            state,
            last_synced_at=variant.synced_at or event.recorded_at,
            remote_updated_at=variant.remote_updated_at or state.remote_updated_at,
            issue_number=variant.issue_number if variant.issue_number is not None else state.issue_number,
            version=event.sequence_number,
        )

    if isinstance(variant, TaskDeleted):
        return _touch(state, event, deleted=True)

    return state


def _task_overlay(provided: dict[str, Any]) -> dict[str, Any]:
    changes = _overlay_fields(provided, _REQUIRED_TASK_FIELDS)
    if "labels" in changes:
        changes["labels"] = tuple(changes["labels"] or ())
    return changes


def _status_transition(state: TaskState, to_status: str, recorded_at: str) -> dict[str, Any]:
    changes: dict[str, Any] = {"status": to_status}
    if to_status == "in_progress" and state.started_at is None:
        changes["started_at"] = recorded_at
    if to_status == "todo":
        changes["started_at"] = None
    if to_status == "done":
        changes["completed_at"] = recorded_at
    else:
        changes["completed_at"] = None
    return changes


def sprint_reducer(events: Sequence[Event]) -> SprintState | None:
    state: SprintState | None = None
    for event in events:
        state = apply_sprint_event(state, event)
    return state


def apply_sprint_event(state: SprintState | None, event: Event) -> SprintState | None:
    variant = parse_event(event)

    if isinstance(variant, SprintCreated):
        overlay = _overlay_fields(variant.provided(), _REQUIRED_SPRINT_FIELDS)
        if state is not None:
            return _touch(state, event, **overlay)
        return SprintState(
            id=event.aggregate_id,
            project_id=str(overlay.pop("project_id", "") or ""),
            name=str(overlay.pop("name", "") or ""),
            start_date=str(overlay.pop("start_date", "") or ""),
            end_date=str(overlay.pop("end_date", "") or ""),
            created_at=event.recorded_at,
            updated_at=event.recorded_at,
            version=event.sequence_number,
            **overlay,
        )

    if state is None:
        return None

    if isinstance(variant, SprintUpdated):
        return _touch(state, event, **_overlay_fields(variant.provided(), _REQUIRED_SPRINT_FIELDS))

    if isinstance(variant, SprintStarted):
        return _touch(
            state, event, status="active", started_at=variant.started_at or event.recorded_at
        )

    if isinstance(variant, SprintCompleted):
        return _touch(
            state,
            event,
            status="completed",
            velocity_committed=int(variant.total_points or 0),
            velocity_completed=int(variant.completed_points or 0),
            completed_at=event.recorded_at,
        )

    if isinstance(variant, SprintCancelled):
        return _touch(state, event, status="cancelled")

    return state


def project_reducer(events: Sequence[Event]) -> ProjectState | None:
    state: ProjectState | None = None
    for event in events:
        state = apply_project_event(state, event)
    return state


def apply_project_event(state: ProjectState | None, event: Event) -> ProjectState | None:
    variant = parse_event(event)

    if isinstance(variant, ProjectCreated):
        overlay = _overlay_fields(variant.provided(), _REQUIRED_PROJECT_FIELDS)
        overlay["settings"] = dict(overlay.get("settings") or {})
        if state is not None:
            return _touch(state, event, **overlay)
        return ProjectState(
            id=event.aggregate_id,
            name=str(overlay.pop("name", "") or ""),
            created_at=event.recorded_at,
            updated_at=event.recorded_at,
            version=event.sequence_number,
            **overlay,
        )

    if state is None:
        return None

    if isinstance(variant, ProjectUpdated):
        overlay = _overlay_fields(variant.provided(), _REQUIRED_PROJECT_FIELDS)
        if "settings" in overlay:
            overlay["settings"] = {**state.settings, **(overlay["settings"] or {})}
        return _touch(state, event, **overlay)

    if isinstance(variant, ProjectArchived):
        return _touch(state, event, status="archived")

    return state
