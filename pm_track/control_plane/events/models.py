"""Closed sets of event variants per aggregate.

Each variant is a frozen pydantic model tagged by ``event_type``. Payload fields are
optional and unknown keys are ignored, so old and new payload shapes both parse.
camelCase keys written by earlier clients are accepted alongside snake_case.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from pm_track.control_plane.events.event_store import Event


class EventPayload(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    event_type: str

    def provided(self) -> dict[str, Any]:
        """Fields that were present in the stored payload, including explicit nulls."""

        return self.model_dump(include=self.model_fields_set - {"event_type"})


class UnknownEvent(EventPayload):
    event_type: str = "Unknown"


# Task


class TaskCreated(EventPayload):
    event_type: Literal["TaskCreated"] = "TaskCreated"
    project_id: str | None = None
    title: str | None = None
    description: str | None = None
    type: str | None = None
    priority: str | None = None
    status: str | None = None
    parent_id: str | None = None
    sprint_id: str | None = None
    assignee: str | None = None
    labels: list[str] | None = None
    due_date: str | None = None
    estimate_points: int | None = None
    estimate_hours: float | None = None


class TaskUpdated(EventPayload):
    event_type: Literal["TaskUpdated"] = "TaskUpdated"
    title: str | None = None
    description: str | None = None
    type: str | None = None
    priority: str | None = None
    parent_id: str | None = None
    assignee: str | None = None
    labels: list[str] | None = None
    due_date: str | None = None


class TaskEstimated(EventPayload):
    event_type: Literal["TaskEstimated"] = "TaskEstimated"
    points: int | None = Field(
        default=None, validation_alias=AliasChoices("points", "estimate_points", "estimatePoints")
    )
    hours: float | None = Field(
        default=None, validation_alias=AliasChoices("hours", "estimate_hours", "estimateHours")
    )


class TaskStatusChanged(EventPayload):
    event_type: Literal["TaskStatusChanged"] = "TaskStatusChanged"
    to: str | None = Field(
        default=None, validation_alias=AliasChoices("to", "status", "to_status", "toStatus")
    )
    from_status: str | None = Field(
        default=None, validation_alias=AliasChoices("from", "from_status", "fromStatus")
    )
    reason: str | None = None


class TaskAddedToSprint(EventPayload):
    event_type: Literal["TaskAddedToSprint"] = "TaskAddedToSprint"
    sprint_id: str | None = None


class TaskRemovedFromSprint(EventPayload):
    event_type: Literal["TaskRemovedFromSprint"] = "TaskRemovedFromSprint"
    sprint_id: str | None = None


class TaskLinkedToCommit(EventPayload):
    event_type: Literal["TaskLinkedToCommit"] = "TaskLinkedToCommit"
    commit_sha: str | None = Field(
        default=None, validation_alias=AliasChoices("commit_sha", "commitSha", "sha")
    )
    branch: str | None = None
    message: str | None = None


class TaskLinkedToIssue(EventPayload):
    event_type: Literal["TaskLinkedToIssue"] = "TaskLinkedToIssue"
    issue_number: int | None = None
    url: str | None = None
    repo: str | None = None


class TaskSyncedWithIssue(EventPayload):
    event_type: Literal["TaskSyncedWithIssue"] = "TaskSyncedWithIssue"
    issue_number: int | None = None
    synced_at: str | None = None
    remote_updated_at: str | None = None
    direction: str | None = None


class TaskDeleted(EventPayload):
    event_type: Literal["TaskDeleted"] = "TaskDeleted"
    reason: str | None = None


TASK_EVENTS = (
    TaskCreated,
    TaskUpdated,
    TaskEstimated,
    TaskStatusChanged,
    TaskAddedToSprint,
    TaskRemovedFromSprint,
    TaskLinkedToCommit,
    TaskLinkedToIssue,
    TaskSyncedWithIssue,
    TaskDeleted,
)


# Sprint


class SprintCreated(EventPayload):
    event_type: Literal["SprintCreated"] = "SprintCreated"
    project_id: str | None = None
    name: str | None = None
    goal: str | None = None
    start_date: str | None = None
    end_date: str | None = None


class SprintUpdated(EventPayload):
    event_type: Literal["SprintUpdated"] = "SprintUpdated"
    name: str | None = None
    goal: str | None = None
    start_date: str | None = None
    end_date: str | None = None


class SprintStarted(EventPayload):
    event_type: Literal["SprintStarted"] = "SprintStarted"
    started_at: str | None = None


class SprintCompleted(EventPayload):
    event_type: Literal["SprintCompleted"] = "SprintCompleted"
    total_points: int | None = None
    completed_points: int | None = None


class SprintCancelled(EventPayload):
    event_type: Literal["SprintCancelled"] = "SprintCancelled"
    reason: str | None = None


SPRINT_EVENTS = (SprintCreated, SprintUpdated, SprintStarted, SprintCompleted, SprintCancelled)


# Project


class ProjectCreated(EventPayload):
    event_type: Literal["ProjectCreated"] = "ProjectCreated"
    name: str | None = None
    description: str | None = None
    settings: dict[str, Any] | None = None


class ProjectUpdated(EventPayload):
    event_type: Literal["ProjectUpdated"] = "ProjectUpdated"
    name: str | None = None
    description: str | None = None
    settings: dict[str, Any] | None = None


class ProjectArchived(EventPayload):
    event_type: Literal["ProjectArchived"] = "ProjectArchived"
    reason: str | None = None


PROJECT_EVENTS = (ProjectCreated, ProjectUpdated, ProjectArchived)


def _registry(variants: tuple[type[EventPayload], ...]) -> dict[str, type[EventPayload]]:
    return {variant.model_fields["event_type"].default: variant for variant in variants}


EVENT_VARIANTS: dict[str, dict[str, type[EventPayload]]] = {
    "task": _registry(TASK_EVENTS),
    "sprint": _registry(SPRINT_EVENTS),
    "project": _registry(PROJECT_EVENTS),
}


def parse_event(event: Event) -> EventPayload:
    """Map a stored event onto its variant; unknown or unreadable payloads fold as no-ops."""

    variant = EVENT_VARIANTS.get(event.aggregate_type, {}).get(event.event_type)
    if variant is None:
        return UnknownEvent(event_type=event.event_type)
    try:
        return variant.model_validate(event.payload or {})
    except PydanticValidationError:
        return UnknownEvent(event_type=event.event_type)
