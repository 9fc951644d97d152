"""Pydantic contracts for command input, validated before any event is built."""

from __future__ import annotations

from datetime import date
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from pm_track.shared.errors import ValidationError

TaskType = Literal["epic", "story", "task", "bug", "subtask"]
TaskPriority = Literal["critical", "high", "medium", "low"]
TaskStatus = Literal["todo", "in_progress", "in_review", "done", "blocked"]
SyncAction = Literal["create", "update"]

CommandT = TypeVar("CommandT", bound=BaseModel)


class CreateProjectV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    settings: dict[str, Any] = Field(default_factory=dict)


class UpdateProjectV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    settings: dict[str, Any] | None = None


class CreateTaskV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=5000)
    type: TaskType = "task"
    priority: TaskPriority = "medium"
    sprint_id: str | None = None
    parent_id: str | None = None
    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    due_date: date | None = None
    estimate_points: int | None = Field(default=None, ge=0)
    estimate_hours: float | None = Field(default=None, ge=0)


class UpdateTaskV1(BaseModel):
    """Partial task update; only fields the caller sets become part of the event."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=5000)
    type: TaskType | None = None
    priority: TaskPriority | None = None
    parent_id: str | None = None
    assignee: str | None = None
    labels: list[str] | None = None
    due_date: date | None = None
    estimate_points: int | None = Field(default=None, ge=0)
    estimate_hours: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _required_fields_not_cleared(self) -> UpdateTaskV1:
        for name in ("title", "type", "priority"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self


class ChangeTaskStatusV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: TaskStatus
    reason: str | None = Field(default=None, max_length=1000)


class CreateSprintV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=200)
    start_date: date
    end_date: date
    goal: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _end_not_before_start(self) -> CreateSprintV1:
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class LinkCommitV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    commit_sha: str = Field(min_length=4, max_length=64, pattern=r"^[0-9a-fA-F]+$")
    branch: str | None = None
    message: str | None = None


def validate_command(model: type[CommandT], data: dict[str, Any]) -> CommandT:
    """Validate raw command input, surfacing failures in the pm-track taxonomy."""

    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
            for error in exc.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__} input",
            metadata={"errors": errors},
        ) from exc


def event_payload(command: BaseModel, *, exclude: set[str] | None = None) -> dict[str, Any]:
    """Dump only the fields the caller supplied, in a JSON-safe shape."""

    return command.model_dump(
        mode="json", include=command.model_fields_set - (exclude or set())
    )
