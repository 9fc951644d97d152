"""Task commands: validate, append events, resync the projection atomically."""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.models.commands import (
    ChangeTaskStatusV1,
    CreateTaskV1,
    LinkCommitV1,
    UpdateTaskV1,
    event_payload,
    validate_command,
)
from pm_track.control_plane.projections.projects import ProjectRepository
from pm_track.control_plane.projections.sprints import SprintRepository
from pm_track.control_plane.projections.tasks import TaskFilter, TaskRepository
from pm_track.shared.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_ESTIMATE_FIELDS = {"estimate_points": "points", "estimate_hours": "hours"}


class TaskService:
    def __init__(
        self,
        db: PMDatabase,
        event_store: EventStore,
        tasks: TaskRepository,
        projects: ProjectRepository,
        sprints: SprintRepository,
    ) -> None:
        self.db = db
        self.event_store = event_store
        self.tasks = tasks
        self.projects = projects
        self.sprints = sprints

    def create(self, project_id: str, title: str, **fields: Any) -> dict[str, Any]:
        command = validate_command(CreateTaskV1, {"project_id": project_id, "title": title, **fields})
        if self.projects.get_by_id(command.project_id) is None:
            raise NotFoundError(
                f"Project not found: {command.project_id}",
                metadata={"project_id": command.project_id},
            )
        if command.sprint_id is not None:
            self._require_sprint_in_project(command.sprint_id, command.project_id)
        task_id = str(uuid4())
        if command.parent_id is not None:
            self._validate_parent(command.project_id, task_id, command.parent_id)

        created = command.model_dump(mode="json", exclude={"sprint_id", *_ESTIMATE_FIELDS})
        estimate = _estimate_payload(command)
        with self.db.transaction():
            self.event_store.append("TaskCreated", "task", task_id, created)
            if estimate:
                self.event_store.append("TaskEstimated", "task", task_id, estimate)
            if command.sprint_id is not None:
                self.event_store.append(
                    "TaskAddedToSprint", "task", task_id, {"sprint_id": command.sprint_id}
                )
            task = self.tasks.sync_from_events(task_id)
        logger.info(
            "Created task #%s",
            task["seq"],
            extra={"task_id": task_id, "project_id": command.project_id},
        )
        return task

    def update(self, task_id: str, **fields: Any) -> dict[str, Any]:
        task = self.require(task_id)
        command = validate_command(UpdateTaskV1, fields)
        if command.parent_id is not None:
            self._validate_parent(task["project_id"], task_id, command.parent_id)
        payload = event_payload(command, exclude=set(_ESTIMATE_FIELDS))
        estimate = _estimate_payload(command)
        if not payload and not estimate:
            return task
        with self.db.transaction():
            if payload:
                self.event_store.append("TaskUpdated", "task", task_id, payload)
            if estimate:
                self.event_store.append("TaskEstimated", "task", task_id, estimate)
            return self.tasks.sync_from_events(task_id)

    def change_status(self, task_id: str, status: str, reason: str | None = None) -> dict[str, Any]:
        task = self.require(task_id)
        command = validate_command(ChangeTaskStatusV1, {"status": status, "reason": reason})
        if task["status"] == command.status:
            return task
        with self.db.transaction():
            self.event_store.append(
                "TaskStatusChanged",
                "task",
                task_id,
                {"from": task["status"], "to": command.status, "reason": command.reason},
            )
            updated = self.tasks.sync_from_events(task_id)
        logger.info(
            "Task #%s %s -> %s",
            task["seq"],
            task["status"],
            command.status,
            extra={"task_id": task_id, "project_id": task["project_id"]},
        )
        return updated

    def link_commit(
        self,
        task_id: str,
        commit_sha: str,
        branch: str | None = None,
        message: str | None = None,
    ) -> dict[str, Any]:
        self.require(task_id)
        command = validate_command(
            LinkCommitV1, {"commit_sha": commit_sha, "branch": branch, "message": message}
        )
        with self.db.transaction():
            self.event_store.append(
                "TaskLinkedToCommit", "task", task_id, command.model_dump(mode="json")
            )
            return self.tasks.sync_from_events(task_id)

    def link_issue(
        self,
        task_id: str,
        issue_number: int,
        url: str | None = None,
        repo: str | None = None,
    ) -> dict[str, Any]:
        self.require(task_id)
        if int(issue_number) <= 0:
            raise ValidationError("issue_number must be positive", metadata={"task_id": task_id})
        with self.db.transaction():
            self.event_store.append(
                "TaskLinkedToIssue",
                "task",
                task_id,
                {"issue_number": int(issue_number), "url": url, "repo": repo},
            )
            return self.tasks.sync_from_events(task_id)

    def record_sync(
        self,
        task_id: str,
        issue_number: int,
        synced_at: str,
        remote_updated_at: str | None = None,
        direction: str | None = None,
    ) -> dict[str, Any]:
        self.require(task_id)
        with self.db.transaction():
            self.event_store.append(
                "TaskSyncedWithIssue",
                "task",
                task_id,
                {
                    "issue_number": int(issue_number),
                    "synced_at": synced_at,
                    "remote_updated_at": remote_updated_at,
                    "direction": direction,
                },
            )
            return self.tasks.sync_from_events(task_id)

    def add_to_sprint(self, task_id: str, sprint_id: str) -> dict[str, Any]:
        task = self.require(task_id)
        self._require_sprint_in_project(sprint_id, task["project_id"])
        if task["sprint_id"] == sprint_id:
            return task
        with self.db.transaction():
            self.event_store.append("TaskAddedToSprint", "task", task_id, {"sprint_id": sprint_id})
            return self.tasks.sync_from_events(task_id)

    def remove_from_sprint(self, task_id: str) -> dict[str, Any]:
        task = self.require(task_id)
        if task["sprint_id"] is None:
            return task
        with self.db.transaction():
            self.event_store.append(
                "TaskRemovedFromSprint", "task", task_id, {"sprint_id": task["sprint_id"]}
            )
            return self.tasks.sync_from_events(task_id)

    def delete(self, task_id: str, reason: str | None = None) -> None:
        """Drop the projection row; the task's events stay in the log."""

        self.require(task_id)
        with self.db.transaction():
            self.event_store.append("TaskDeleted", "task", task_id, {"reason": reason})
            self.tasks.sync_from_events(task_id)
        logger.info("Deleted task", extra={"task_id": task_id})

    def get(self, project_id: str, id_or_seq: str | int) -> dict[str, Any] | None:
        return self.tasks.find_task(project_id, id_or_seq)

    def list(self, **filters: Any) -> list[dict[str, Any]]:
        return self.tasks.list(TaskFilter(**filters))

    def board(self, project_id: str, sprint_id: str | None = None) -> dict[str, list[dict[str, Any]]]:
        return self.tasks.get_by_status(project_id, sprint_id)

    def require(self, task_id: str) -> dict[str, Any]:
        task = self.tasks.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}", metadata={"task_id": task_id})
        return task

    def _require_sprint_in_project(self, sprint_id: str, project_id: str) -> dict[str, Any]:
        sprint = self.sprints.get_by_id(sprint_id)
        if sprint is None:
            raise NotFoundError(f"Sprint not found: {sprint_id}", metadata={"sprint_id": sprint_id})
        if sprint["project_id"] != project_id:
            raise ValidationError(
                "Sprint belongs to a different project",
                metadata={"sprint_id": sprint_id, "project_id": project_id},
            )
        return sprint

    def _validate_parent(self, project_id: str, task_id: str, parent_id: str) -> None:
        """Parents must live in the same project and the chain must stay acyclic."""

        if parent_id == task_id:
            raise ValidationError("A task cannot be its own parent", metadata={"task_id": task_id})
        parent = self.tasks.get_by_id(parent_id)
        if parent is None or parent["project_id"] != project_id:
            raise ValidationError(
                "Parent task must exist in the same project",
                metadata={"task_id": task_id, "parent_id": parent_id},
            )
        seen = {task_id}
        current: dict[str, Any] | None = parent
        while current is not None:
            if current["id"] in seen:
                raise ValidationError(
                    "Parent reference would create a cycle",
                    metadata={"task_id": task_id, "parent_id": parent_id},
                )
            seen.add(current["id"])
            ancestor = current.get("parent_id")
            current = self.tasks.get_by_id(ancestor) if ancestor else None


def _estimate_payload(command: CreateTaskV1 | UpdateTaskV1) -> dict[str, Any]:
    return {
        key: getattr(command, field)
        for field, key in _ESTIMATE_FIELDS.items()
        if field in command.model_fields_set
    }
