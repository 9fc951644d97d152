from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.models.commands import CreateSprintV1, validate_command
from pm_track.control_plane.projections.projects import ProjectRepository
from pm_track.control_plane.projections.sprints import SprintRepository
from pm_track.control_plane.services.task_service import TaskService
from pm_track.shared.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class SprintService:
    def __init__(
        self,
        db: PMDatabase,
        event_store: EventStore,
        sprints: SprintRepository,
        projects: ProjectRepository,
        task_service: TaskService,
    ) -> None:
        self.db = db
        self.event_store = event_store
        self.sprints = sprints
        self.projects = projects
        self.task_service = task_service

    def create(
        self,
        project_id: str,
        name: str,
        start_date: str,
        end_date: str,
        goal: str | None = None,
    ) -> dict[str, Any]:
        command = validate_command(
            CreateSprintV1,
            {
                "project_id": project_id,
                "name": name,
                "start_date": start_date,
                "end_date": end_date,
                "goal": goal,
            },
        )
        if self.projects.get_by_id(command.project_id) is None:
            raise NotFoundError(
                f"Project not found: {command.project_id}",
                metadata={"project_id": command.project_id},
            )
        sprint_id = str(uuid4())
        with self.db.transaction():
            self.event_store.append(
                "SprintCreated", "sprint", sprint_id, command.model_dump(mode="json")
            )
            sprint = self.sprints.sync_from_events(sprint_id)
        logger.info(
            "Created sprint %s",
            command.name,
            extra={"aggregate_id": sprint_id, "project_id": command.project_id},
        )
        return sprint

    def start(self, sprint_id: str) -> dict[str, Any]:
        sprint = self.require(sprint_id)
        if sprint["status"] != "planning":
            raise ValidationError(
                f"Only planning sprints can start (status: {sprint['status']})",
                metadata={"sprint_id": sprint_id},
            )
        active = self.sprints.get_active(sprint["project_id"])
        if active is not None:
            raise ValidationError(
                "Project already has an active sprint",
                metadata={"sprint_id": sprint_id, "active_sprint_id": active["id"]},
            )
        with self.db.transaction():
            self.event_store.append("SprintStarted", "sprint", sprint_id, {})
            return self.sprints.sync_from_events(sprint_id)

    def complete(self, sprint_id: str) -> dict[str, Any]:
        """Close the sprint and append its velocity fact in the same transaction."""

        sprint = self.require(sprint_id)
        if sprint["status"] not in ("planning", "active"):
            raise ValidationError(
                f"Sprint is already {sprint['status']}", metadata={"sprint_id": sprint_id}
            )
        status = self.sprints.get_status(sprint_id) or {}
        total = int(status.get("total_points", 0))
        completed = int(status.get("completed_points", 0))
        with self.db.transaction():
            self.event_store.append(
                "SprintCompleted",
                "sprint",
                sprint_id,
                {"total_points": total, "completed_points": completed},
            )
            updated = self.sprints.sync_from_events(sprint_id)
            self.sprints.record_velocity(sprint_id, committed=total, completed=completed)
        logger.info(
            "Completed sprint %s (%d/%d points)",
            sprint["name"],
            completed,
            total,
            extra={"aggregate_id": sprint_id, "project_id": sprint["project_id"]},
        )
        return updated

    def cancel(self, sprint_id: str, reason: str | None = None) -> dict[str, Any]:
        sprint = self.require(sprint_id)
        if sprint["status"] in ("completed", "cancelled"):
            raise ValidationError(
                f"Sprint is already {sprint['status']}", metadata={"sprint_id": sprint_id}
            )
        with self.db.transaction():
            self.event_store.append("SprintCancelled", "sprint", sprint_id, {"reason": reason})
            return self.sprints.sync_from_events(sprint_id)

    def add_tasks(self, sprint_id: str, task_ids: list[str]) -> list[dict[str, Any]]:
        self.require(sprint_id)
        with self.db.transaction():
            return [self.task_service.add_to_sprint(task_id, sprint_id) for task_id in task_ids]

    def remove_task(self, sprint_id: str, task_id: str) -> dict[str, Any]:
        self.require(sprint_id)
        task = self.task_service.require(task_id)
        if task["sprint_id"] != sprint_id:
            raise ValidationError(
                "Task is not in this sprint", metadata={"sprint_id": sprint_id, "task_id": task_id}
            )
        return self.task_service.remove_from_sprint(task_id)

    def get(self, sprint_id: str) -> dict[str, Any] | None:
        return self.sprints.get_by_id(sprint_id)

    def list(self, project_id: str) -> list[dict[str, Any]]:
        return self.sprints.list(project_id)

    def status(self, sprint_id: str) -> dict[str, Any] | None:
        return self.sprints.get_status(sprint_id)

    def require(self, sprint_id: str) -> dict[str, Any]:
        sprint = self.sprints.get_by_id(sprint_id)
        if sprint is None:
            raise NotFoundError(f"Sprint not found: {sprint_id}", metadata={"sprint_id": sprint_id})
        return sprint
