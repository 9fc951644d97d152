from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.models.commands import (
    CreateProjectV1,
    UpdateProjectV1,
    event_payload,
    validate_command,
)
from pm_track.control_plane.projections.config import ProjectConfigRepository
from pm_track.control_plane.projections.projects import ProjectRepository
from pm_track.shared.errors import NotFoundError

logger = logging.getLogger(__name__)


class ProjectService:
    def __init__(
        self,
        db: PMDatabase,
        event_store: EventStore,
        projects: ProjectRepository,
        config: ProjectConfigRepository,
    ) -> None:
        self.db = db
        self.event_store = event_store
        self.projects = projects
        self.config = config

    def create(
        self,
        name: str,
        description: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        command = validate_command(
            CreateProjectV1,
            {"name": name, "description": description, "settings": settings or {}},
        )
        project_id = str(uuid4())
        with self.db.transaction():
            self.event_store.append(
                "ProjectCreated", "project", project_id, command.model_dump(mode="json")
            )
            project = self.projects.sync_from_events(project_id)
            self.config.create(project_id)
        logger.info("Created project %s", command.name, extra={"project_id": project_id})
        return project

    def get(self, project_id: str) -> dict[str, Any] | None:
        return self.projects.get_by_id(project_id)

    def list(self, include_archived: bool = False) -> list[dict[str, Any]]:
        return self.projects.list(include_archived=include_archived)

    def update(self, project_id: str, **fields: Any) -> dict[str, Any]:
        project = self.require(project_id)
        command = validate_command(UpdateProjectV1, fields)
        payload = event_payload(command)
        if not payload:
            return project
        with self.db.transaction():
            self.event_store.append("ProjectUpdated", "project", project_id, payload)
            return self.projects.sync_from_events(project_id)

    def archive(self, project_id: str, reason: str | None = None) -> dict[str, Any]:
        project = self.require(project_id)
        if project["status"] == "archived":
            return project
        with self.db.transaction():
            self.event_store.append("ProjectArchived", "project", project_id, {"reason": reason})
            return self.projects.sync_from_events(project_id)

    def require(self, project_id: str) -> dict[str, Any]:
        project = self.projects.get_by_id(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}", metadata={"project_id": project_id})
        return project
