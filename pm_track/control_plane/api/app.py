"""Application facade wiring one storage handle into every repository and service."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.git.git_metadata import GitMetadata
from pm_track.control_plane.github.github_connector import IssueTracker, build_connector
from pm_track.control_plane.github.sync_service import GitHubSyncService
from pm_track.control_plane.projections.analytics import AnalyticsRepository, format_burndown_chart
from pm_track.control_plane.projections.config import ProjectConfigRepository
from pm_track.control_plane.projections.projects import ProjectRepository
from pm_track.control_plane.projections.sprints import SprintRepository
from pm_track.control_plane.projections.sync_queue import SyncQueueRepository
from pm_track.control_plane.projections.tasks import TaskRepository
from pm_track.control_plane.services.commit_service import CommitService
from pm_track.control_plane.services.project_service import ProjectService
from pm_track.control_plane.services.sprint_service import SprintService
from pm_track.control_plane.services.task_service import TaskService
from pm_track.shared.settings import SyncSettings, get_sync_settings


class PMTrackApp:
    """Thin callable facade over the event-sourced core.

    Nothing here is global: each instance owns its storage handle and closes it.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        connector: IssueTracker | None = None,
        sync_settings: SyncSettings | None = None,
    ) -> None:
        self.db = PMDatabase(db_path)
        self.event_store = EventStore(self.db)
        self.sync_settings = sync_settings or get_sync_settings()

        self.projects = ProjectRepository(self.db, self.event_store)
        self.sprints = SprintRepository(self.db, self.event_store)
        self.tasks = TaskRepository(self.db, self.event_store)
        self.config = ProjectConfigRepository(self.db)
        self.analytics = AnalyticsRepository(self.db)
        self.queue = SyncQueueRepository(self.db)

        self.project_service = ProjectService(self.db, self.event_store, self.projects, self.config)
        self.task_service = TaskService(
            self.db, self.event_store, self.tasks, self.projects, self.sprints
        )
        self.sprint_service = SprintService(
            self.db, self.event_store, self.sprints, self.projects, self.task_service
        )
        self.commit_service = CommitService(self.tasks, self.task_service)

        self.connector = connector or build_connector(self.sync_settings)
        self.sync_service = GitHubSyncService(
            connector=self.connector,
            tasks=self.tasks,
            task_service=self.task_service,
            config=self.config,
            queue=self.queue,
            settings=self.sync_settings,
        )

    def velocity(self, project_id: str, sprint_count: int = 3) -> dict[str, Any]:
        return self.analytics.calculate_velocity(project_id, sprint_count)

    def burndown(self, sprint_id: str) -> dict[str, Any]:
        points = self.analytics.get_burndown_data(sprint_id)
        return {"sprint_id": sprint_id, "points": points, "chart": format_burndown_chart(points)}

    def git_status(self, cwd: str | Path | None = None) -> dict[str, Any] | None:
        return GitMetadata(cwd).repository_status()

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> PMTrackApp:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
