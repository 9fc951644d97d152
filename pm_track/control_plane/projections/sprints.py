from __future__ import annotations

import logging
import math
from typing import Any

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.events.reducers import sprint_reducer
from pm_track.control_plane.projections.tasks import TaskFilter, TaskRepository

logger = logging.getLogger(__name__)


class SprintRepository:
    def __init__(self, db: PMDatabase, event_store: EventStore) -> None:
        self.db = db
        self.event_store = event_store
        self._tasks = TaskRepository(db, event_store)

    def sync_from_events(self, sprint_id: str) -> dict[str, Any] | None:
        with self.db.transaction() as conn:
            state = sprint_reducer(self.event_store.get_events("sprint", sprint_id))
            if state is None:
                return None
            conn.execute(
                """
                INSERT INTO sprints (
                  id, project_id, name, goal, start_date, end_date, status,
                  velocity_committed, velocity_completed, started_at, completed_at,
                  version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  project_id=excluded.project_id,
                  name=excluded.name,
                  goal=excluded.goal,
                  start_date=excluded.start_date,
                  end_date=excluded.end_date,
                  status=excluded.status,
                  velocity_committed=excluded.velocity_committed,
                  velocity_completed=excluded.velocity_completed,
                  started_at=excluded.started_at,
                  completed_at=excluded.completed_at,
                  version=excluded.version,
                  created_at=excluded.created_at,
                  updated_at=excluded.updated_at
                """,
                (
                    state.id,
                    state.project_id,
                    state.name,
                    state.goal,
                    state.start_date,
                    state.end_date,
                    state.status,
                    state.velocity_committed,
                    state.velocity_completed,
                    state.started_at,
                    state.completed_at,
                    state.version,
                    state.created_at,
                    state.updated_at,
                ),
            )
        logger.info(
            "Synced sprint projection",
            extra={"aggregate_id": sprint_id, "project_id": state.project_id},
        )
        return self.get_by_id(sprint_id)

    def get_by_id(self, sprint_id: str) -> dict[str, Any] | None:
        return self.db.query_one("SELECT * FROM sprints WHERE id = ?", (sprint_id,))

    def get_active(self, project_id: str) -> dict[str, Any] | None:
        return self.db.query_one(
            """
            SELECT * FROM sprints
            WHERE project_id = ? AND status = 'active'
            ORDER BY start_date DESC
            LIMIT 1
            """,
            (project_id,),
        )

    def list(self, project_id: str) -> list[dict[str, Any]]:
        return self.db.query(
            "SELECT * FROM sprints WHERE project_id = ? ORDER BY start_date DESC, created_at DESC",
            (project_id,),
        )

    def get_status(self, sprint_id: str) -> dict[str, Any] | None:
        sprint = self.get_by_id(sprint_id)
        if sprint is None:
            return None
        tasks = self._tasks.list(TaskFilter(sprint_id=sprint_id, limit=None))
        total_points = sum(int(task["estimate_points"] or 0) for task in tasks)
        completed_points = sum(
            int(task["estimate_points"] or 0) for task in tasks if task["status"] == "done"
        )
        progress_pct = (
            math.floor(completed_points * 100 / total_points + 0.5) if total_points else 0
        )
        return {
            "sprint": sprint,
            "tasks": tasks,
            "total_points": total_points,
            "completed_points": completed_points,
            "progress_pct": progress_pct,
        }

    def record_velocity(self, sprint_id: str, committed: int, completed: int) -> None:
        """Append a velocity fact for a completed sprint; history rows are never updated."""

        sprint = self.get_by_id(sprint_id)
        if sprint is None:
            return
        rate = completed / committed if committed else 0.0
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO velocity_history (
                  project_id, sprint_id, committed_points, completed_points, completion_rate
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (sprint["project_id"], sprint_id, int(committed), int(completed), rate),
            )
