from __future__ import annotations

import json
import logging
from typing import Any

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.events.reducers import project_reducer

logger = logging.getLogger(__name__)


class ProjectRepository:
    def __init__(self, db: PMDatabase, event_store: EventStore) -> None:
        self.db = db
        self.event_store = event_store

    def sync_from_events(self, project_id: str) -> dict[str, Any] | None:
        with self.db.transaction() as conn:
            state = project_reducer(self.event_store.get_events("project", project_id))
            if state is None:
                return None
            conn.execute(
                """
                INSERT INTO projects (
                  id, name, description, status, settings_json, version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  description=excluded.description,
                  status=excluded.status,
                  settings_json=excluded.settings_json,
                  version=excluded.version,
                  created_at=excluded.created_at,
                  updated_at=excluded.updated_at
                """,
                (
                    state.id,
                    state.name,
                    state.description,
                    state.status,
                    json.dumps(state.settings, sort_keys=True),
                    state.version,
                    state.created_at,
                    state.updated_at,
                ),
            )
        logger.info("Synced project projection", extra={"project_id": project_id})
        return self.get_by_id(project_id)

    def get_by_id(self, project_id: str) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return _project_from_row(row) if row is not None else None

    def list(self, include_archived: bool = False) -> list[dict[str, Any]]:
        if include_archived:
            rows = self.db.query("SELECT * FROM projects ORDER BY created_at DESC, id ASC")
        else:
            rows = self.db.query(
                "SELECT * FROM projects WHERE status != 'archived' ORDER BY created_at DESC, id ASC"
            )
        return [_project_from_row(row) for row in rows]


def _project_from_row(row: dict[str, Any]) -> dict[str, Any]:
    project = dict(row)
    project["settings"] = json.loads(project.pop("settings_json") or "{}")
    return project
