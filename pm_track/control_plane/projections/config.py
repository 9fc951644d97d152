"""Per-project integration settings; a 1:1 side table keyed by project id."""

from __future__ import annotations

import json
import logging
from typing import Any

from pm_track.control_plane.db.db import PMDatabase
from pm_track.shared.errors import ValidationError

logger = logging.getLogger(__name__)

SYNC_MODES = ("read_only", "bidirectional")

_UPDATABLE = (
    "github_enabled",
    "github_repo",
    "github_project_id",
    "github_project_number",
    "field_mappings",
    "status_options",
    "sync_mode",
    "last_sync_at",
    "last_sync_cursor",
)


class ProjectConfigRepository:
    def __init__(self, db: PMDatabase) -> None:
        self.db = db

    def get_by_project_id(self, project_id: str) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM project_config WHERE project_id = ?", (project_id,))
        return _config_from_row(row) if row is not None else None

    def is_github_enabled(self, project_id: str) -> bool:
        config = self.get_by_project_id(project_id)
        return bool(config and config["github_enabled"])

    def create(self, project_id: str, **config: Any) -> dict[str, Any] | None:
        sync_mode = _sync_mode(config.get("sync_mode") or "read_only")
        self.db.execute(
            """
            INSERT INTO project_config (project_id, github_enabled, github_repo, sync_mode)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
              github_enabled=excluded.github_enabled,
              github_repo=COALESCE(excluded.github_repo, project_config.github_repo),
              sync_mode=excluded.sync_mode,
              updated_at=CURRENT_TIMESTAMP
            """,
            (project_id, int(bool(config.get("github_enabled"))), config.get("github_repo"), sync_mode),
        )
        return self.get_by_project_id(project_id)

    def update(self, project_id: str, **updates: Any) -> dict[str, Any] | None:
        unknown = sorted(set(updates) - set(_UPDATABLE))
        if unknown:
            raise ValidationError(
                f"Unknown project config fields: {', '.join(unknown)}",
                metadata={"project_id": project_id},
            )
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            if key == "github_enabled":
                value = int(bool(value))
            elif key == "sync_mode":
                value = _sync_mode(value)
            elif key in ("field_mappings", "status_options"):
                key = f"{key}_json"
                value = json.dumps(value, sort_keys=True) if value is not None else None
            assignments.append(f"{key} = ?")
            params.append(value)
        if not assignments:
            return self.get_by_project_id(project_id)
        params.append(project_id)
        self.db.execute(
            f"""
            UPDATE project_config
            SET {', '.join(assignments)}, updated_at = CURRENT_TIMESTAMP
            WHERE project_id = ?
            """,
            params,
        )
        return self.get_by_project_id(project_id)

    def enable_github(self, project_id: str, github_repo: str | None = None) -> dict[str, Any] | None:
        if self.get_by_project_id(project_id) is None:
            return self.create(project_id, github_enabled=True, github_repo=github_repo)
        updates: dict[str, Any] = {"github_enabled": True}
        if github_repo:
            updates["github_repo"] = github_repo
        return self.update(project_id, **updates)

    def disable_github(self, project_id: str) -> dict[str, Any] | None:
        return self.update(project_id, github_enabled=False)

    def mark_synced(
        self, project_id: str, synced_at: str, cursor: str | None = None
    ) -> dict[str, Any] | None:
        if self.get_by_project_id(project_id) is None:
            self.create(project_id)
        updates: dict[str, Any] = {"last_sync_at": synced_at}
        if cursor is not None:
            updates["last_sync_cursor"] = cursor
        logger.info("Recorded project sync", extra={"project_id": project_id})
        return self.update(project_id, **updates)


def _sync_mode(value: Any) -> str:
    if value not in SYNC_MODES:
        raise ValidationError(f"Unsupported sync mode: {value}", metadata={"sync_mode": value})
    return str(value)


def _config_from_row(row: dict[str, Any]) -> dict[str, Any]:
    config = dict(row)
    config["github_enabled"] = bool(config["github_enabled"])
    config["field_mappings"] = json.loads(config.pop("field_mappings_json") or "{}")
    config["status_options"] = json.loads(config.pop("status_options_json") or "{}")
    return config
