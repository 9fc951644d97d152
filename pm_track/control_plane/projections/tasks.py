"""Task read-model: materialized from the event log, queried by everything else."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any

from pm_track.control_plane.db.db import PMDatabase
from pm_track.control_plane.events.event_store import EventStore
from pm_track.control_plane.events.reducers import TaskState, task_reducer
from pm_track.shared.errors import ValidationError

logger = logging.getLogger(__name__)

# Administrative columns patched in place; they carry no audit history.
DIRECT_PATCH_FIELDS = ("actual_hours", "blocked_by", "branch_name")

BOARD_BUCKETS = ("todo", "in_progress", "in_review", "done", "blocked")
OTHER_BUCKET = "other"

DEFAULT_PAGE_SIZE = 50

_SEQ_REF = re.compile(r"^#?(\d+)$")

_PRIORITY_RANK_SQL = """
CASE priority
  WHEN 'critical' THEN 1
  WHEN 'high' THEN 2
  WHEN 'medium' THEN 3
  WHEN 'low' THEN 4
  ELSE 5
END
"""

_JSON_COLUMNS = {
    "labels_json": "labels",
    "linked_commits_json": "linked_commits",
    "linked_issues_json": "linked_issues",
}


@dataclass(frozen=True)
class TaskFilter:
    project_id: str | None = None
    sprint_id: str | None = None
    status: str | None = None
    assignee: str | None = None
    type: str | None = None
    priority: str | None = None
    limit: int | None = DEFAULT_PAGE_SIZE
    offset: int = 0


class TaskRepository:
    def __init__(self, db: PMDatabase, event_store: EventStore) -> None:
        self.db = db
        self.event_store = event_store

    def sync_from_events(self, task_id: str) -> dict[str, Any] | None:
        """Replay the task's history and upsert the projection row.

        Runs as one transaction so seq allocation and the upsert land together.
        An existing seq is never reassigned; a deleted task loses its row.
        """

        with self.db.transaction() as conn:
            state = task_reducer(self.event_store.get_events("task", task_id))
            if state is None:
                return None
            if state.deleted:
                conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                logger.info("Removed deleted task projection", extra={"task_id": task_id})
                return None

            existing = conn.execute("SELECT seq FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if existing is not None:
                seq = int(existing["seq"])
            else:
                seq = self._allocate_seq(conn, state.project_id)
                logger.info(
                    "Allocated task seq",
                    extra={"task_id": task_id, "project_id": state.project_id, "seq": seq},
                )
            conn.execute(_UPSERT_SQL, _row_params(state, seq))
        return self.get_by_id(task_id)

    def _allocate_seq(self, conn: sqlite3.Connection, project_id: str) -> int:
        # The counter is seeded from existing rows once and only ever grows.
        conn.execute(
            """
            INSERT INTO task_sequences (project_id, last_seq)
            VALUES (?, (SELECT COALESCE(MAX(seq), 0) FROM tasks WHERE project_id = ?))
            ON CONFLICT(project_id) DO NOTHING
            """,
            (project_id, project_id),
        )
        conn.execute(
            "UPDATE task_sequences SET last_seq = last_seq + 1 WHERE project_id = ?",
            (project_id,),
        )
        row = conn.execute(
            "SELECT last_seq FROM task_sequences WHERE project_id = ?", (project_id,)
        ).fetchone()
        return int(row["last_seq"])

    def get_by_id(self, task_id: str) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return _task_from_row(row) if row is not None else None

    def get_by_seq(self, project_id: str, seq: int) -> dict[str, Any] | None:
        row = self.db.query_one(
            "SELECT * FROM tasks WHERE project_id = ? AND seq = ?", (project_id, int(seq))
        )
        return _task_from_row(row) if row is not None else None

    def find_task(self, project_id: str, id_or_seq: str | int) -> dict[str, Any] | None:
        """Look a task up by seq (``12`` or ``#12``) or by id."""

        ref = str(id_or_seq).strip()
        match = _SEQ_REF.match(ref)
        if match:
            return self.get_by_seq(project_id, int(match.group(1)))
        task = self.get_by_id(ref)
        if task is None or task["project_id"] != project_id:
            return None
        return task

    def list(self, task_filter: TaskFilter | None = None) -> list[dict[str, Any]]:
        task_filter = task_filter or TaskFilter()
        clauses: list[str] = []
        params: list[Any] = []
        for column in ("project_id", "sprint_id", "status", "assignee", "type", "priority"):
            value = getattr(task_filter, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit = -1 if task_filter.limit is None else max(int(task_filter.limit), 0)
        params.extend([limit, max(int(task_filter.offset), 0)])
        rows = self.db.query(
            f"""
            SELECT * FROM tasks
            {where}
            ORDER BY {_PRIORITY_RANK_SQL}, created_at DESC, seq DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [_task_from_row(row) for row in rows]

    def list_linked(self, project_id: str) -> list[dict[str, Any]]:
        rows = self.db.query(
            """
            SELECT * FROM tasks
            WHERE project_id = ? AND issue_number IS NOT NULL
            ORDER BY issue_number ASC
            """,
            (project_id,),
        )
        return [_task_from_row(row) for row in rows]

    def update(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Patch administrative columns directly, bypassing the event log.

        Status and every other event-sourced field must change through an event.
        """

        rejected = sorted(set(fields) - set(DIRECT_PATCH_FIELDS))
        if rejected:
            raise ValidationError(
                f"Fields not patchable directly: {', '.join(rejected)}",
                metadata={"task_id": task_id, "fields": rejected},
            )
        if self.get_by_id(task_id) is None:
            return None
        if fields:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            self.db.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                (*fields.values(), task_id),
            )
        return self.get_by_id(task_id)

    def delete(self, task_id: str) -> bool:
        cur = self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return int(cur.rowcount or 0) > 0

    def get_by_status(
        self, project_id: str, sprint_id: str | None = None
    ) -> dict[str, list[dict[str, Any]]]:
        """Group tasks into board columns; unrecognised statuses land in ``other``."""

        board: dict[str, list[dict[str, Any]]] = {bucket: [] for bucket in BOARD_BUCKETS}
        board[OTHER_BUCKET] = []
        tasks = self.list(TaskFilter(project_id=project_id, sprint_id=sprint_id, limit=None))
        for task in tasks:
            bucket = task["status"] if task["status"] in BOARD_BUCKETS else OTHER_BUCKET
            board[bucket].append(task)
        return board


_UPSERT_SQL = """
INSERT INTO tasks (
  id, seq, project_id, sprint_id, parent_id, title, description, status, priority, type,
  estimate_points, estimate_hours, assignee, labels_json, due_date,
  linked_commits_json, linked_issues_json, issue_number, issue_url,
  last_synced_at, remote_updated_at, version, created_at, updated_at,
  started_at, completed_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
  project_id=excluded.project_id,
  sprint_id=excluded.sprint_id,
  parent_id=excluded.parent_id,
  title=excluded.title,
  description=excluded.description,
  status=excluded.status,
  priority=excluded.priority,
  type=excluded.type,
  estimate_points=excluded.estimate_points,
  estimate_hours=excluded.estimate_hours,
  assignee=excluded.assignee,
  labels_json=excluded.labels_json,
  due_date=excluded.due_date,
  linked_commits_json=excluded.linked_commits_json,
  linked_issues_json=excluded.linked_issues_json,
  issue_number=excluded.issue_number,
  issue_url=excluded.issue_url,
  last_synced_at=excluded.last_synced_at,
  remote_updated_at=excluded.remote_updated_at,
  version=excluded.version,
  created_at=excluded.created_at,
  updated_at=excluded.updated_at,
  started_at=excluded.started_at,
  completed_at=excluded.completed_at
"""


def _row_params(state: TaskState, seq: int) -> tuple[Any, ...]:
    return (
        state.id,
        seq,
        state.project_id,
        state.sprint_id,
        state.parent_id,
        state.title,
        state.description,
        state.status,
        state.priority,
        state.type,
        state.estimate_points,
        state.estimate_hours,
        state.assignee,
        json.dumps(list(state.labels), sort_keys=True),
        state.due_date,
        json.dumps(list(state.linked_commits), sort_keys=True),
        json.dumps(list(state.linked_issues), sort_keys=True),
        state.issue_number,
        state.issue_url,
        state.last_synced_at,
        state.remote_updated_at,
        state.version,
        state.created_at,
        state.updated_at,
        state.started_at,
        state.completed_at,
    )


def _task_from_row(row: dict[str, Any]) -> dict[str, Any]:
    task = {key: value for key, value in row.items() if key not in _JSON_COLUMNS}
    for column, name in _JSON_COLUMNS.items():
        task[name] = json.loads(row[column]) if row.get(column) else []
    return task
