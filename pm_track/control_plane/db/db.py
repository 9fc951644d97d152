"""SQLite storage handle for the event log and its projections."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pm_track.shared.errors import StorageError

logger = logging.getLogger(__name__)


class PMDatabase:
    """Small SQLite wrapper shared by the event store and every repository.

    The handle is constructed explicitly and passed into each repository; its
    lifetime belongs to the process or the test that opened it.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: multi-statement atomicity goes through transaction().
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        """Apply local-first SQLite settings for durability and concurrent reads."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                aggregate_type TEXT NOT NULL
                    CHECK (aggregate_type IN ('project', 'sprint', 'task')),
                aggregate_id TEXT NOT NULL,
                sequence_number INTEGER NOT NULL,
                payload_json TEXT NOT NULL,
                metadata_json TEXT,
                schema_version INTEGER NOT NULL DEFAULT 1,
                recorded_at TEXT NOT NULL,
                UNIQUE(aggregate_type, aggregate_id, sequence_number)
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                settings_json TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sprints (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                name TEXT NOT NULL,
                goal TEXT,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'planning',
                velocity_committed INTEGER NOT NULL DEFAULT 0,
                velocity_completed INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                seq INTEGER NOT NULL,
                project_id TEXT NOT NULL,
                sprint_id TEXT,
                parent_id TEXT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'todo',
                priority TEXT NOT NULL DEFAULT 'medium',
                type TEXT NOT NULL DEFAULT 'task',
                estimate_points INTEGER,
                estimate_hours REAL,
                actual_hours REAL,
                assignee TEXT,
                labels_json TEXT,
                due_date TEXT,
                blocked_by TEXT,
                branch_name TEXT,
                linked_commits_json TEXT,
                linked_issues_json TEXT,
                issue_number INTEGER,
                issue_url TEXT,
                last_synced_at TEXT,
                remote_updated_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                UNIQUE(project_id, seq)
            );

            CREATE TABLE IF NOT EXISTS task_sequences (
                project_id TEXT PRIMARY KEY,
                last_seq INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS project_config (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL UNIQUE,
                github_enabled INTEGER NOT NULL DEFAULT 0,
                github_repo TEXT,
                github_project_id TEXT,
                github_project_number INTEGER,
                field_mappings_json TEXT,
                status_options_json TEXT,
                sync_mode TEXT NOT NULL DEFAULT 'read_only',
                last_sync_at TEXT,
                last_sync_cursor TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                processed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS velocity_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                sprint_id TEXT NOT NULL,
                committed_points INTEGER NOT NULL DEFAULT 0,
                completed_points INTEGER NOT NULL DEFAULT 0,
                completion_rate REAL NOT NULL DEFAULT 0,
                recorded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_aggregate "
            "ON events(aggregate_type, aggregate_id, sequence_number)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type, recorded_at)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_project_status ON tasks(project_id, status)"
        )
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_sprint ON tasks(sprint_id)")
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_issue ON tasks(project_id, issue_number)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, created_at, id)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_queue_entity "
            "ON sync_queue(entity_type, entity_id)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_velocity_project "
            "ON velocity_history(project_id, recorded_at)"
        )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically under ``BEGIN IMMEDIATE``.

        Nested blocks join the outermost transaction. Any failure rolls the whole
        block back; SQLite failures surface as ``StorageError``.
        """

        with self._lock:
            outermost = self._depth == 0
            if outermost:
                try:
                    self.conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as exc:
                    raise StorageError(
                        f"Could not open transaction: {exc}", metadata={"db_path": self.db_path}
                    ) from exc
            self._depth += 1
            try:
                yield self.conn
            except sqlite3.Error as exc:
                self._depth -= 1
                if outermost:
                    self._rollback()
                raise StorageError(
                    f"Storage write failed: {exc}", metadata={"db_path": self.db_path}
                ) from exc
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    try:
                        self.conn.execute("COMMIT")
                    except sqlite3.Error as exc:
                        self._rollback()
                        raise StorageError(
                            f"Commit failed: {exc}", metadata={"db_path": self.db_path}
                        ) from exc

    def _rollback(self) -> None:
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")
            logger.warning("Rolled back storage transaction on %s", self.db_path)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def query(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[dict[str, Any]]:
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc
        return [dict(row) for row in rows]

    def query_one(
        self, sql: str, params: tuple[Any, ...] | list[Any] = ()
    ) -> dict[str, Any] | None:
        try:
            row = self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc
        return dict(row) if row is not None else None

    def execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Cursor:
        with self.transaction() as conn:
            return conn.execute(sql, params)

    def close(self) -> None:
        self.conn.close()
