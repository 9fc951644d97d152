"""Durable staging for sync actions that could not complete inline.

Items move pending -> processing -> completed, or processing -> failed. Only a failed
item may be reset to pending; its retry count is kept.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pm_track.control_plane.db.db import PMDatabase

logger = logging.getLogger(__name__)

QUEUE_STATUSES = ("pending", "processing", "completed", "failed")


class SyncQueueRepository:
    def __init__(self, db: PMDatabase) -> None:
        self.db = db

    def enqueue(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Always adds a new pending row; callers own any de-duplication policy."""

        cur = self.db.execute(
            """
            INSERT INTO sync_queue (action, entity_type, entity_id, payload_json, status)
            VALUES (?, ?, ?, ?, 'pending')
            """,
            (action, entity_type, entity_id, json.dumps(payload or {}, sort_keys=True)),
        )
        item_id = int(cur.lastrowid)
        logger.info(
            "Enqueued %s",
            action,
            extra={"queue_item_id": item_id, "aggregate_id": entity_id},
        )
        return self.get_by_id(item_id)

    def get_by_id(self, item_id: int) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM sync_queue WHERE id = ?", (int(item_id),))
        return _item_from_row(row) if row is not None else None

    def get_pending(self, limit: int = 10) -> list[dict[str, Any]]:
        rows = self.db.query(
            """
            SELECT * FROM sync_queue
            WHERE status = 'pending'
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (int(limit),),
        )
        return [_item_from_row(row) for row in rows]

    def get_by_entity(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        rows = self.db.query(
            """
            SELECT * FROM sync_queue
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (entity_type, entity_id),
        )
        return [_item_from_row(row) for row in rows]

    def mark_processing(self, item_id: int) -> bool:
        return self._transition(
            "UPDATE sync_queue SET status = 'processing' WHERE id = ? AND status = 'pending'",
            (int(item_id),),
            item_id,
            "processing",
        )

    def mark_completed(self, item_id: int) -> bool:
        return self._transition(
            """
            UPDATE sync_queue
            SET status = 'completed', processed_at = datetime('now')
            WHERE id = ? AND status = 'processing'
            """,
            (int(item_id),),
            item_id,
            "completed",
        )

    def mark_failed(self, item_id: int, error_message: str) -> bool:
        return self._transition(
            """
            UPDATE sync_queue
            SET status = 'failed', retry_count = retry_count + 1, error_message = ?
            WHERE id = ? AND status = 'processing'
            """,
            (error_message, int(item_id)),
            item_id,
            "failed",
        )

    def retry(self, item_id: int) -> bool:
        """Reset a failed item to pending; any other status is left untouched."""

        return self._transition(
            """
            UPDATE sync_queue
            SET status = 'pending', error_message = NULL
            WHERE id = ? AND status = 'failed'
            """,
            (int(item_id),),
            item_id,
            "pending",
        )

    def retry_failed(self, max_retries: int | None = None) -> int:
        if max_retries is None:
            cur = self.db.execute(
                "UPDATE sync_queue SET status = 'pending', error_message = NULL WHERE status = 'failed'"
            )
        else:
            cur = self.db.execute(
                """
                UPDATE sync_queue
                SET status = 'pending', error_message = NULL
                WHERE status = 'failed' AND retry_count < ?
                """,
                (int(max_retries),),
            )
        return int(cur.rowcount or 0)

    def get_stats(self) -> dict[str, int]:
        row = self.db.query_one(
            """
            SELECT
              COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) AS pending,
              COALESCE(SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END), 0) AS processing,
              COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed,
              COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) AS failed
            FROM sync_queue
            """
        )
        row = row or {}
        return {status: int(row.get(status) or 0) for status in QUEUE_STATUSES}

    def clear_old(self, days_old: int = 7) -> int:
        """Delete completed items processed before the cutoff; failed items are kept."""

        cur = self.db.execute(
            """
            DELETE FROM sync_queue
            WHERE status = 'completed'
              AND processed_at < datetime('now', '-' || ? || ' days')
            """,
            (int(days_old),),
        )
        return int(cur.rowcount or 0)

    def _transition(self, sql: str, params: tuple[Any, ...], item_id: int, status: str) -> bool:
        cur = self.db.execute(sql, params)
        changed = int(cur.rowcount or 0) > 0
        if changed:
            logger.info("Queue item -> %s", status, extra={"queue_item_id": int(item_id)})
        return changed


def _item_from_row(row: dict[str, Any]) -> dict[str, Any]:
    item = dict(row)
    item["payload"] = json.loads(item.pop("payload_json") or "{}")
    return item
