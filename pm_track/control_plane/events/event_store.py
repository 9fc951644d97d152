"""Append-only event log keyed by aggregate."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from pm_track.control_plane.db.db import PMDatabase
from pm_track.shared.errors import ValidationError

logger = logging.getLogger(__name__)

AGGREGATE_TYPES = ("project", "sprint", "task")
SCHEMA_VERSION = 1

StateT = TypeVar("StateT")


@dataclass(frozen=True)
class Event:
    id: int
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: dict[str, Any]
    sequence_number: int
    recorded_at: str
    metadata: dict[str, Any] | None = None
    schema_version: int = SCHEMA_VERSION


class EventStore:
    """Durable, ordered, replayable log of domain events."""

    def __init__(self, db: PMDatabase) -> None:
        self.db = db

    def append(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        if aggregate_type not in AGGREGATE_TYPES:
            raise ValidationError(
                f"Unknown aggregate type: {aggregate_type}",
                metadata={"aggregate_type": aggregate_type},
            )
        if not event_type or not aggregate_id:
            raise ValidationError("event_type and aggregate_id are required")

        recorded_at = utc_now_iso()
        payload_json = json.dumps(payload, sort_keys=True)
        metadata_json = json.dumps(metadata, sort_keys=True) if metadata is not None else None
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(MAX(sequence_number), 0) + 1
                FROM events
                WHERE aggregate_type = ? AND aggregate_id = ?
                """,
                (aggregate_type, aggregate_id),
            ).fetchone()
            sequence_number = int(row[0])
            cur = conn.execute(
                """
                INSERT INTO events (
                  event_type, aggregate_type, aggregate_id, sequence_number,
                  payload_json, metadata_json, schema_version, recorded_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_type,
                    aggregate_type,
                    aggregate_id,
                    sequence_number,
                    payload_json,
                    metadata_json,
                    SCHEMA_VERSION,
                    recorded_at,
                ),
            )
            event_id = int(cur.lastrowid)

        logger.debug(
            "Appended %s",
            event_type,
            extra={
                "aggregate_id": aggregate_id,
                "event_type": event_type,
                "sequence_number": sequence_number,
            },
        )
        return Event(
            id=event_id,
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=json.loads(payload_json),
            sequence_number=sequence_number,
            recorded_at=recorded_at,
            metadata=json.loads(metadata_json) if metadata_json is not None else None,
        )

    def get_events(
        self,
        aggregate_type: str,
        aggregate_id: str,
        from_version: int | None = None,
    ) -> list[Event]:
        rows = self.db.query(
            """
            SELECT * FROM events
            WHERE aggregate_type = ? AND aggregate_id = ? AND sequence_number > ?
            ORDER BY sequence_number ASC
            """,
            (aggregate_type, aggregate_id, int(from_version or 0)),
        )
        return [_event_from_row(row) for row in rows]

    def get_events_by_type(self, event_type: str) -> list[Event]:
        rows = self.db.query(
            "SELECT * FROM events WHERE event_type = ? ORDER BY recorded_at ASC, id ASC",
            (event_type,),
        )
        return [_event_from_row(row) for row in rows]

    def get_version(self, aggregate_type: str, aggregate_id: str) -> int:
        row = self.db.query_one(
            """
            SELECT COALESCE(MAX(sequence_number), 0) AS version
            FROM events WHERE aggregate_type = ? AND aggregate_id = ?
            """,
            (aggregate_type, aggregate_id),
        )
        return int(row["version"]) if row else 0

    def replay(
        self,
        aggregate_type: str,
        aggregate_id: str,
        reducer: Callable[[Sequence[Event]], StateT],
    ) -> StateT:
        return reducer(self.get_events(aggregate_type, aggregate_id))


def _event_from_row(row: dict[str, Any]) -> Event:
    metadata_json = row.get("metadata_json")
    return Event(
        id=int(row["id"]),
        event_type=str(row["event_type"]),
        aggregate_type=str(row["aggregate_type"]),
        aggregate_id=str(row["aggregate_id"]),
        payload=json.loads(row["payload_json"] or "{}"),
        sequence_number=int(row["sequence_number"]),
        recorded_at=str(row["recorded_at"]),
        metadata=json.loads(metadata_json) if metadata_json else None,
        schema_version=int(row["schema_version"] or SCHEMA_VERSION),
    )


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")
