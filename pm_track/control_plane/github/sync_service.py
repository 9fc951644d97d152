"""Applies sync engine outcomes to the event log and stages failed pushes."""

from __future__ import annotations

import logging
from datetime import timezone
from typing import Any

from pm_track.control_plane.events.event_store import utc_now_iso
from pm_track.control_plane.github.github_connector import IssueTracker
from pm_track.control_plane.github.sync_engine import (
    LOCAL_TO_REMOTE,
    REMOTE_TO_LOCAL,
    PushResult,
    SyncEngine,
    parse_timestamp,
)
from pm_track.control_plane.projections.config import ProjectConfigRepository
from pm_track.control_plane.projections.sync_queue import SyncQueueRepository
from pm_track.control_plane.projections.tasks import TaskRepository
from pm_track.control_plane.services.task_service import TaskService
from pm_track.shared.errors import NotFoundError, PMTrackError, ValidationError
from pm_track.shared.settings import SyncSettings

logger = logging.getLogger(__name__)

QUEUE_ACTIONS = {"create_issue": "create", "update_issue": "update"}


class GitHubSyncService:
    def __init__(
        self,
        *,
        connector: IssueTracker,
        tasks: TaskRepository,
        task_service: TaskService,
        config: ProjectConfigRepository,
        queue: SyncQueueRepository,
        settings: SyncSettings,
    ) -> None:
        self.connector = connector
        self.tasks = tasks
        self.task_service = task_service
        self.config = config
        self.queue = queue
        self.settings = settings

    def repo_for(self, project_id: str) -> str:
        config = self.config.get_by_project_id(project_id) or {}
        repo = str(config.get("github_repo") or self.settings.github_repo or "").strip()
        if "/" not in repo:
            raise ValidationError(
                "No issue tracker repository configured for project",
                metadata={"project_id": project_id},
            )
        return repo

    def engine_for(self, project_id: str) -> SyncEngine:
        if not self.config.is_github_enabled(project_id):
            raise ValidationError(
                "Issue tracker sync is not enabled for project",
                metadata={"project_id": project_id},
            )
        return SyncEngine(self.connector, self.repo_for(project_id))

    def pull(self, project_id: str, dry_run: bool = False) -> dict[str, Any]:
        engine = self.engine_for(project_id)
        result = engine.pull_from_github(self.tasks.list_linked(project_id))
        summary: dict[str, Any] = {
            "project_id": project_id,
            "repo": engine.repo,
            "dry_run": dry_run,
            **result.to_dict(),
            "applied": {"created": [], "updated": [], "pushed": [], "queued": [], "skipped": []},
        }
        if dry_run:
            return summary

        applied = summary["applied"]
        bidirectional = (self.config.get_by_project_id(project_id) or {}).get(
            "sync_mode"
        ) == "bidirectional"

        for entry in result.created:
            try:
                task = self._create_from_issue(project_id, engine.repo, entry)
            except PMTrackError as exc:
                summary["errors"].append(f"#{entry['issue_number']}: {exc}")
                continue
            applied["created"].append(task["id"])

        for entry in result.updated:
            task_id = entry["task_id"]
            if entry["direction"] == REMOTE_TO_LOCAL:
                try:
                    self._apply_remote_changes(task_id, entry["changes"])
                except PMTrackError as exc:
                    summary["errors"].append(f"#{entry['issue_number']}: {exc}")
                    continue
                self._mark_synced(task_id, entry, REMOTE_TO_LOCAL)
                applied["updated"].append(task_id)
            elif not bidirectional:
                applied["skipped"].append(task_id)
            else:
                task = self.tasks.get_by_id(task_id)
                push = engine.push_to_github(task, "update")
                if push.success:
                    self._mark_synced(task_id, entry, LOCAL_TO_REMOTE, push.remote_updated_at)
                    applied["pushed"].append(task_id)
                else:
                    item = self.queue.enqueue(
                        "update_issue", "task", task_id, {"project_id": project_id}
                    )
                    applied["queued"].append(item["id"])

        for entry in result.synced:
            task = self.tasks.get_by_id(entry["task_id"])
            if task is None:
                continue
            if task["last_synced_at"] is None or (
                entry["remote_updated_at"] and entry["remote_updated_at"] != task["remote_updated_at"]
            ):
                self._mark_synced(task["id"], entry, None)

        summary["success"] = not summary["errors"]
        self.config.mark_synced(project_id, utc_now_iso())
        return summary

    def push(
        self, project_id: str, task_ref: str, action: str | None = None
    ) -> dict[str, Any]:
        """Push one task; a failed push is staged on the sync queue instead of lost."""

        task = self.tasks.find_task(project_id, task_ref)
        if task is None:
            raise NotFoundError(
                f"Task not found: {task_ref}",
                metadata={"project_id": project_id, "task_ref": task_ref},
            )
        action = action or ("update" if task["issue_number"] is not None else "create")
        if action not in ("create", "update"):
            raise ValidationError(f"Unsupported push action: {action}", metadata={"action": action})

        engine = self.engine_for(project_id)
        result = engine.push_to_github(task, action)
        response = {"task_id": task["id"], "action": action, **result.to_dict()}
        if result.success:
            follow_up = self._record_push(task["id"], project_id, engine.repo, action, result)
            response["queued"] = follow_up is not None
            if follow_up is not None:
                response["queue_item_id"] = follow_up["id"]
            return response

        item = self.queue.enqueue(
            f"{action}_issue", "task", task["id"], {"project_id": project_id}
        )
        response["queued"] = True
        response["queue_item_id"] = item["id"]
        return response

    def process_queue(self, limit: int | None = None) -> dict[str, Any]:
        """Drain pending queue items once; nothing drains the queue in the background."""

        batch = self.queue.get_pending(limit or self.settings.queue_batch_size)
        outcomes: list[dict[str, Any]] = []
        for item in batch:
            if not self.queue.mark_processing(item["id"]):
                continue
            result = self._process_item(item)
            if result.success:
                self.queue.mark_completed(item["id"])
            else:
                self.queue.mark_failed(item["id"], result.error or "unknown error")
            outcomes.append({"id": item["id"], "action": item["action"], **result.to_dict()})
        completed = sum(1 for outcome in outcomes if outcome["success"])
        return {
            "processed": len(outcomes),
            "completed": completed,
            "failed": len(outcomes) - completed,
            "items": outcomes,
        }

    def retry_failed(self) -> int:
        return self.queue.retry_failed(self.settings.max_retries)

    def clear_completed(self, days_old: int | None = None) -> int:
        return self.queue.clear_old(
            self.settings.clear_after_days if days_old is None else days_old
        )

    def queue_status(self) -> dict[str, int]:
        return self.queue.get_stats()

    def _process_item(self, item: dict[str, Any]) -> PushResult:
        action = QUEUE_ACTIONS.get(item["action"])
        if action is None or item["entity_type"] != "task":
            return PushResult(success=False, error=f"Unsupported queue action: {item['action']}")
        task = self.tasks.get_by_id(item["entity_id"])
        if task is None:
            return PushResult(success=False, error="Task no longer exists")
        if action == "create" and task["issue_number"] is not None:
            action = "update"
        try:
            engine = self.engine_for(task["project_id"])
        except ValidationError as exc:
            return PushResult(success=False, error=str(exc))
        result = engine.push_to_github(task, action)
        if result.success:
            self._record_push(task["id"], task["project_id"], engine.repo, action, result)
        return result

    def _record_push(
        self, task_id: str, project_id: str, repo: str, action: str, result: PushResult
    ) -> dict[str, Any] | None:
        """Link and mark the task; returns the queued follow-up when the remote is behind."""

        with self.task_service.db.transaction():
            if action == "create" and result.issue_number is not None:
                self.task_service.link_issue(
                    task_id, result.issue_number, url=result.url, repo=repo
                )
            if result.needs_update:
                return self.queue.enqueue(
                    "update_issue", "task", task_id, {"project_id": project_id}
                )
            self.task_service.record_sync(
                task_id,
                int(result.issue_number or 0),
                synced_at=_latest(utc_now_iso(), result.remote_updated_at),
                remote_updated_at=result.remote_updated_at,
                direction=LOCAL_TO_REMOTE,
            )
        return None

    def _create_from_issue(self, project_id: str, repo: str, entry: dict[str, Any]) -> dict[str, Any]:
        number = int(entry["issue_number"])
        # An import that fails part way must not leave an unlinked task behind.
        with self.task_service.db.transaction():
            task = self.task_service.create(
                project_id,
                entry["title"] or f"Issue #{number}",
                description=entry["description"] or None,
                labels=entry["labels"],
            )
            if entry["status"] != task["status"]:
                self.task_service.change_status(
                    task["id"], entry["status"], reason="Imported issue"
                )
            self.task_service.link_issue(task["id"], number, url=entry["url"], repo=repo)
            return self.task_service.record_sync(
                task["id"],
                number,
                synced_at=_latest(utc_now_iso(), entry["remote_updated_at"]),
                remote_updated_at=entry["remote_updated_at"],
                direction=REMOTE_TO_LOCAL,
            )

    def _apply_remote_changes(self, task_id: str, changes: dict[str, Any]) -> None:
        fields = {key: changes[key] for key in ("title", "description") if key in changes}
        if "description" in fields:
            fields["description"] = fields["description"] or None
        if fields:
            self.task_service.update(task_id, **fields)
        if "status" in changes:
            self.task_service.change_status(task_id, changes["status"], reason="Issue sync")

    def _mark_synced(
        self,
        task_id: str,
        entry: dict[str, Any],
        direction: str | None,
        remote_updated_at: str | None = None,
    ) -> None:
        remote_updated_at = remote_updated_at or entry.get("remote_updated_at")
        self.task_service.record_sync(
            task_id,
            int(entry["issue_number"]),
            synced_at=_latest(utc_now_iso(), remote_updated_at),
            remote_updated_at=remote_updated_at,
            direction=direction,
        )


def _latest(local_now: str, remote: str | None) -> str:
    """The sync marker must not predate either side's last write."""

    remote_ts = parse_timestamp(remote)
    if remote_ts is None or remote_ts <= parse_timestamp(local_now):
        return local_now
    return remote_ts.astimezone(timezone.utc).isoformat(timespec="microseconds").replace(
        "+00:00", "Z"
    )
