"""Reconciliation between local task projections and a remote issue tracker.

Pull classifies each remote issue against the local task linked to it; push writes a
single task out. Neither raises for tracker failures: outcomes are returned as data so
a batch can report partial success. Conflicts are reported, never resolved here.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import requests

from pm_track.control_plane.github.github_connector import IssueTracker, RetryableGitHubError
from pm_track.shared.errors import ConflictError, ExternalServiceError

logger = logging.getLogger(__name__)

# Failures a tracker call may surface; all are captured into results.
TRACKER_ERRORS = (
    ExternalServiceError,
    RetryableGitHubError,
    requests.RequestException,
    PermissionError,
    ValueError,
    RuntimeError,
)

REMOTE_TO_LOCAL = "remote_to_local"
LOCAL_TO_REMOTE = "local_to_remote"


@dataclass
class PullResult:
    success: bool = True
    synced: list[dict[str, Any]] = field(default_factory=list)
    created: list[dict[str, Any]] = field(default_factory=list)
    updated: list[dict[str, Any]] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def raise_for_conflicts(self) -> None:
        if self.conflicts:
            raise ConflictError(
                f"{len(self.conflicts)} task(s) changed both locally and remotely",
                metadata={"conflicts": self.conflicts},
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PushResult:
    success: bool
    issue_number: int | None = None
    url: str | None = None
    remote_updated_at: str | None = None
    error: str | None = None
    retryable: bool = False
    # The issue exists remotely but still needs a follow-up update.
    needs_update: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def status_to_issue_state(status: str | None) -> str:
    return "closed" if status == "done" else "open"


def issue_state_to_status(state: str, local_status: str | None = None) -> str:
    if state == "closed":
        return "done"
    if local_status is None or local_status == "done":
        return "todo"
    return local_status


def parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncEngine:
    def __init__(self, connector: IssueTracker, repo: str) -> None:
        self.connector = connector
        self.repo = repo

    def pull_from_github(self, local_tasks: list[dict[str, Any]]) -> PullResult:
        result = PullResult()
        try:
            remote_issues = self.connector.list_issues(self.repo, state="all")
        except TRACKER_ERRORS as exc:
            logger.warning("Pull from %s failed: %s", self.repo, exc)
            result.success = False
            result.errors.append(f"list_issues: {exc}")
            return result

        linked = {
            int(task["issue_number"]): task
            for task in local_tasks
            if task.get("issue_number") is not None
        }
        for issue in remote_issues:
            if issue.get("is_pull_request"):
                continue
            number = int(issue["number"])
            task = linked.get(number)
            if task is None:
                result.created.append(_created_entry(issue))
                continue
            try:
                self._classify(task, issue, result)
            except ValueError as exc:
                result.errors.append(f"#{number}: {exc}")

        if result.errors:
            result.success = False
        logger.info(
            "Pulled %s: %d synced, %d created, %d updated, %d conflicts",
            self.repo,
            len(result.synced),
            len(result.created),
            len(result.updated),
            len(result.conflicts),
        )
        return result

    def _classify(self, task: dict[str, Any], issue: dict[str, Any], result: PullResult) -> None:
        remote = remote_task_fields(issue, task.get("status"))
        local = {
            "title": task.get("title") or "",
            "description": task.get("description") or "",
            "status": task.get("status"),
        }
        differing = sorted(key for key in remote if remote[key] != local[key])
        entry = {
            "task_id": task["id"],
            "issue_number": int(issue["number"]),
            "remote_updated_at": issue.get("updated_at") or None,
        }

        last_synced = parse_timestamp(task.get("last_synced_at"))
        if last_synced is None:
            # No marker: any difference is ambiguous.
            if differing:
                result.conflicts.append(
                    _conflict(entry, "no_sync_marker", differing, local, remote)
                )
            else:
                result.synced.append(entry)
            return

        remote_changed = _after(issue.get("updated_at"), last_synced)
        local_changed = _after(task.get("updated_at"), last_synced)
        if remote_changed and local_changed:
            result.conflicts.append(_conflict(entry, "both_changed", differing, local, remote))
        elif remote_changed and differing:
            result.updated.append(
                {
                    **entry,
                    "direction": REMOTE_TO_LOCAL,
                    "changes": {key: remote[key] for key in differing},
                }
            )
        elif local_changed and differing:
            result.updated.append(
                {
                    **entry,
                    "direction": LOCAL_TO_REMOTE,
                    "changes": {key: local[key] for key in differing},
                }
            )
        elif differing and not (remote_changed or local_changed):
            result.conflicts.append(_conflict(entry, "diverged", differing, local, remote))
        else:
            result.synced.append(entry)

    def push_to_github(self, local_task: dict[str, Any], action: str) -> PushResult:
        try:
            if action == "create":
                issue = self.connector.create_issue(
                    self.repo,
                    title=str(local_task["title"]),
                    body=str(local_task.get("description") or ""),
                    labels=list(local_task.get("labels") or []),
                )
                if status_to_issue_state(local_task.get("status")) == "closed":
                    return self._close_created_issue(local_task, issue)
            elif action == "update":
                number = local_task.get("issue_number")
                if number is None:
                    return PushResult(success=False, error="Task is not linked to an issue")
                issue = self.connector.update_issue(
                    self.repo,
                    int(number),
                    {
                        "title": str(local_task["title"]),
                        "body": str(local_task.get("description") or ""),
                        "state": status_to_issue_state(local_task.get("status")),
                    },
                )
            else:
                return PushResult(success=False, error=f"Unsupported push action: {action}")
        except TRACKER_ERRORS as exc:
            logger.warning(
                "Push %s to %s failed: %s",
                action,
                self.repo,
                exc,
                extra={"task_id": local_task.get("id"), "error": str(exc)},
            )
            return PushResult(success=False, error=str(exc), retryable=_is_retryable(exc))

        return PushResult(
            success=True,
            issue_number=int(issue["number"]),
            url=issue.get("url") or None,
            remote_updated_at=issue.get("updated_at") or None,
        )

    def _close_created_issue(self, local_task: dict[str, Any], issue: dict[str, Any]) -> PushResult:
        """Close a freshly created issue; a failed close keeps the created issue number."""

        number = int(issue["number"])
        try:
            closed = self.connector.update_issue(self.repo, number, {"state": "closed"})
        except TRACKER_ERRORS as exc:
            logger.warning(
                "Created issue #%d in %s but could not close it: %s",
                number,
                self.repo,
                exc,
                extra={"task_id": local_task.get("id"), "error": str(exc)},
            )
            return PushResult(
                success=True,
                issue_number=number,
                url=issue.get("url") or None,
                remote_updated_at=issue.get("updated_at") or None,
                error=f"Issue created but not closed: {exc}",
                retryable=_is_retryable(exc),
                needs_update=True,
            )
        return PushResult(
            success=True,
            issue_number=number,
            url=closed.get("url") or issue.get("url") or None,
            remote_updated_at=closed.get("updated_at") or None,
        )


def remote_task_fields(issue: dict[str, Any], local_status: str | None = None) -> dict[str, Any]:
    return {
        "title": str(issue.get("title") or ""),
        "description": str(issue.get("body") or ""),
        "status": issue_state_to_status(str(issue.get("state") or "open"), local_status),
    }


def _created_entry(issue: dict[str, Any]) -> dict[str, Any]:
    return {
        "issue_number": int(issue["number"]),
        "title": str(issue.get("title") or ""),
        "description": str(issue.get("body") or ""),
        "status": issue_state_to_status(str(issue.get("state") or "open")),
        "labels": list(issue.get("labels") or []),
        "url": issue.get("url") or None,
        "remote_updated_at": issue.get("updated_at") or None,
    }


def _after(value: Any, marker: datetime) -> bool:
    parsed = parse_timestamp(value)
    return parsed is not None and parsed > marker


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, RetryableGitHubError):
        return True
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    return isinstance(exc, requests.RequestException)


def _conflict(
    entry: dict[str, Any],
    reason: str,
    fields: list[str],
    local: dict[str, Any],
    remote: dict[str, Any],
) -> dict[str, Any]:
    return {**entry, "reason": reason, "fields": fields, "local": local, "remote": remote}
