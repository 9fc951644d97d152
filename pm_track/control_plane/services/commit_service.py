"""Commit processing: magic words in a message drive task links and transitions.

``#N`` in a commit message refers to the task with seq ``N`` in the given project.
"""

from __future__ import annotations

import logging
from typing import Any

from pm_track.control_plane.git.commit_parser import (
    magic_word_status_changes,
    parse_commit_message,
)
from pm_track.control_plane.projections.tasks import TaskRepository
from pm_track.control_plane.services.task_service import TaskService

logger = logging.getLogger(__name__)


class CommitService:
    def __init__(self, tasks: TaskRepository, task_service: TaskService) -> None:
        self.tasks = tasks
        self.task_service = task_service

    def parse(self, message: str, project_id: str | None = None) -> dict[str, Any]:
        info = parse_commit_message(message)
        parsed: dict[str, Any] = {
            "type": info.type,
            "scope": info.scope,
            "description": info.description,
            "breaking": info.breaking,
            "magic_words": [
                {"action": word.action, "issue_ids": list(word.issue_ids)}
                for word in info.magic_words
            ],
            "issue_refs": list(info.issue_refs),
        }
        if project_id is None:
            return parsed

        suggestions = magic_word_status_changes(info.magic_words)
        resolved: list[dict[str, Any]] = []
        for seq in _magic_word_ids(info.magic_words):
            task = self.tasks.get_by_seq(project_id, seq)
            if task is None:
                continue
            suggested = suggestions.get(seq)
            resolved.append(
                {
                    "seq": seq,
                    "task_id": task["id"],
                    "title": task["title"],
                    "current_status": task["status"],
                    "suggested_status": suggested if suggested != task["status"] else None,
                }
            )
        parsed["resolved_tasks"] = resolved
        return parsed

    def process(
        self,
        commit_sha: str,
        message: str,
        project_id: str,
        branch: str | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        info = parse_commit_message(message)
        transitions = magic_word_status_changes(info.magic_words)
        actions: list[dict[str, Any]] = []
        short_sha = commit_sha[:7]

        for seq in _magic_word_ids(info.magic_words):
            task = self.tasks.get_by_seq(project_id, seq)
            if task is None:
                continue
            if not dry_run:
                self.task_service.link_commit(task["id"], commit_sha, branch=branch, message=message)
            actions.append(
                {
                    "action": "link_commit",
                    "task_seq": seq,
                    "task_id": task["id"],
                    "title": task["title"],
                    "applied": not dry_run,
                }
            )

            to_status = transitions.get(seq)
            if to_status is None or to_status == task["status"]:
                continue
            if not dry_run:
                self.task_service.change_status(
                    task["id"], to_status, reason=f"Magic word in commit {short_sha}"
                )
            actions.append(
                {
                    "action": "status_change",
                    "task_seq": seq,
                    "task_id": task["id"],
                    "title": task["title"],
                    "from_status": task["status"],
                    "to_status": to_status,
                    "applied": not dry_run,
                }
            )

        logger.info(
            "Processed commit %s: %d action(s)%s",
            short_sha,
            len(actions),
            " (dry run)" if dry_run else "",
            extra={"project_id": project_id},
        )
        return {
            "commit_sha": short_sha,
            "parsed": self.parse(message),
            "actions": actions,
            "dry_run": dry_run,
        }


def _magic_word_ids(magic_words: list[Any]) -> list[int]:
    ids: list[int] = []
    for word in magic_words:
        for issue_id in word.issue_ids:
            if issue_id not in ids:
                ids.append(issue_id)
    return ids
