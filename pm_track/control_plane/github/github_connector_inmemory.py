"""In-memory issue tracker for deterministic tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from pm_track.control_plane.github.github_connector import ISSUE_STATES, RetryableGitHubError
from pm_track.shared.errors import ExternalServiceError


class InMemoryIssueTracker:
    """Issue tracker double with a logical clock and failure injection.

    ``updated_at`` values come from a clock that advances one second per write, so
    ordering against local timestamps is controlled by ``clock_start``.
    """

    def __init__(
        self,
        authenticated: bool = True,
        clock_start: datetime | None = None,
    ) -> None:
        self.authenticated = authenticated
        self.issues: dict[tuple[str, int], dict[str, Any]] = {}
        self.writes: list[tuple[str, str, int]] = []
        self.fail_next: list[Exception] = []
        self._clock = clock_start or datetime(2020, 1, 1, tzinfo=timezone.utc)
        self._next_number: dict[str, int] = {}

    def _tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat().replace("+00:00", "Z")

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    def fail_with_retryable(self, count: int = 1) -> None:
        for _ in range(count):
            self.fail_next.append(
                RetryableGitHubError("Transient connector failure", reason_code="transient_failure")
            )

    def fail_with_outage(self, count: int = 1) -> None:
        for _ in range(count):
            self.fail_next.append(ExternalServiceError("Issue tracker unreachable"))

    def is_authenticated(self) -> bool:
        return self.authenticated

    def repo_info(self, repo: str) -> dict[str, Any] | None:
        if "/" not in repo:
            return None
        return {
            "full_name": repo,
            "default_branch": "main",
            "private": False,
            "url": f"https://github.com/{repo}",
        }

    def seed_issue(
        self,
        repo: str,
        number: int,
        title: str,
        *,
        body: str = "",
        state: str = "open",
        labels: list[str] | None = None,
        updated_at: str | None = None,
        is_pull_request: bool = False,
    ) -> dict[str, Any]:
        issue = {
            "number": int(number),
            "title": title,
            "body": body,
            "state": state,
            "url": f"https://github.com/{repo}/issues/{number}",
            "labels": list(labels or []),
            "updated_at": updated_at or self._tick(),
            "is_pull_request": is_pull_request,
        }
        self.issues[(repo, int(number))] = issue
        self._next_number[repo] = max(self._next_number.get(repo, 0), int(number))
        return dict(issue)

    def create_issue(
        self, repo: str, title: str, body: str = "", labels: list[str] | None = None
    ) -> dict[str, Any]:
        self._maybe_fail()
        if not self.authenticated:
            raise PermissionError(f"Write denied for {repo}: missing_write_token")
        number = self._next_number.get(repo, 0) + 1
        issue = self.seed_issue(repo, number, title, body=body, labels=labels)
        self.writes.append(("create_issue", repo, number))
        return issue

    def get_issue(self, repo: str, number: int) -> dict[str, Any] | None:
        self._maybe_fail()
        issue = self.issues.get((repo, int(number)))
        return dict(issue) if issue is not None else None

    def update_issue(self, repo: str, number: int, fields: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail()
        if not self.authenticated:
            raise PermissionError(f"Write denied for {repo}: missing_write_token")
        issue = self.issues.get((repo, int(number)))
        if issue is None:
            raise ExternalServiceError(
                f"Issue {repo}#{number} not found",
                metadata={"status_code": 404},
                retryable=False,
            )
        for key in ("title", "body", "state", "labels"):
            if key in fields:
                issue[key] = fields[key]
        issue["updated_at"] = self._tick()
        self.writes.append(("update_issue", repo, int(number)))
        return dict(issue)

    def list_issues(self, repo: str, **filters: str) -> list[dict[str, Any]]:
        self._maybe_fail()
        issues = [
            dict(issue)
            for (issue_repo, _), issue in sorted(self.issues.items())
            if issue_repo == repo
        ]
        state = filters.get("state", "all")
        if state in ISSUE_STATES:
            issues = [issue for issue in issues if issue["state"] == state]
        return issues
