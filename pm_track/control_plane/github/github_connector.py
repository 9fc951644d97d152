"""Issue tracker connector contract and factory."""

from __future__ import annotations

from typing import Any, Protocol

from pm_track.shared.settings import SyncSettings

# Normalized issue shape returned by every connector:
# {number, title, body, state, url, labels, updated_at, is_pull_request}
ISSUE_STATES = ("open", "closed")


class RetryableGitHubError(RuntimeError):
    def __init__(self, message: str, reason_code: str, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.retry_after_s = retry_after_s


class IssueTracker(Protocol):
    """Connector contract for all issue tracker implementations."""

    def is_authenticated(self) -> bool: ...

    def repo_info(self, repo: str) -> dict[str, Any] | None: ...

    def create_issue(
        self, repo: str, title: str, body: str = "", labels: list[str] | None = None
    ) -> dict[str, Any]: ...

    def get_issue(self, repo: str, number: int) -> dict[str, Any] | None: ...

    def update_issue(self, repo: str, number: int, fields: dict[str, Any]) -> dict[str, Any]: ...

    def list_issues(self, repo: str, **filters: str) -> list[dict[str, Any]]: ...


def build_connector(settings: SyncSettings) -> IssueTracker:
    if settings.connector == "api":
        from pm_track.control_plane.github.github_connector_api import GitHubAPIConnector

        return GitHubAPIConnector.from_settings(settings)

    from pm_track.control_plane.github.github_connector_inmemory import InMemoryIssueTracker

    return InMemoryIssueTracker()


def build_connector_from_env(env: dict[str, str] | None = None) -> IssueTracker:
    return build_connector(SyncSettings.from_env(env))


__all__ = [
    "ISSUE_STATES",
    "IssueTracker",
    "RetryableGitHubError",
    "build_connector",
    "build_connector_from_env",
]
