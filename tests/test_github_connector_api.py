from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest
import requests

from pm_track.control_plane.github.github_connector import (
    RetryableGitHubError,
    build_connector_from_env,
)
from pm_track.control_plane.github.github_connector_api import GitHubAPIConnector
from pm_track.control_plane.github.github_connector_inmemory import InMemoryIssueTracker
from pm_track.shared.errors import ExternalServiceError
from pm_track.shared.settings import SyncSettings


@dataclass
class FakeResponse:
    status_code: int
    payload: Any
    headers: dict[str, str] | None = None

    @property
    def content(self) -> bytes:
        if self.payload is None:
            return b""
        return b"json"

    def json(self) -> Any:
        return self.payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, responses: list[FakeResponse]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("No fake response left")
        return self.responses.pop(0)


def _issue(number: int, **extra: Any) -> dict[str, Any]:
    return {
        "number": number,
        "title": f"Issue {number}",
        "body": None,
        "state": "open",
        "html_url": f"https://github.com/acme/widgets/issues/{number}",
        "labels": [{"name": "bug"}],
        "updated_at": "2024-03-01T10:00:00Z",
        **extra,
    }


def _connector(session: FakeSession, write_token: str | None = "write-token") -> GitHubAPIConnector:
    return GitHubAPIConnector(
        read_token="read-token",
        write_token=write_token,
        session=session,  # type: ignore[arg-type]
    )


def test_build_connector_from_env_defaults_to_inmemory() -> None:
    connector = build_connector_from_env(env={})
    assert isinstance(connector, InMemoryIssueTracker)


def test_build_connector_from_env_explicit_empty_env_ignores_process(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PM_TRACK_GITHUB_CONNECTOR", "api")
    connector = build_connector_from_env(env={})
    assert isinstance(connector, InMemoryIssueTracker)


def test_build_connector_from_env_selects_api_connector() -> None:
    connector = build_connector_from_env(
        env={"PM_TRACK_GITHUB_CONNECTOR": "api", "GITHUB_TOKEN": "shared-token"}
    )
    assert isinstance(connector, GitHubAPIConnector)
    assert connector.read_token == "shared-token"
    assert connector.write_token == "shared-token"


def test_settings_split_read_write_tokens_with_shared_fallback() -> None:
    settings = SyncSettings.from_env(
        {
            "PM_TRACK_GITHUB_READ_TOKEN": "read-token",
            "PM_TRACK_GITHUB_TOKEN": "shared-token",
        }
    )
    connector = GitHubAPIConnector.from_settings(settings)

    assert (connector.read_token, connector.write_token) == ("read-token", "shared-token")
    assert settings.redacted_tokens() == {"read_token": "read...oken", "write_token": "shar...oken"}
    assert "shared-token" not in repr(settings)
    assert not SyncSettings.from_env({"GITHUB_TOKEN": "  "}).has_tokens
    assert SyncSettings.from_env({"GITHUB_TOKEN": "abc"}).redacted_tokens()["read_token"] == "***"


def test_api_connector_create_update_and_get() -> None:
    session = FakeSession(
        [
            FakeResponse(201, _issue(5)),
            FakeResponse(200, _issue(5, state="closed", pull_request={"url": "x"})),
            FakeResponse(200, _issue(5, title="Renamed")),
        ]
    )
    connector = _connector(session)

    created = connector.create_issue("acme/widgets", "Issue 5", body="details", labels=["bug"])
    updated = connector.update_issue("acme/widgets", 5, {"state": "closed", "milestone": 3})
    fetched = connector.get_issue("acme/widgets", 5)

    assert created == {
        "number": 5,
        "title": "Issue 5",
        "body": "",
        "state": "open",
        "url": "https://github.com/acme/widgets/issues/5",
        "labels": ["bug"],
        "updated_at": "2024-03-01T10:00:00Z",
        "is_pull_request": False,
    }
    assert updated["state"] == "closed"
    assert updated["is_pull_request"]
    assert fetched["title"] == "Renamed"

    create_call, patch_call, get_call = session.calls
    assert create_call["method"] == "POST"
    assert create_call["url"] == "https://api.github.com/repos/acme/widgets/issues"
    assert create_call["headers"]["Authorization"] == "Bearer write-token"
    assert create_call["headers"]["X-GitHub-Api-Version"] == "2022-11-28"
    assert create_call["json"] == {"title": "Issue 5", "body": "details", "labels": ["bug"]}
    assert patch_call["json"] == {"state": "closed"}
    assert get_call["headers"]["Authorization"] == "Bearer read-token"


def test_api_connector_list_issues_follows_pagination() -> None:
    session = FakeSession(
        [
            FakeResponse(200, [_issue(1), _issue(2)], headers={"Link": '<https://x?page=2>; rel="next"'}),
            FakeResponse(200, [_issue(3)]),
        ]
    )

    issues = _connector(session).list_issues("acme/widgets", state="all")

    assert [issue["number"] for issue in issues] == [1, 2, 3]
    assert [call["params"]["page"] for call in session.calls] == ["1", "2"]
    assert session.calls[0]["params"]["per_page"] == "100"


def test_api_connector_rate_limit_is_retryable() -> None:
    session = FakeSession(
        [FakeResponse(403, {"message": "API rate limit exceeded"}, headers={"Retry-After": "30"})]
    )

    with pytest.raises(RetryableGitHubError) as exc_info:
        _connector(session).list_issues("acme/widgets")

    assert exc_info.value.reason_code == "github_rate_limited"
    assert exc_info.value.retry_after_s == 30.0


def test_api_connector_server_error_is_retryable() -> None:
    session = FakeSession([FakeResponse(502, {"message": "bad gateway"})])

    with pytest.raises(RetryableGitHubError) as exc_info:
        _connector(session).get_issue("acme/widgets", 1)

    assert exc_info.value.reason_code == "github_502"


def test_api_connector_not_found_and_client_errors() -> None:
    session = FakeSession(
        [
            FakeResponse(404, {"message": "Not Found"}),
            FakeResponse(404, {"message": "Not Found"}),
            FakeResponse(422, {"message": "Validation Failed"}),
        ]
    )
    connector = _connector(session)

    assert connector.get_issue("acme/widgets", 404) is None
    assert connector.repo_info("acme/missing") is None
    with pytest.raises(ExternalServiceError) as exc_info:
        connector.create_issue("acme/widgets", "")
    assert exc_info.value.metadata["status_code"] == 422
    assert not exc_info.value.retryable


def test_api_connector_requires_write_token_for_writes() -> None:
    session = FakeSession([])

    with pytest.raises(PermissionError):
        _connector(session, write_token=None).create_issue("acme/widgets", "x")
    assert session.calls == []


def test_api_connector_is_authenticated_checks_user() -> None:
    ok = _connector(FakeSession([FakeResponse(200, {"login": "octocat"})]))
    unauthorized = _connector(FakeSession([FakeResponse(401, {"message": "Bad credentials"})]))
    unconfigured = GitHubAPIConnector(session=FakeSession([]))  # type: ignore[arg-type]

    assert ok.is_authenticated()
    assert not unauthorized.is_authenticated()
    assert not unconfigured.is_authenticated()


def test_inmemory_tracker_clock_and_failure_injection() -> None:
    tracker = InMemoryIssueTracker()
    tracker.seed_issue("acme/widgets", 3, "Seeded", state="closed")

    created = tracker.create_issue("acme/widgets", "Next")
    assert created["number"] == 4
    assert created["updated_at"] > "2020-01-01T00:00:01Z"
    assert [i["number"] for i in tracker.list_issues("acme/widgets", state="open")] == [4]

    tracker.fail_with_retryable()
    with pytest.raises(RetryableGitHubError):
        tracker.get_issue("acme/widgets", 4)
    assert tracker.get_issue("acme/widgets", 4)["title"] == "Next"

    with pytest.raises(ExternalServiceError):
        tracker.update_issue("acme/widgets", 99, {"title": "missing"})
    assert tracker.writes == [("create_issue", "acme/widgets", 4)]
