from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from pm_track.control_plane.api.app import PMTrackApp
from pm_track.control_plane.github.github_connector_inmemory import InMemoryIssueTracker
from pm_track.control_plane.projections.tasks import TaskFilter
from pm_track.shared.errors import ExternalServiceError, NotFoundError, StorageError, ValidationError
from pm_track.shared.settings import SyncSettings

REPO = "acme/widgets"


def _app(tracker: InMemoryIssueTracker, **env: str) -> PMTrackApp:
    return PMTrackApp(connector=tracker, sync_settings=SyncSettings.from_env(env))


def _project(app: PMTrackApp, mode: str = "read_only", repo: str = REPO) -> str:
    project = app.project_service.create("Alpha")
    app.config.enable_github(project["id"], repo)
    app.config.update(project["id"], sync_mode=mode)
    return project["id"]


def test_pull_imports_new_issues_and_is_stable() -> None:
    tracker = InMemoryIssueTracker()
    tracker.seed_issue(REPO, 1, "Open bug", body="steps", labels=["bug"])
    tracker.seed_issue(REPO, 2, "Shipped", state="closed")
    tracker.seed_issue(REPO, 3, "A PR", is_pull_request=True)
    app = _app(tracker)
    project_id = _project(app)

    first = app.sync_service.pull(project_id)
    second = app.sync_service.pull(project_id)

    assert first["success"]
    assert len(first["applied"]["created"]) == 2
    imported = {t["issue_number"]: t for t in app.tasks.list_linked(project_id)}
    assert imported[1]["labels"] == ["bug"]
    assert imported[1]["description"] == "steps"
    assert imported[2]["status"] == "done"
    assert imported[1]["last_synced_at"] is not None

    assert second["created"] == []
    assert second["conflicts"] == []
    assert len(second["synced"]) == 2
    assert app.config.get_by_project_id(project_id)["last_sync_at"] is not None


def test_pull_dry_run_writes_nothing() -> None:
    tracker = InMemoryIssueTracker()
    tracker.seed_issue(REPO, 1, "Open bug")
    app = _app(tracker)
    project_id = _project(app)

    summary = app.sync_service.pull(project_id, dry_run=True)

    assert summary["dry_run"]
    assert len(summary["created"]) == 1
    assert app.tasks.list_linked(project_id) == []


def test_pull_applies_remote_edits_as_events() -> None:
    # A tracker clock ahead of the local clock makes every remote write newer.
    tracker = InMemoryIssueTracker(clock_start=datetime(2100, 1, 1, tzinfo=timezone.utc))
    tracker.seed_issue(REPO, 1, "Open bug")
    app = _app(tracker)
    project_id = _project(app)
    app.sync_service.pull(project_id)

    tracker.update_issue(REPO, 1, {"title": "Open bug (renamed)", "state": "closed"})
    summary = app.sync_service.pull(project_id)

    (task_id,) = summary["applied"]["updated"]
    task = app.tasks.get_by_id(task_id)
    assert task["title"] == "Open bug (renamed)"
    assert task["status"] == "done"
    assert app.sync_service.pull(project_id)["updated"] == []


def test_local_edits_push_only_in_bidirectional_mode() -> None:
    tracker = InMemoryIssueTracker()
    app = _app(tracker)
    read_only = _project(app)
    two_way = _project(app, mode="bidirectional", repo="acme/gadgets")
    for project_id in (read_only, two_way):
        task = app.task_service.create(project_id, "Parser")
        app.sync_service.push(project_id, "#1")
        app.task_service.update(task["id"], title="Parser v2")

    skipped = app.sync_service.pull(read_only)
    pushed = app.sync_service.pull(two_way)

    assert len(skipped["applied"]["skipped"]) == 1
    assert len(pushed["applied"]["pushed"]) == 1
    assert tracker.issues[("acme/gadgets", 1)]["title"] == "Parser v2"
    assert tracker.issues[(REPO, 1)]["title"] == "Parser"


def test_push_creates_and_links_issue() -> None:
    tracker = InMemoryIssueTracker()
    app = _app(tracker)
    project_id = _project(app)
    task = app.task_service.create(project_id, "Parser", description="details")

    response = app.sync_service.push(project_id, task["id"])

    assert response["success"]
    assert response["action"] == "create"
    assert not response["queued"]
    linked = app.tasks.get_by_id(task["id"])
    assert linked["issue_number"] == response["issue_number"]
    assert linked["issue_url"] == f"https://github.com/{REPO}/issues/1"
    assert linked["last_synced_at"] is not None
    assert tracker.issues[(REPO, 1)]["body"] == "details"


def test_failed_push_is_queued_and_drained_on_demand() -> None:
    tracker = InMemoryIssueTracker()
    app = _app(tracker)
    project_id = _project(app)
    task = app.task_service.create(project_id, "Parser")

    tracker.fail_with_outage()
    response = app.sync_service.push(project_id, "#1")

    assert response["queued"]
    assert app.sync_service.queue_status()["pending"] == 1
    assert app.tasks.get_by_id(task["id"])["issue_number"] is None

    drained = app.sync_service.process_queue()

    assert drained["completed"] == 1
    assert app.sync_service.queue_status() == {
        "pending": 0,
        "processing": 0,
        "completed": 1,
        "failed": 0,
    }
    assert app.tasks.get_by_id(task["id"])["issue_number"] == 1


def test_failed_queue_items_can_be_retried() -> None:
    tracker = InMemoryIssueTracker()
    app = _app(tracker, PM_TRACK_SYNC_MAX_RETRIES="2")
    project_id = _project(app)
    app.task_service.create(project_id, "Parser")

    tracker.fail_with_retryable(count=2)
    app.sync_service.push(project_id, "#1")
    first = app.sync_service.process_queue()

    assert first["failed"] == 1
    assert first["items"][0]["retryable"]
    assert app.sync_service.retry_failed() == 1
    assert app.sync_service.process_queue()["completed"] == 1
    assert app.sync_service.retry_failed() == 0


def test_push_requires_known_task_and_configured_repo() -> None:
    tracker = InMemoryIssueTracker()
    app = _app(tracker)
    project_id = _project(app)
    app.task_service.create(project_id, "Parser")
    unconfigured = app.project_service.create("Beta")
    app.task_service.create(unconfigured["id"], "Loose")

    with pytest.raises(NotFoundError):
        app.sync_service.push(project_id, "#9")
    with pytest.raises(ValidationError):
        app.sync_service.push(unconfigured["id"], "#1")
    with pytest.raises(ValidationError):
        app.sync_service.push(project_id, "#1", action="delete")
    assert tracker.writes == []


def test_push_keeps_created_issue_when_close_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    tracker = InMemoryIssueTracker()
    app = _app(tracker)
    project_id = _project(app)
    task = app.task_service.create(project_id, "Parser")
    app.task_service.change_status(task["id"], "done")
    update_issue = tracker.update_issue
    calls: list[int] = []

    def flaky_update(repo: str, number: int, fields: dict[str, Any]) -> dict[str, Any]:
        calls.append(number)
        if len(calls) == 1:
            raise ExternalServiceError("Issue tracker unreachable")
        return update_issue(repo, number, fields)

    monkeypatch.setattr(tracker, "update_issue", flaky_update)

    response = app.sync_service.push(project_id, "#1")

    assert response["success"]
    assert response["issue_number"] == 1
    assert response["error"]
    assert response["queued"]
    assert app.tasks.get_by_id(task["id"])["issue_number"] == 1
    assert tracker.issues[(REPO, 1)]["state"] == "open"
    assert app.sync_service.queue.get_by_id(response["queue_item_id"])["action"] == "update_issue"

    drained = app.sync_service.process_queue()

    assert drained["completed"] == 1
    assert sorted(tracker.issues) == [(REPO, 1)]
    assert tracker.issues[(REPO, 1)]["state"] == "closed"
    assert app.tasks.get_by_id(task["id"])["last_synced_at"] is not None


def test_failed_import_leaves_no_task_behind(monkeypatch: pytest.MonkeyPatch) -> None:
    tracker = InMemoryIssueTracker()
    tracker.seed_issue(REPO, 1, "Open bug")
    app = _app(tracker)
    project_id = _project(app)
    link_issue = app.task_service.link_issue
    calls: list[str] = []

    def flaky_link(task_id: str, issue_number: int, **kwargs: Any) -> dict[str, Any]:
        calls.append(task_id)
        if len(calls) == 1:
            raise StorageError("boom")
        return link_issue(task_id, issue_number, **kwargs)

    monkeypatch.setattr(app.task_service, "link_issue", flaky_link)

    failed = app.sync_service.pull(project_id)

    assert failed["errors"] == ["#1: boom"]
    assert app.tasks.list(TaskFilter(project_id=project_id)) == []

    retried = app.sync_service.pull(project_id)

    assert retried["success"]
    tasks = app.tasks.list(TaskFilter(project_id=project_id))
    assert [(t["seq"], t["title"], t["issue_number"]) for t in tasks] == [(1, "Open bug", 1)]
    assert app.sync_service.pull(project_id)["created"] == []


def test_disabled_project_never_reaches_the_tracker() -> None:
    tracker = InMemoryIssueTracker()
    tracker.seed_issue(REPO, 1, "Open bug")
    writes_before = list(tracker.writes)
    app = _app(tracker)
    project_id = _project(app)
    app.task_service.create(project_id, "Parser")
    app.config.disable_github(project_id)

    with pytest.raises(ValidationError):
        app.sync_service.push(project_id, "#1")
    with pytest.raises(ValidationError):
        app.sync_service.pull(project_id)

    assert tracker.writes == writes_before
    assert app.tasks.list_linked(project_id) == []
