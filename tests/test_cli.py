from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from pm_track.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("PM_TRACK_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("PM_DB_PATH", str(tmp_path / "data" / "pm.db"))
    monkeypatch.setenv("PM_TRACK_LOG_LEVEL", "WARNING")
    monkeypatch.delenv("PM_TRACK_GITHUB_CONNECTOR", raising=False)
    monkeypatch.delenv("PM_TRACK_GITHUB_REPO", raising=False)
    # The CLI installs its own root handler; put pytest's back afterwards.
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def _invoke(*args: str) -> Any:
    result = runner.invoke(app, list(args))
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_project_and_task_workflow() -> None:
    project = _invoke("project-create", "--name", "Alpha", "--github-repo", "acme/widgets")
    project_id = project["id"]

    task = _invoke(
        "task-create",
        "--project",
        project_id,
        "--title",
        "Write parser",
        "--priority",
        "high",
        "--label",
        "core",
        "--label",
        "parser",
        "--points",
        "3",
    )
    assert task["seq"] == 1
    assert task["labels"] == ["core", "parser"]
    assert task["estimate_points"] == 3

    moved = _invoke(
        "task-status", "--project", project_id, "--task", "#1", "--status", "in_progress"
    )
    assert moved["status"] == "in_progress"

    listed = _invoke("task-list", "--project", project_id, "--status", "in_progress")
    assert [t["id"] for t in listed] == [task["id"]]

    board = _invoke("board", "--project", project_id)
    assert [t["id"] for t in board["in_progress"]] == [task["id"]]


def test_commit_process_and_sync_push() -> None:
    project_id = _invoke("project-create", "--name", "Alpha", "--github-repo", "acme/widgets")["id"]
    _invoke("task-create", "--project", project_id, "--title", "Write parser")

    processed = _invoke(
        "commit-process",
        "--project",
        project_id,
        "--sha",
        "0123456789abcdef",
        "--message",
        "feat: parser\n\ncloses #1",
    )
    assert processed["commit_sha"] == "0123456"
    assert [a["action"] for a in processed["actions"]] == ["link_commit", "status_change"]

    pushed = _invoke("sync-push", "--project", project_id, "--task", "1")
    assert pushed["success"]
    assert pushed["action"] == "create"

    assert _invoke("queue-status") == {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
    assert _invoke("queue-process")["processed"] == 0
    assert _invoke("queue-retry", "--clear") == {"retried": 0, "cleared": 0}


def test_analytics_commands_on_empty_project() -> None:
    project_id = _invoke("project-create", "--name", "Alpha")["id"]

    assert _invoke("velocity", "--project", project_id) == {
        "average": 0.0,
        "std_dev": 0.0,
        "trend": [],
    }
    burndown = _invoke("burndown", "--sprint", "missing")
    assert burndown["points"] == []
    assert burndown["chart"] == "No burndown data"


def test_errors_exit_with_code_one() -> None:
    project_id = _invoke("project-create", "--name", "Alpha")["id"]

    missing = runner.invoke(
        app, ["task-status", "--project", project_id, "--task", "#9", "--status", "done"]
    )
    invalid = runner.invoke(
        app, ["task-create", "--project", project_id, "--title", "x", "--priority", "urgent"]
    )
    unconfigured = runner.invoke(app, ["sync-pull", "--project", project_id])

    assert missing.exit_code == 1
    assert "not_found" in missing.output
    assert invalid.exit_code == 1
    assert "validation" in invalid.output
    assert unconfigured.exit_code == 1
