"""pm-track CLI."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer

from pm_track.control_plane.api.app import PMTrackApp
from pm_track.shared.errors import NotFoundError, PMTrackError
from pm_track.shared.logging import setup_logging
from pm_track.shared.settings import get_storage_settings

app = typer.Typer(add_completion=False, help="pm-track: event-sourced local task tracker")


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@contextmanager
def _session() -> Iterator[PMTrackApp]:
    setup_logging()
    settings = get_storage_settings()
    tracker = PMTrackApp(settings.sqlite_path)
    try:
        yield tracker
    except PMTrackError as exc:
        typer.echo(json.dumps(exc.to_dict(), indent=2, default=str), err=True)
        raise typer.Exit(code=1) from exc
    finally:
        tracker.close()


def _resolve_task(tracker: PMTrackApp, project_id: str, task_ref: str) -> dict[str, Any]:
    task = tracker.task_service.get(project_id, task_ref)
    if task is None:
        raise NotFoundError(
            f"Task not found: {task_ref}",
            metadata={"project_id": project_id, "task_ref": task_ref},
        )
    return task


@app.command("project-create")
def project_create(
    name: str = typer.Option(..., "--name"),
    description: str | None = typer.Option(None, "--description"),
    github_repo: str | None = typer.Option(None, "--github-repo"),
) -> None:
    """Create a project and its sync configuration."""
    with _session() as tracker:
        project = tracker.project_service.create(name, description=description)
        if github_repo:
            tracker.config.enable_github(project["id"], github_repo)
        _emit(project)


@app.command("task-create")
def task_create(
    project: str = typer.Option(..., "--project"),
    title: str = typer.Option(..., "--title"),
    description: str | None = typer.Option(None, "--description"),
    task_type: str | None = typer.Option(None, "--type"),
    priority: str | None = typer.Option(None, "--priority"),
    assignee: str | None = typer.Option(None, "--assignee"),
    labels: list[str] = typer.Option([], "--label"),
    points: int | None = typer.Option(None, "--points"),
    sprint: str | None = typer.Option(None, "--sprint"),
) -> None:
    fields: dict[str, Any] = {
        "description": description,
        "type": task_type,
        "priority": priority,
        "assignee": assignee,
        "estimate_points": points,
        "sprint_id": sprint,
    }
    fields = {key: value for key, value in fields.items() if value is not None}
    if labels:
        fields["labels"] = list(labels)
    with _session() as tracker:
        _emit(tracker.task_service.create(project, title, **fields))


@app.command("task-list")
def task_list(
    project: str = typer.Option(..., "--project"),
    status: str | None = typer.Option(None, "--status"),
    sprint: str | None = typer.Option(None, "--sprint"),
    assignee: str | None = typer.Option(None, "--assignee"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    with _session() as tracker:
        _emit(
            tracker.task_service.list(
                project_id=project,
                status=status,
                sprint_id=sprint,
                assignee=assignee,
                limit=limit,
            )
        )


@app.command("task-status")
def task_status(
    project: str = typer.Option(..., "--project"),
    task: str = typer.Option(..., "--task", help="Task id, seq, or #seq."),
    status: str = typer.Option(..., "--status"),
    reason: str | None = typer.Option(None, "--reason"),
) -> None:
    """Move a task to a new status."""
    with _session() as tracker:
        current = _resolve_task(tracker, project, task)
        _emit(tracker.task_service.change_status(current["id"], status, reason=reason))


@app.command()
def board(
    project: str = typer.Option(..., "--project"),
    sprint: str | None = typer.Option(None, "--sprint"),
) -> None:
    with _session() as tracker:
        _emit(tracker.task_service.board(project, sprint))


@app.command()
def velocity(
    project: str = typer.Option(..., "--project"),
    sprints: int = typer.Option(3, "--sprints"),
) -> None:
    with _session() as tracker:
        _emit(tracker.velocity(project, sprints))


@app.command()
def burndown(
    sprint: str = typer.Option(..., "--sprint"),
    chart: bool = typer.Option(False, "--chart", help="Print the text chart only."),
) -> None:
    with _session() as tracker:
        data = tracker.burndown(sprint)
        if chart:
            typer.echo(data["chart"])
        else:
            _emit(data)


@app.command("commit-process")
def commit_process(
    project: str = typer.Option(..., "--project"),
    sha: str = typer.Option(..., "--sha"),
    message: str = typer.Option(..., "--message"),
    branch: str | None = typer.Option(None, "--branch"),
    dry_run: bool = typer.Option(False, "--dry-run"),
) -> None:
    """Link a commit to the tasks it mentions and apply magic-word transitions."""
    with _session() as tracker:
        _emit(
            tracker.commit_service.process(
                sha, message, project, branch=branch, dry_run=dry_run
            )
        )


@app.command("sync-pull")
def sync_pull(
    project: str = typer.Option(..., "--project"),
    dry_run: bool = typer.Option(False, "--dry-run"),
) -> None:
    with _session() as tracker:
        _emit(tracker.sync_service.pull(project, dry_run=dry_run))


@app.command("sync-push")
def sync_push(
    project: str = typer.Option(..., "--project"),
    task: str = typer.Option(..., "--task"),
    action: str | None = typer.Option(None, "--action"),
) -> None:
    with _session() as tracker:
        _emit(tracker.sync_service.push(project, task, action))


@app.command("queue-status")
def queue_status() -> None:
    with _session() as tracker:
        _emit(tracker.sync_service.queue_status())


@app.command("queue-process")
def queue_process(limit: int | None = typer.Option(None, "--limit")) -> None:
    """Drain pending sync queue items once."""
    with _session() as tracker:
        _emit(tracker.sync_service.process_queue(limit))


@app.command("queue-retry")
def queue_retry(
    clear: bool = typer.Option(False, "--clear", help="Also drop old completed items."),
) -> None:
    with _session() as tracker:
        result = {"retried": tracker.sync_service.retry_failed()}
        if clear:
            result["cleared"] = tracker.sync_service.clear_completed()
        _emit(result)


if __name__ == "__main__":
    app()
