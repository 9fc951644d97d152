"""Derived sprint metrics computed from projections and velocity history."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Any

from pm_track.control_plane.db.db import PMDatabase


def round_half_up(value: float, digits: int = 1) -> float:
    scale = 10**digits
    return math.floor(value * scale + 0.5) / scale


class AnalyticsRepository:
    def __init__(self, db: PMDatabase) -> None:
        self.db = db

    def calculate_velocity(self, project_id: str, sprint_count: int = 3) -> dict[str, Any]:
        """Rolling mean and population standard deviation of completed points."""

        history = self.db.query(
            """
            SELECT vh.sprint_id, s.name AS sprint_name, vh.committed_points,
                   vh.completed_points, vh.completion_rate, vh.recorded_at
            FROM velocity_history vh
            LEFT JOIN sprints s ON s.id = vh.sprint_id
            WHERE vh.project_id = ?
            ORDER BY vh.recorded_at DESC, vh.id DESC
            LIMIT ?
            """,
            (project_id, int(sprint_count)),
        )
        if not history:
            return {"average": 0.0, "std_dev": 0.0, "trend": []}

        completed = [int(row["completed_points"]) for row in history]
        average = sum(completed) / len(completed)
        variance = sum((points - average) ** 2 for points in completed) / len(completed)
        return {
            "average": round_half_up(average),
            "std_dev": round_half_up(math.sqrt(variance)),
            "trend": history,
        }

    def get_burndown_data(self, sprint_id: str) -> list[dict[str, Any]]:
        sprint = self.db.query_one(
            "SELECT start_date, end_date FROM sprints WHERE id = ?", (sprint_id,)
        )
        if sprint is None:
            return []
        tasks = self.db.query(
            "SELECT estimate_points, status, completed_at FROM tasks WHERE sprint_id = ?",
            (sprint_id,),
        )
        total_points = sum(int(task["estimate_points"] or 0) for task in tasks)

        start = _parse_day(sprint["start_date"])
        end = _parse_day(sprint["end_date"])
        total_days = (end - start).days
        if total_days <= 0:
            return [
                {
                    "date": start.isoformat(),
                    "remaining_points": total_points,
                    "ideal_points": total_points,
                }
            ]

        burned: dict[int, int] = {}
        for task in tasks:
            if task["status"] != "done" or not task["completed_at"]:
                continue
            day = (_completion_day(task["completed_at"]) - start).days
            if day > total_days:
                continue
            # Work finished before the sprint began is burned on day zero.
            day = max(day, 0)
            burned[day] = burned.get(day, 0) + int(task["estimate_points"] or 0)

        points: list[dict[str, Any]] = []
        remaining = total_points
        for day in range(total_days + 1):
            remaining -= burned.get(day, 0)
            points.append(
                {
                    "date": (start + timedelta(days=day)).isoformat(),
                    "remaining_points": max(0, remaining),
                    "ideal_points": math.floor(total_points * (1 - day / total_days) + 0.5),
                }
            )
        return points


def format_burndown_chart(points: list[dict[str, Any]], width: int = 40) -> str:
    """Render burndown points as a fixed-width text chart, one row per day."""

    if not points:
        return "No burndown data"
    peak = max(max(p["remaining_points"], p["ideal_points"]) for p in points) or 1
    lines = [f"{'date':<10}  {'left':>4}  {'ideal':>5}"]
    for point in points:
        bar = "#" * round(point["remaining_points"] / peak * width)
        marker = min(round(point["ideal_points"] / peak * width), width)
        row = list(bar.ljust(width))
        if marker < width and row[marker] == " ":
            row[marker] = "."
        lines.append(
            f"{point['date']:<10}  {point['remaining_points']:>4}  {point['ideal_points']:>5}  "
            f"|{''.join(row).rstrip()}"
        )
    return "\n".join(lines)


def _parse_day(value: str) -> date:
    return date.fromisoformat(str(value)[:10])


def _completion_day(value: str) -> date:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()
