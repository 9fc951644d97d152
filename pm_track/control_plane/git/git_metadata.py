"""Read-only git repository metadata via the ``git`` executable."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class GitMetadata:
    def __init__(self, cwd: Path | str | None = None, timeout: float = 10.0) -> None:
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.timeout = timeout

    def _git(self, *args: str) -> str | None:
        try:
            out = subprocess.run(
                ["git", *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("git %s failed: %s", " ".join(args), exc)
            return None
        return out.stdout

    def is_git_repository(self) -> bool:
        out = self._git("rev-parse", "--is-inside-work-tree")
        return bool(out and out.strip() == "true")

    def git_root(self) -> Path | None:
        out = self._git("rev-parse", "--show-toplevel")
        return Path(out.strip()) if out else None

    def current_branch(self) -> str | None:
        out = self._git("rev-parse", "--abbrev-ref", "HEAD")
        branch = out.strip() if out else ""
        return branch or None

    def repository_status(self) -> dict[str, Any] | None:
        branch = self.current_branch()
        if branch is None:
            return None
        porcelain = self._git("status", "--porcelain")
        if porcelain is None:
            return None

        staged: list[str] = []
        modified: list[str] = []
        untracked: list[str] = []
        lines = [line for line in porcelain.splitlines() if line]
        for line in lines:
            index, worktree, path = line[0], line[1], line[3:]
            if index == "?" and worktree == "?":
                untracked.append(path)
                continue
            if index != " ":
                staged.append(path)
            if worktree != " ":
                modified.append(path)

        ahead = behind = 0
        counts = self._git("rev-list", "--left-right", "--count", "@{u}...HEAD")
        if counts:
            parts = counts.split()
            if len(parts) == 2:
                behind, ahead = int(parts[0]), int(parts[1])

        return {
            "branch": branch,
            "is_clean": not lines,
            "staged": staged,
            "modified": modified,
            "untracked": untracked,
            "ahead": ahead,
            "behind": behind,
        }
