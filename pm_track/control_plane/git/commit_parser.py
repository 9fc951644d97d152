"""Conventional Commits headers, magic words and branch naming."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

MAGIC_WORD_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("fixes", re.compile(r"\b(?:fixes?|closes?|resolves?)\s+#(\d+)", re.IGNORECASE)),
    ("refs", re.compile(r"\b(?:refs?|relates?)\s+#(\d+)", re.IGNORECASE)),
    ("blocks", re.compile(r"\bblocks?\s+#(\d+)", re.IGNORECASE)),
    ("depends", re.compile(r"\bdepends?\s+#(\d+)", re.IGNORECASE)),
    ("wip", re.compile(r"\bwip\s+#(\d+)", re.IGNORECASE)),
    ("review", re.compile(r"\breview\s+#(\d+)", re.IGNORECASE)),
    ("done", re.compile(r"\bdone\s+#(\d+)", re.IGNORECASE)),
)

# refs, blocks and depends carry no transition.
MAGIC_WORD_STATUS = {
    "fixes": "done",
    "done": "done",
    "wip": "in_progress",
    "review": "in_review",
}

_CONVENTIONAL_HEADER = re.compile(r"^(\w+)(?:\(([^)]+)\))?(!)?:\s*(.+)")
_ISSUE_REF = re.compile(r"#(\d+)")

_BRANCH_ISSUE = re.compile(r"^(\d+)-(\w+)-(.+)$")
_BRANCH_SHORT_ID = re.compile(r"^([a-f0-9]{8})-(\w+)-(.+)$")
_BRANCH_LEGACY = re.compile(r"^([A-Z]+-\d+)(?:-(.+))?$")


@dataclass(frozen=True)
class MagicWord:
    action: str
    issue_ids: list[int]

    @property
    def target_status(self) -> str | None:
        return MAGIC_WORD_STATUS.get(self.action)


@dataclass(frozen=True)
class CommitInfo:
    description: str
    breaking: bool = False
    type: str | None = None
    scope: str | None = None
    magic_words: list[MagicWord] = field(default_factory=list)
    issue_refs: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class BranchInfo:
    branch: str
    format: str
    issue_number: int | None = None
    type: str | None = None
    description: str | None = None


def parse_commit_message(message: str) -> CommitInfo:
    header = _CONVENTIONAL_HEADER.match(message)
    breaking = bool(header and header.group(3)) or "breaking change" in message.lower()
    description = header.group(4) if header else message.split("\n", 1)[0]

    magic_words: list[MagicWord] = []
    issue_refs: list[int] = []
    for action, pattern in MAGIC_WORD_PATTERNS:
        ids = [int(match.group(1)) for match in pattern.finditer(message)]
        if ids:
            magic_words.append(MagicWord(action=action, issue_ids=ids))
        for issue_id in ids:
            if issue_id not in issue_refs:
                issue_refs.append(issue_id)
    for match in _ISSUE_REF.finditer(message):
        issue_id = int(match.group(1))
        if issue_id not in issue_refs:
            issue_refs.append(issue_id)

    return CommitInfo(
        type=header.group(1) if header else None,
        scope=header.group(2) if header else None,
        description=description,
        breaking=breaking,
        magic_words=magic_words,
        issue_refs=issue_refs,
    )


def magic_word_status_changes(magic_words: list[MagicWord]) -> dict[int, str]:
    """Issue number -> implied status; later words win for the same issue."""

    changes: dict[int, str] = {}
    for word in magic_words:
        status = word.target_status
        if status is None:
            continue
        for issue_id in word.issue_ids:
            changes[issue_id] = status
    return changes


def parse_branch_name(branch: str) -> BranchInfo:
    match = _BRANCH_ISSUE.match(branch)
    if match:
        return BranchInfo(
            branch=branch,
            format="issue",
            issue_number=int(match.group(1)),
            type=match.group(2),
            description=match.group(3),
        )
    match = _BRANCH_SHORT_ID.match(branch)
    if match:
        return BranchInfo(
            branch=branch, format="issue", type=match.group(2), description=match.group(3)
        )
    match = _BRANCH_LEGACY.match(branch)
    if match:
        return BranchInfo(branch=branch, format="legacy", description=match.group(2))
    return BranchInfo(branch=branch, format="unknown")


def generate_branch_name(issue_number: int | str, type_: str, title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:30].rstrip("-")
    return f"{issue_number}-{type_}-{slug}"
