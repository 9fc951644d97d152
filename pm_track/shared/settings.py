"""Shared runtime settings for local-first disk-backed storage and issue sync."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class StorageSettings:
    """Filesystem and SQLite locations used by local-first deployments."""

    data_dir: Path
    sqlite_path: Path

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "StorageSettings":
        source = os.environ if env is None else env
        data_dir = Path(source.get("PM_TRACK_DATA_DIR", "./data"))
        sqlite_path = Path(source.get("PM_DB_PATH", str(data_dir / "pm.db")))
        return cls(data_dir=data_dir, sqlite_path=sqlite_path)

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class SyncSettings:
    """Issue tracker sync knobs; the queue is drained on demand only.

    Tokens are split so reads can run with a narrower credential than writes.
    ``PM_TRACK_GITHUB_TOKEN`` (or ``GITHUB_TOKEN``) fills whichever side is unset.
    """

    github_repo: str
    connector: str
    queue_batch_size: int
    max_retries: int
    clear_after_days: int
    read_token: str | None = field(default=None, repr=False)
    write_token: str | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "SyncSettings":
        source = os.environ if env is None else env
        shared_token = _token(source.get("PM_TRACK_GITHUB_TOKEN") or source.get("GITHUB_TOKEN"))
        return cls(
            github_repo=(source.get("PM_TRACK_GITHUB_REPO") or "").strip(),
            connector=(source.get("PM_TRACK_GITHUB_CONNECTOR") or "in_memory").strip().lower(),
            queue_batch_size=_positive_int(source.get("PM_TRACK_SYNC_BATCH"), default=10),
            max_retries=_positive_int(source.get("PM_TRACK_SYNC_MAX_RETRIES"), default=3),
            clear_after_days=_positive_int(source.get("PM_TRACK_SYNC_CLEAR_DAYS"), default=7),
            read_token=_token(source.get("PM_TRACK_GITHUB_READ_TOKEN")) or shared_token,
            write_token=_token(source.get("PM_TRACK_GITHUB_WRITE_TOKEN")) or shared_token,
        )

    @property
    def has_tokens(self) -> bool:
        return bool(self.read_token or self.write_token)

    def redacted_tokens(self) -> dict[str, str]:
        return {
            "read_token": _redact(self.read_token),
            "write_token": _redact(self.write_token),
        }


def get_storage_settings(env: dict[str, str] | None = None) -> StorageSettings:
    """Build and hydrate storage settings from environment variables."""

    settings = StorageSettings.from_env(env)
    settings.ensure_directories()
    return settings


def get_sync_settings(env: dict[str, str] | None = None) -> SyncSettings:
    return SyncSettings.from_env(env)


def _positive_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _token(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _redact(token: str | None) -> str:
    if token is None:
        return "unset"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"
