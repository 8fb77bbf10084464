"""JSON snapshots of repository state for an instant first paint.

One file per repository, named from a filesystem-safe form of the path plus a
short hash. A snapshot is ignored when its format version or repository path
does not match, or when it is older than the configured maximum age. I/O and
decoding errors are logged and treated as "no snapshot".
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import time
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

from gitdock.git.models import (
    AheadBehind,
    BranchSummary,
    Commit,
    RemoteInfo,
    RepositoryStatus,
    StashEntry,
)

logger = structlog.get_logger()

SNAPSHOT_VERSION = 1
_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9]")


class SnapshotData(BaseModel):
    current_branch: str | None = None
    status: RepositoryStatus = Field(default_factory=RepositoryStatus)
    branches: list[BranchSummary] = []
    remote_branches: list[str] = []
    remotes: list[RemoteInfo] = []
    origin_url: str = ""
    branch_status: dict[str, AheadBehind] = {}
    stashes: list[StashEntry] = []
    commits: dict[str, list[Commit]] = {}


class RepositorySnapshot(BaseModel):
    repo_path: str
    timestamp: float
    version: int = SNAPSHOT_VERSION
    data: SnapshotData


def snapshot_filename(repo_path: Path | str) -> str:
    text = str(repo_path)
    digest = hashlib.sha1(text.encode()).hexdigest()[:8]
    return f"{_UNSAFE_RE.sub('_', text)}_{digest}.json"


class SnapshotStore:
    """File-backed snapshot store rooted at ``directory``."""

    def __init__(self, directory: Path | str, *, max_age_days: int = 7) -> None:
        self.directory = Path(directory).expanduser()
        self.max_age_seconds = max_age_days * 24 * 60 * 60

    def path_for(self, repo_path: Path | str) -> Path:
        return self.directory / snapshot_filename(repo_path)

    async def load(self, repo_path: Path) -> SnapshotData | None:
        return await asyncio.to_thread(self._load, repo_path)

    async def save(self, repo_path: Path, data: SnapshotData) -> None:
        await asyncio.to_thread(self._save, repo_path, data)

    async def clear(self, repo_path: Path) -> None:
        await asyncio.to_thread(self._clear, repo_path)

    async def clear_all(self) -> None:
        await asyncio.to_thread(self._clear_all)

    def _load(self, repo_path: Path) -> SnapshotData | None:
        path = self.path_for(repo_path)
        if not path.exists():
            return None
        try:
            snapshot = RepositorySnapshot.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("snapshot_load_failed", path=str(path), error=str(e))
            return None

        if snapshot.version != SNAPSHOT_VERSION or snapshot.repo_path != str(repo_path):
            logger.debug("snapshot_mismatch", path=str(path))
            return None
        if time.time() - snapshot.timestamp > self.max_age_seconds:
            logger.debug("snapshot_expired", path=str(path))
            return None
        return snapshot.data

    def _save(self, repo_path: Path, data: SnapshotData) -> None:
        snapshot = RepositorySnapshot(
            repo_path=str(repo_path), timestamp=time.time(), data=data
        )
        path = self.path_for(repo_path)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(snapshot.model_dump_json(indent=2))
        except OSError as e:
            logger.warning("snapshot_save_failed", path=str(path), error=str(e))

    def _clear(self, repo_path: Path) -> None:
        try:
            self.path_for(repo_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("snapshot_clear_failed", repo=str(repo_path), error=str(e))

    def _clear_all(self) -> None:
        if not self.directory.is_dir():
            return
        for path in self.directory.glob("*.json"):
            try:
                path.unlink()
            except OSError as e:
                logger.warning("snapshot_clear_failed", path=str(path), error=str(e))
