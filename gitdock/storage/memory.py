"""In-memory snapshot store, used when no snapshot directory is configured."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitdock.storage.snapshot import SnapshotData


class MemorySnapshotStore:
    def __init__(self) -> None:
        self._data: dict[str, SnapshotData] = {}

    async def load(self, repo_path: Path) -> SnapshotData | None:
        return self._data.get(str(repo_path))

    async def save(self, repo_path: Path, data: SnapshotData) -> None:
        self._data[str(repo_path)] = data

    async def clear(self, repo_path: Path) -> None:
        self._data.pop(str(repo_path), None)

    async def clear_all(self) -> None:
        self._data.clear()
