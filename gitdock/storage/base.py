"""Repository snapshot store protocol."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from gitdock.storage.snapshot import SnapshotData


@runtime_checkable
class SnapshotBackend(Protocol):
    async def load(self, repo_path: Path) -> SnapshotData | None: ...

    async def save(self, repo_path: Path, data: SnapshotData) -> None: ...

    async def clear(self, repo_path: Path) -> None: ...

    async def clear_all(self) -> None: ...
