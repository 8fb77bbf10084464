"""Backend-agnostic version-control adapter contract."""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

import structlog

from gitdock.core.config import GitDockConfig
from gitdock.core.tracker import CommandTracker
from gitdock.exceptions import AdapterNotOpenError, OperationError
from gitdock.git.parsing import chunk_paths

if TYPE_CHECKING:
    from gitdock.git.models import (
        AheadBehind,
        BranchSummary,
        Commit,
        CommitFile,
        RemoteInfo,
        RepositoryStatus,
        StashEntry,
        StashInfo,
    )

logger = structlog.get_logger()


def describe_paths(paths: Sequence[str]) -> str:
    return paths[0] if len(paths) == 1 else f"{len(paths)} files"


class GitAdapter(ABC):
    """Operation set every backend implements.

    Read-style queries with a sensible empty value (branch lists, ahead/behind,
    origin URL, stash list, diffs) degrade to that value on failure; mutating
    operations and ``raw`` raise ``OperationError``. Every call is recorded on
    ``tracker`` between begin and end, failures included.
    """

    backend_name: ClassVar[str] = ""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        tracker: CommandTracker | None = None,
        config: GitDockConfig | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser()
        self.tracker = tracker or CommandTracker()
        self.config = config or GitDockConfig()
        self.current_branch: str | None = None
        self.is_open = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.repo_path)!r}, open={self.is_open})"

    # -- lifecycle -----------------------------------------------------------

    @abstractmethod
    async def open(self) -> None:
        """Bind to the repository; raises RepositoryOpenError when it cannot."""

    async def close(self) -> None:
        self.is_open = False

    def _require_open(self) -> None:
        if not self.is_open:
            raise AdapterNotOpenError(f"adapter for {self.repo_path} is not open")

    def _batches(self, paths: Sequence[str]) -> list[list[str]]:
        return chunk_paths(
            list(paths),
            max_paths=self.config.max_batch_paths,
            max_chars=self.config.max_batch_chars,
        )

    # -- status & branches ---------------------------------------------------

    @abstractmethod
    async def status(
        self, path: str | None = None, *, no_lock: bool = False
    ) -> RepositoryStatus:
        """Working-tree status; ``no_lock`` avoids taking the index lock."""

    @abstractmethod
    async def branch_local(self) -> list[BranchSummary]: ...

    @abstractmethod
    async def remote_branches(self) -> list[str]: ...

    @abstractmethod
    async def create_branch(
        self, branch_name: str, start_point: str | None = None
    ) -> None: ...

    @abstractmethod
    async def delete_branch(self, branch_name: str, *, force: bool = False) -> None: ...

    @abstractmethod
    async def rename_branch(self, old_name: str, new_name: str) -> None: ...

    @abstractmethod
    async def checkout_branch(self, branch_name: str) -> None: ...

    @abstractmethod
    async def get_ahead_behind(self, local_ref: str, remote_ref: str) -> AheadBehind:
        """Left-right count of ``local...remote``; unknown sentinel on failure."""

    # -- remotes ---------------------------------------------------------------

    @abstractmethod
    async def get_origin_url(self) -> str: ...

    @abstractmethod
    async def list_remotes(self) -> list[RemoteInfo]: ...

    @abstractmethod
    async def set_remote_url(self, remote_name: str, url: str) -> None: ...

    @abstractmethod
    async def add_remote(self, remote_name: str, url: str) -> None: ...

    @abstractmethod
    async def remove_remote(self, remote_name: str) -> None: ...

    async def edit_remote(self, remote_name: str, new_url: str) -> None:
        await self.set_remote_url(remote_name, new_url)

    @abstractmethod
    async def fetch(self, remote: str) -> None: ...

    @abstractmethod
    async def pull(self, remote: str, branch: str) -> None: ...

    @abstractmethod
    async def push(
        self, remote: str, refspec: str, options: Sequence[str] = ()
    ) -> str:
        """Push and return stdout and stderr concatenated."""

    @abstractmethod
    async def reset_to_origin(self, branch: str) -> None:
        """Fetch the default remote and hard-reset to its copy of ``branch``."""

    # -- stashes ---------------------------------------------------------------

    @abstractmethod
    async def stash_list(self) -> list[StashEntry]: ...

    @abstractmethod
    async def stash_push(
        self,
        message: str,
        file_paths: Sequence[str] | None = None,
        *,
        include_untracked: bool = False,
    ) -> None:
        """Stash local changes; ``include_untracked`` also stashes new files."""

    @abstractmethod
    async def stash_pop(self, index: int = 0, *, restore_index: bool = False) -> None:
        """Apply and drop a stash; ``restore_index`` also restores what was staged."""

    @abstractmethod
    async def stash_apply(self, index: int = 0, *, restore_index: bool = False) -> None: ...

    @abstractmethod
    async def stash_drop(self, index: int) -> None: ...

    @abstractmethod
    async def stash_store(self, commit_hash: str, message: str) -> None: ...

    @abstractmethod
    async def get_stash_info(self, stash_index: int) -> StashInfo: ...

    @abstractmethod
    async def get_stash_file_diff(self, stash_index: int, file_path: str) -> str: ...

    # -- index & working tree -------------------------------------------------

    @abstractmethod
    async def add(self, file_paths: str | Sequence[str]) -> None: ...

    @abstractmethod
    async def reset(self, file_paths: str | Sequence[str]) -> None:
        """Unstage paths (index back to HEAD), working tree untouched."""

    @abstractmethod
    async def restore(self, file_paths: Sequence[str]) -> None:
        """Overwrite working-tree copies from the index."""

    @abstractmethod
    async def commit(self, message: str, *, amend: bool = False) -> None: ...

    async def discard(self, file_paths: Sequence[str]) -> None:
        """Throw away local changes to ``file_paths``.

        Untracked files are deleted; staged new files are unstaged, then
        deleted; tracked files are unstaged if needed and restored. Batches
        already applied stay applied if a later one fails.
        """
        paths = list(dict.fromkeys(file_paths))
        if not paths:
            return
        self._require_open()
        with self.tracker.track(f"git discard {describe_paths(paths)}"):
            status = await self.status()
            by_path = {}
            for entry in status.files:
                by_path[entry.path] = entry
                if entry.orig_path:
                    by_path.setdefault(entry.orig_path, entry)

            to_delete: list[str] = []
            to_unstage: list[str] = []
            to_restore: list[str] = []
            for path in paths:
                entry = by_path.get(path)
                if entry is None:
                    continue
                if entry.is_untracked:
                    to_delete.append(entry.path)
                elif entry.is_staged_new:
                    to_unstage.append(entry.path)
                    to_delete.append(entry.path)
                elif entry.index_state in ("R", "C") and entry.orig_path:
                    to_unstage.extend([entry.path, entry.orig_path])
                    to_delete.append(entry.path)
                    if entry.index_state == "R":
                        to_restore.append(entry.orig_path)
                else:
                    if entry.is_staged:
                        to_unstage.append(entry.path)
                    to_restore.append(entry.path)

            if to_unstage:
                await self.reset(list(dict.fromkeys(to_unstage)))
            if to_restore:
                await self.restore(list(dict.fromkeys(to_restore)))
            for path in dict.fromkeys(to_delete):
                self._delete_from_disk(path)

        logger.info(
            "discard_completed",
            repo=str(self.repo_path),
            deleted=len(to_delete),
            restored=len(to_restore),
        )

    def _delete_from_disk(self, path: str) -> None:
        full_path = self.repo_path / path
        try:
            if full_path.is_dir() and not full_path.is_symlink():
                shutil.rmtree(full_path)
            else:
                full_path.unlink(missing_ok=True)
        except OSError as e:
            raise OperationError(f"delete {path}", str(e)) from e

    # -- history & content ----------------------------------------------------

    @abstractmethod
    async def log(
        self, branch_name: str, max_count: int = 100, *, remote: str | None = None
    ) -> list[Commit]:
        """Newest-first commits of ``branch_name`` with ``on_origin`` resolved."""

    @abstractmethod
    async def contains_commit(self, ref: str, commit_hash: str) -> bool:
        """Whether ``commit_hash`` is reachable from ``ref``; False when unknown."""

    @abstractmethod
    async def get_commit_files(self, commit_hash: str) -> list[CommitFile]: ...

    @abstractmethod
    async def diff(self, file_path: str, is_staged: bool = False) -> str: ...

    @abstractmethod
    async def show(self, commit_hash: str, file_path: str) -> str: ...

    @abstractmethod
    async def create_patch(
        self,
        file_paths: Sequence[str],
        output_path: Path | str,
        is_staged: bool = False,
    ) -> None: ...

    @abstractmethod
    async def clone(self, repo_url: str, parent_folder: Path | str, repo_name: str) -> Path:
        """Clone into ``parent_folder/repo_name``; failures raise."""

    async def add_to_gitignore(self, pattern: str) -> None:
        pattern = pattern.strip()
        if not pattern:
            return
        self._require_open()
        gitignore = self.repo_path / ".gitignore"
        with self.tracker.track(f"gitignore add {pattern}"):
            try:
                existing = gitignore.read_text() if gitignore.exists() else ""
                if pattern in existing.splitlines():
                    return
                prefix = "" if not existing or existing.endswith("\n") else "\n"
                with open(gitignore, "a") as f:
                    f.write(f"{prefix}{pattern}\n")
            except OSError as e:
                raise OperationError(f"gitignore add {pattern}", str(e)) from e

    @abstractmethod
    async def raw(self, args: Sequence[str]) -> str:
        """Run an arbitrary git command; always raises on failure."""
