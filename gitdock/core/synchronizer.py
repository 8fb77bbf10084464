"""Repository state synchronizer.

Owns the cached view of one repository (status, branches, stashes, per-branch
commit history) and keeps it consistent with the working tree through the
adapter. Every user operation catches ``GitDockError`` at its call site,
records it in ``last_error`` and emits ``operation.failed`` instead of
raising; a failed operation leaves the caches as they were.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from gitdock.core.cache import BranchCommitCache
from gitdock.core.events import (
    BRANCH_SWITCH_REQUESTED,
    BRANCH_SWITCH_RESOLVED,
    BRANCHES_REFRESHED,
    COMMITS_LOADED,
    OPERATION_FAILED,
    POLLING_STARTED,
    POLLING_STOPPED,
    REPOSITORY_REFRESHED,
    STASHES_REFRESHED,
    STATUS_REFRESHED,
    Event,
)
from gitdock.exceptions import (
    BranchSwitchCancelled,
    GitDockError,
    OperationError,
    StashNotFoundError,
)
from gitdock.git.models import (
    AheadBehind,
    BranchSummary,
    Commit,
    ConflictSources,
    FileChange,
    RemoteInfo,
    RepositoryStatus,
    StashEntry,
    branch_stash_message,
)
from gitdock.git.parsing import extract_urls
from gitdock.storage.snapshot import SnapshotData

if TYPE_CHECKING:
    from gitdock.core.config import GitDockConfig
    from gitdock.core.events import EventBus
    from gitdock.core.tracker import CommandRecord
    from gitdock.git.adapter import GitAdapter
    from gitdock.storage.base import SnapshotBackend

logger = structlog.get_logger()

BranchSwitchDisposition = Literal[
    "leave-alone", "stash-and-reapply", "discard", "branch-stash", "cancel"
]
DISPOSITIONS: tuple[str, ...] = (
    "leave-alone",
    "stash-and-reapply",
    "discard",
    "branch-stash",
    "cancel",
)


class PendingBranchSwitch(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    switch_id: str
    target: str
    event: asyncio.Event = Field(default_factory=asyncio.Event)
    disposition: str | None = None


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class RepositoryStateSynchronizer:
    def __init__(
        self,
        adapter: GitAdapter,
        config: GitDockConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        snapshots: SnapshotBackend | None = None,
    ) -> None:
        self.adapter = adapter
        self.config = config or adapter.config
        self._event_bus = event_bus
        self._snapshots = snapshots

        self.commit_cache = BranchCommitCache()
        self.status = RepositoryStatus()
        self.current_branch: str | None = None
        self.branches: list[BranchSummary] = []
        self.remote_branches: list[str] = []
        self.remotes: list[RemoteInfo] = []
        self.origin_url = ""
        self.branch_status: dict[str, AheadBehind] = {}
        self.stashes: list[StashEntry] = []
        self.conflict_sources: ConflictSources | None = None
        self.last_error: str | None = None
        self.loading = False
        self.refreshing = False
        self._status_reads = 0
        self.using_snapshot = False
        self.pending_switch: PendingBranchSwitch | None = None

        self._active = True
        self._poll_task: asyncio.Task[None] | None = None
        self._git_dir: Path | None = None

    # -- derived state ---------------------------------------------------------

    @property
    def repo_path(self) -> Path:
        return self.adapter.repo_path

    @property
    def remote(self) -> str:
        return self.config.default_remote

    @property
    def staged(self) -> list[FileChange]:
        return self.status.staged

    @property
    def unstaged(self) -> list[FileChange]:
        return self.status.unstaged

    @property
    def modified_count(self) -> int:
        return len({f.path for f in self.status.files if f.is_staged or f.is_unstaged})

    @property
    def has_local_changes(self) -> bool:
        return not self.status.is_clean

    @property
    def running_commands(self) -> list[CommandRecord]:
        return self.adapter.tracker.running

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # -- plumbing ----------------------------------------------------------------

    async def _emit(self, name: str, data: dict[str, Any] | None = None) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            Event(name=name, data={"repo": str(self.repo_path), **(data or {})})
        )

    async def _fail(self, operation: str, error: GitDockError) -> None:
        self.last_error = str(error)
        logger.warning(
            "operation_failed",
            operation=operation,
            repo=str(self.repo_path),
            error=str(error),
        )
        await self._emit(
            OPERATION_FAILED,
            {
                "operation": operation,
                "error": str(error),
                "stderr": getattr(error, "stderr", ""),
            },
        )

    async def _perform(
        self,
        operation: str,
        action: Callable[[], Awaitable[Any]],
        *,
        invalidate: Iterable[str] = (),
        refresh_status: bool = True,
        refresh_branches: bool = False,
        refresh_on_failure: bool = False,
    ) -> bool:
        """Run one mutating step, then invalidate and re-read what it touched."""
        try:
            await action()
        except GitDockError as e:
            await self._fail(operation, e)
            if refresh_on_failure:
                await self.refresh_file_status(force=True)
            return False
        for name in invalidate:
            self.commit_cache.invalidate(name)
        if refresh_status:
            await self.refresh_file_status(force=True)
        if refresh_branches:
            await self.refresh_branch_status()
        self.last_error = None
        return True

    def _require_branch(self, branch: str | None, operation: str) -> str:
        branch = branch or self.current_branch
        if not branch or branch == "HEAD":
            raise OperationError(operation, "No branch is checked out")
        return branch

    # -- loading -----------------------------------------------------------------

    async def load(self, *, use_snapshot: bool = True) -> bool:
        """Initial load: apply a persisted snapshot if there is one, else refresh."""
        if use_snapshot and self._snapshots is not None:
            data = await self._snapshots.load(self.repo_path)
            if data is not None:
                self._apply_snapshot(data)
                self.using_snapshot = True
                logger.info("snapshot_applied", repo=str(self.repo_path))
                await self._emit(REPOSITORY_REFRESHED, {"snapshot": True})
                return True
        return await self.refresh()

    async def refresh(self) -> bool:
        """Re-read everything from the repository; ignored while already loading."""
        if self.loading:
            logger.debug("refresh_skipped", repo=str(self.repo_path))
            return False
        self.loading = True
        try:
            status = await self.adapter.status()
            (
                origin_url,
                branches,
                remote_branches,
                remotes,
                stashes,
            ) = await asyncio.gather(
                self.adapter.get_origin_url(),
                self.adapter.branch_local(),
                self.adapter.remote_branches(),
                self.adapter.list_remotes(),
                self.adapter.stash_list(),
            )
            branch_status = await self._compute_branch_status(branches)
        except GitDockError as e:
            await self._fail("refresh", e)
            return False
        finally:
            self.loading = False

        self.commit_cache.clear()
        self._apply_status(status)
        self.origin_url = origin_url
        self.branches = branches
        self.remote_branches = remote_branches
        self.remotes = remotes
        self.stashes = stashes
        self.branch_status = branch_status
        self.using_snapshot = False
        self.last_error = None
        await self._update_conflict_sources()
        await self._save_snapshot()

        logger.info(
            "repository_refreshed",
            repo=str(self.repo_path),
            branch=self.current_branch,
            branches=len(branches),
            changes=self.modified_count,
        )
        await self._emit(STATUS_REFRESHED, self._status_summary())
        await self._emit(BRANCHES_REFRESHED, {"count": len(branches)})
        await self._emit(STASHES_REFRESHED, {"count": len(stashes)})
        await self._emit(REPOSITORY_REFRESHED, {"snapshot": False})
        return True

    async def refresh_file_status(self, *, force: bool = False) -> bool:
        """Cheap status refresh; skipped while other commands are running.

        ``force`` runs it regardless. A read overtaken by a newer one is
        discarded so an older result never replaces a newer one.
        """
        if not force and (self.refreshing or self.adapter.tracker.is_busy):
            logger.debug(
                "status_refresh_skipped",
                repo=str(self.repo_path),
                running=len(self.adapter.tracker.running),
            )
            return False
        self._status_reads += 1
        read = self._status_reads
        self.refreshing = True
        try:
            status = await self.adapter.status(no_lock=True)
        except GitDockError as e:
            if read == self._status_reads:
                await self._fail("refresh_file_status", e)
            return False
        finally:
            if read == self._status_reads:
                self.refreshing = False
        if read != self._status_reads:
            logger.debug("status_refresh_superseded", repo=str(self.repo_path))
            return False

        self._apply_status(status)
        await self._update_conflict_sources()
        await self._save_snapshot()
        await self._emit(STATUS_REFRESHED, self._status_summary())
        return True

    async def _compute_branch_status(
        self, branches: Sequence[BranchSummary]
    ) -> dict[str, AheadBehind]:
        """Ahead/behind per local branch; branches without a known relationship are left out."""
        results = await asyncio.gather(
            *(
                self.adapter.get_ahead_behind(b.name, f"{self.remote}/{b.name}")
                for b in branches
            )
        )
        return {
            b.name: result
            for b, result in zip(branches, results, strict=True)
            if result.is_known
        }

    async def refresh_branch_status(self) -> bool:
        """Re-list branches and recompute ahead/behind for each local one."""
        try:
            branches, remote_branches = await asyncio.gather(
                self.adapter.branch_local(), self.adapter.remote_branches()
            )
            self.branch_status = await self._compute_branch_status(branches)
        except GitDockError as e:
            await self._fail("refresh_branch_status", e)
            return False
        self.branches = branches
        self.remote_branches = remote_branches
        await self._emit(BRANCHES_REFRESHED, {"count": len(branches)})
        return True

    async def refresh_stashes(self) -> bool:
        try:
            self.stashes = await self.adapter.stash_list()
        except GitDockError as e:
            await self._fail("refresh_stashes", e)
            return False
        await self._emit(STASHES_REFRESHED, {"count": len(self.stashes)})
        return True

    async def refresh_origin_url(self) -> str:
        self.origin_url = await self.adapter.get_origin_url()
        return self.origin_url

    async def _refresh_remotes(self) -> None:
        self.remotes = await self.adapter.list_remotes()
        self.remote_branches = await self.adapter.remote_branches()
        await self.refresh_origin_url()

    def _apply_status(self, status: RepositoryStatus) -> None:
        self.status = status
        self.current_branch = status.current_branch or None

    def _status_summary(self) -> dict[str, Any]:
        return {
            "branch": self.current_branch,
            "staged": len(self.status.staged),
            "unstaged": len(self.status.unstaged),
            "conflicts": len(self.status.conflicts),
        }

    # -- snapshots ---------------------------------------------------------------

    def _snapshot_data(self) -> SnapshotData:
        return SnapshotData(
            current_branch=self.current_branch,
            status=self.status,
            branches=self.branches,
            remote_branches=self.remote_branches,
            remotes=self.remotes,
            origin_url=self.origin_url,
            branch_status=self.branch_status,
            stashes=self.stashes,
            commits={
                name: self.commit_cache.get(name) or []
                for name in self.commit_cache.names()
            },
        )

    def _apply_snapshot(self, data: SnapshotData) -> None:
        self.status = data.status
        self.current_branch = data.current_branch
        self.branches = list(data.branches)
        self.remote_branches = list(data.remote_branches)
        self.remotes = list(data.remotes)
        self.origin_url = data.origin_url
        self.branch_status = dict(data.branch_status)
        self.stashes = list(data.stashes)
        self.commit_cache.clear()
        for name, commits in data.commits.items():
            self.commit_cache.put(name, commits)

    async def _save_snapshot(self) -> None:
        if self._snapshots is not None:
            await self._snapshots.save(self.repo_path, self._snapshot_data())

    # -- polling -----------------------------------------------------------------

    async def start_polling(self) -> None:
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            "polling_started",
            repo=str(self.repo_path),
            interval=self.config.poll_interval_seconds,
        )
        await self._emit(POLLING_STARTED, {"interval": self.config.poll_interval_seconds})

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("polling_stopped", repo=str(self.repo_path))
        await self._emit(POLLING_STOPPED)

    def set_active(self, active: bool) -> None:
        """Pause or resume periodic status refreshes (e.g. window focus)."""
        self._active = active

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval_seconds)
            if not self._active:
                continue
            try:
                await self.refresh_file_status()
            except Exception:
                logger.exception("poll_error", repo=str(self.repo_path))

    # -- history -------------------------------------------------------------------

    async def get_commits(self, branch: str | None = None) -> list[Commit]:
        """Commits of ``branch`` (default: current), served from cache when present."""
        branch = branch or self.current_branch
        if not branch:
            return []
        cached = self.commit_cache.get(branch)
        if cached is not None:
            return cached
        try:
            commits = await self.adapter.log(
                branch, self.config.log_max_count, remote=self.remote
            )
        except GitDockError as e:
            await self._fail("get_commits", e)
            return []
        self.commit_cache.put(branch, commits)
        await self._emit(COMMITS_LOADED, {"branch": branch, "count": len(commits)})
        return commits

    async def _backfill_origin(self, targets: dict[str, str] | None = None) -> int:
        """Re-check cached commits not yet known to be on the remote.

        ``targets`` maps a cached branch name to the remote ref to check
        against; by default every cached local branch with a remote copy.
        """
        if targets is None:
            prefix = f"{self.remote}/"
            targets = {
                name: f"{prefix}{name}"
                for name in self.commit_cache.names()
                if not name.startswith(prefix) and f"{prefix}{name}" in self.remote_branches
            }
        semaphore = asyncio.Semaphore(self.config.origin_check_concurrency)

        async def check(name: str, ref: str, commit: Commit) -> tuple[str, str, bool]:
            async with semaphore:
                found = await self.adapter.contains_commit(ref, commit.hash)
            return name, commit.hash, found

        results = await asyncio.gather(
            *(
                check(name, ref, commit)
                for name, ref in targets.items()
                for commit in self.commit_cache.pending_origin(name)
            )
        )
        reachable: dict[str, set[str]] = {}
        for name, commit_hash, found in results:
            if found:
                reachable.setdefault(name, set()).add(commit_hash)
        updated = sum(
            self.commit_cache.mark_on_origin(name, hashes)
            for name, hashes in reachable.items()
        )
        if updated:
            logger.debug("origin_backfill", repo=str(self.repo_path), updated=updated)
        return updated

    def _invalidate_commit(self, predicate: Callable[[Commit], bool]) -> None:
        for name in self.commit_cache.names():
            if any(predicate(c) for c in self.commit_cache.get(name) or []):
                self.commit_cache.invalidate(name)

    # -- remote synchronization ------------------------------------------------

    async def fetch(self, remote: str | None = None) -> bool:
        remote = remote or self.remote
        try:
            await self.adapter.fetch(remote)
        except GitDockError as e:
            await self._fail("fetch", e)
            return False
        self.commit_cache.invalidate_prefix(f"{remote}/")
        await self.refresh_branch_status()
        await self._backfill_origin()
        self.last_error = None
        logger.info("fetch_completed", remote=remote, repo=str(self.repo_path))
        return True

    async def pull(self, branch: str | None = None, *, stash_and_reapply: bool = False) -> bool:
        """Pull ``branch`` from the default remote, optionally stashing around it.

        The repository is re-read afterwards even on failure, since a failed
        pull can still leave merge conflicts behind.
        """
        ok = True
        try:
            branch = self._require_branch(branch, "pull")
            if stash_and_reapply:
                await self._pull_keeping_changes(branch)
            else:
                await self.adapter.pull(self.remote, branch)
        except GitDockError as e:
            await self._fail("pull", e)
            ok = False
        error = self.last_error
        await self.refresh()
        if not ok:
            self.last_error = error
        else:
            logger.info("pull_completed", branch=branch, repo=str(self.repo_path))
        return ok

    async def _pull_keeping_changes(self, branch: str) -> None:
        """Pull with local changes stashed around it.

        If the pull fails the stash is popped back before re-raising. If
        reapplying fails the stash is kept and the error names it.
        """
        self._apply_status(await self.adapter.status())
        stashed: StashEntry | None = None
        if self.has_local_changes:
            message = f"Auto-stash before pull at {_now()}"
            await self.adapter.stash_push(message, include_untracked=True)
            stashed = await self._find_stash(message=message)

        try:
            await self.adapter.pull(self.remote, branch)
        except GitDockError:
            if stashed is not None:
                await self._pop_back(stashed)
            raise

        if stashed is not None:
            try:
                await self._apply_and_drop(stashed)
            except GitDockError as e:
                raise OperationError(
                    "stash apply",
                    f"pulled {branch}, but reapplying local changes failed; "
                    f"they are kept in the stash '{stashed.message}': {e}",
                    stderr=getattr(e, "stderr", ""),
                ) from e

    async def push(
        self,
        branch: str | None = None,
        remote_branch: str | None = None,
        *,
        push_tags: bool = False,
        force: bool = False,
    ) -> str | None:
        """Push and return the tool's output, or None on failure."""
        try:
            branch = self._require_branch(branch, "push")
            target = remote_branch or branch
            refspec = branch if target == branch else f"{branch}:{target}"
            options: list[str] = []
            if push_tags:
                options.append("--tags")
            if force:
                options.append("--force")
            output = await self.adapter.push(self.remote, refspec, options)
        except GitDockError as e:
            await self._fail("push", e)
            return None

        await self.refresh_branch_status()
        if force:
            self.commit_cache.invalidate(branch)
        else:
            await self._backfill_origin({branch: f"{self.remote}/{target}"})
        self.last_error = None
        logger.info(
            "push_completed",
            branch=branch,
            target=target,
            force=force,
            repo=str(self.repo_path),
        )
        return output

    @staticmethod
    def pull_request_urls(output: str) -> list[str]:
        """URLs the remote printed while pushing (e.g. "create a pull request")."""
        return extract_urls(output)

    # -- branches ------------------------------------------------------------------

    async def switch_branch(
        self, branch: str, disposition: BranchSwitchDisposition | None = None
    ) -> bool:
        """Check out ``branch``, asking what to do with local changes if needed."""
        remote_prefix = f"{self.remote}/"
        if branch in self.remote_branches and branch.startswith(remote_prefix):
            # Checking out a remote branch creates or reuses its local counterpart
            branch = branch[len(remote_prefix) :]
        if branch == self.current_branch:
            return True

        source = self.current_branch
        try:
            self._apply_status(await self.adapter.status())
            if disposition is None and self.has_local_changes:
                disposition = await self._request_disposition(branch)
            disposition = disposition or "leave-alone"
            if disposition not in DISPOSITIONS:
                raise OperationError("switch branch", f"unknown disposition: {disposition}")
            if disposition == "cancel":
                raise BranchSwitchCancelled(f"switch to {branch} cancelled")
            await self._switch(branch, source, disposition)
        except BranchSwitchCancelled as e:
            logger.info("branch_switch_cancelled", target=branch, reason=str(e))
            return False
        except GitDockError as e:
            await self._fail("switch_branch", e)
            await self.refresh_file_status(force=True)
            return False

        await self.refresh_file_status(force=True)
        await self.refresh_branch_status()
        await self.refresh_stashes()
        self.last_error = None
        logger.info(
            "branch_switched",
            source=source,
            target=branch,
            disposition=disposition,
            repo=str(self.repo_path),
        )
        return True

    async def _switch(self, branch: str, source: str | None, disposition: str) -> None:
        stashed: StashEntry | None = None
        if disposition == "stash-and-reapply":
            message = f"Auto-stash before switching to {branch} at {_now()}"
            await self.adapter.stash_push(message, include_untracked=True)
            stashed = await self._find_stash(message=message)
        elif disposition == "branch-stash":
            message = branch_stash_message(source or "HEAD")
            await self.adapter.stash_push(message, include_untracked=True)
            stashed = await self._find_stash(message=message)
        elif disposition == "discard":
            status = await self.adapter.status()
            paths = [f.path for f in status.files if f.is_staged or f.is_unstaged]
            await self.adapter.discard(paths)

        try:
            await self.adapter.checkout_branch(branch)
        except GitDockError:
            if stashed is not None:
                await self._pop_back(stashed)
            raise
        self.current_branch = branch

        await self._restore_branch_stash(branch)
        if disposition == "stash-and-reapply" and stashed is not None:
            await self._apply_and_drop(stashed)

    async def _request_disposition(self, target: str) -> str:
        pending = PendingBranchSwitch(switch_id=str(uuid.uuid4()), target=target)
        self.pending_switch = pending
        await self._emit(
            BRANCH_SWITCH_REQUESTED,
            {
                "switch_id": pending.switch_id,
                "source": self.current_branch,
                "target": target,
                "changes": self.modified_count,
            },
        )
        try:
            await asyncio.wait_for(
                pending.event.wait(), timeout=self.config.disposition_timeout_seconds
            )
        except TimeoutError:
            logger.warning("branch_switch_timeout", target=target, switch_id=pending.switch_id)
            raise BranchSwitchCancelled(f"no decision for switching to {target}") from None
        finally:
            if self.pending_switch is pending:
                self.pending_switch = None

        disposition = pending.disposition or "cancel"
        await self._emit(
            BRANCH_SWITCH_RESOLVED,
            {"switch_id": pending.switch_id, "target": target, "disposition": disposition},
        )
        return disposition

    def resolve_branch_switch(
        self, disposition: BranchSwitchDisposition, switch_id: str | None = None
    ) -> bool:
        """Answer a pending branch-switch request. Returns False if none matches."""
        if disposition not in DISPOSITIONS:
            raise ValueError(f"unknown disposition: {disposition}")
        pending = self.pending_switch
        if pending is None or (switch_id is not None and pending.switch_id != switch_id):
            return False
        pending.disposition = disposition
        pending.event.set()
        return True

    async def _restore_branch_stash(self, branch: str) -> None:
        for entry in await self.adapter.stash_list():
            if entry.branch_stash_target == branch:
                await self._apply_and_drop(entry)
                logger.info("branch_stash_restored", branch=branch, stash=entry.message)
                return

    async def create_branch(
        self, name: str, *, checkout: bool = False, start_point: str | None = None
    ) -> bool:
        ok = await self._perform(
            "create_branch",
            lambda: self.adapter.create_branch(name, start_point),
            refresh_status=False,
            refresh_branches=True,
        )
        if ok and checkout:
            return await self.switch_branch(name, "leave-alone")
        return ok

    async def delete_branch(
        self, name: str, *, delete_remote: bool = False, force: bool = False
    ) -> bool:
        async def action() -> None:
            if name == self.current_branch:
                raise OperationError("delete branch", f"cannot delete the current branch {name}")
            await self.adapter.delete_branch(name, force=force)
            if delete_remote:
                await self.adapter.push(self.remote, name, ["--delete"])

        return await self._perform(
            "delete_branch",
            action,
            invalidate=(name, f"{self.remote}/{name}"),
            refresh_status=False,
            refresh_branches=True,
        )

    async def rename_branch(self, old_name: str, new_name: str) -> bool:
        async def action() -> None:
            await self.adapter.rename_branch(old_name, new_name)
            if self.current_branch == old_name:
                self.current_branch = new_name

        return await self._perform(
            "rename_branch",
            action,
            invalidate=(old_name, new_name),
            refresh_branches=True,
        )

    async def merge(self, source: str, flag: str | None = None) -> bool:
        args = ["merge", source, flag] if flag else ["merge", source]
        return await self._perform(
            "merge",
            lambda: self.adapter.raw(args),
            invalidate=self._current_cache_keys(),
            refresh_branches=True,
            refresh_on_failure=True,
        )

    async def rebase(self, onto: str) -> bool:
        return await self._perform(
            "rebase",
            lambda: self.adapter.raw(["rebase", onto]),
            invalidate=self._current_cache_keys(),
            refresh_branches=True,
            refresh_on_failure=True,
        )

    def _current_cache_keys(self) -> tuple[str, ...]:
        return (self.current_branch,) if self.current_branch else ()

    # -- commits -------------------------------------------------------------------

    async def commit(
        self,
        message: str,
        description: str | None = None,
        *,
        amend: bool = False,
        pull_first: bool = False,
    ) -> bool:
        full_message = message.strip()
        if description and description.strip():
            full_message = f"{full_message}\n\n{description.strip()}"

        async def action() -> None:
            if not full_message:
                raise OperationError("commit", "commit message is empty")
            branch = self.current_branch
            if (
                pull_first
                and not amend
                and branch
                and f"{self.remote}/{branch}" in self.remote_branches
            ):
                await self._pull_keeping_changes(branch)
            await self.adapter.commit(full_message, amend=amend)

        ok = await self._perform(
            "commit",
            action,
            invalidate=self._current_cache_keys(),
            refresh_branches=True,
            refresh_on_failure=True,
        )
        if ok:
            logger.info("commit_created", branch=self.current_branch, amend=amend)
        return ok

    async def reset_to_origin(self) -> bool:
        try:
            branch = self._require_branch(None, "reset to origin")
            await self.adapter.reset_to_origin(branch)
        except GitDockError as e:
            await self._fail("reset_to_origin", e)
            return False
        self.commit_cache.invalidate(branch)
        return await self.refresh()

    async def reset_to_commit(self, commit_hash: str, mode: str = "hard") -> bool:
        return await self._perform(
            "reset_to_commit",
            lambda: self.adapter.raw(["reset", f"--{mode}", commit_hash]),
            invalidate=self._current_cache_keys(),
            refresh_branches=True,
        )

    async def cherry_pick(self, commit_hash: str) -> bool:
        return await self._perform(
            "cherry_pick",
            lambda: self.adapter.raw(["cherry-pick", commit_hash]),
            invalidate=self._current_cache_keys(),
            refresh_branches=True,
            refresh_on_failure=True,
        )

    async def revert(self, commit_hash: str) -> bool:
        return await self._perform(
            "revert",
            lambda: self.adapter.raw(["revert", "--no-edit", commit_hash]),
            invalidate=self._current_cache_keys(),
            refresh_branches=True,
            refresh_on_failure=True,
        )

    async def checkout_commit(self, commit_hash: str) -> bool:
        return await self._perform(
            "checkout_commit",
            lambda: self.adapter.raw(["checkout", commit_hash]),
            refresh_branches=True,
        )

    async def create_tag(
        self, name: str, commit_hash: str, message: str | None = None
    ) -> bool:
        if message:
            args = ["tag", "-a", name, "-m", message, commit_hash]
        else:
            args = ["tag", name, commit_hash]
        tagged: list[str] = []

        async def action() -> None:
            await self.adapter.raw(args)
            tagged.append((await self.adapter.raw(["rev-parse", f"{name}^{{commit}}"])).strip())

        ok = await self._perform("create_tag", action, refresh_status=False)
        if ok:
            self._invalidate_commit(lambda c: c.hash in tagged)
        return ok

    async def delete_tag(self, name: str) -> bool:
        ok = await self._perform(
            "delete_tag", lambda: self.adapter.raw(["tag", "-d", name]), refresh_status=False
        )
        if ok:
            self._invalidate_commit(lambda c: name in c.tags)
        return ok

    async def save_commit_patch(self, commit_hash: str, output_path: Path | str) -> bool:
        async def action() -> None:
            patch = await self.adapter.raw(["format-patch", "-1", "--stdout", commit_hash])
            try:
                await asyncio.to_thread(Path(output_path).write_text, patch)
            except OSError as e:
                raise OperationError(f"write patch {output_path}", str(e)) from e

        return await self._perform("save_commit_patch", action, refresh_status=False)

    async def create_patch(
        self, paths: Sequence[str], output_path: Path | str, *, staged: bool = False
    ) -> bool:
        return await self._perform(
            "create_patch",
            lambda: self.adapter.create_patch(paths, output_path, staged),
            refresh_status=False,
        )

    # -- working tree ----------------------------------------------------------------

    async def stage(self, paths: Sequence[str]) -> bool:
        return await self._perform("stage", lambda: self.adapter.add(list(paths)))

    async def unstage(self, paths: Sequence[str]) -> bool:
        return await self._perform("unstage", lambda: self.adapter.reset(list(paths)))

    async def discard(self, paths: Sequence[str]) -> bool:
        return await self._perform(
            "discard", lambda: self.adapter.discard(paths), refresh_on_failure=True
        )

    async def clean_working_directory(self) -> bool:
        return await self._perform(
            "clean_working_directory", lambda: self.adapter.raw(["clean", "-fd"])
        )

    async def add_to_gitignore(self, pattern: str) -> bool:
        return await self._perform(
            "add_to_gitignore", lambda: self.adapter.add_to_gitignore(pattern)
        )

    async def resolve_conflict(self, path: str, side: Literal["ours", "theirs"]) -> bool:
        """Take one side of a conflicted file wholesale and stage it."""

        async def action() -> None:
            await self.adapter.raw(["checkout", f"--{side}", "--", path])
            await self.adapter.add([path])

        return await self._perform("resolve_conflict", action)

    # -- stashes -------------------------------------------------------------------

    async def stash(
        self,
        message: str | None = None,
        *,
        stage_new_files: bool = False,
        paths: Sequence[str] | None = None,
    ) -> bool:
        message = message or f"WIP on {self.current_branch or 'HEAD'} at {_now()}"

        async def action() -> None:
            if stage_new_files:
                status = await self.adapter.status()
                wanted = set(paths) if paths else None
                new_files = [
                    f.path
                    for f in status.files
                    if f.is_untracked and (wanted is None or f.path in wanted)
                ]
                if new_files:
                    await self.adapter.add(new_files)
            await self.adapter.stash_push(message, paths)
            await self.refresh_stashes()

        return await self._perform("stash", action)

    async def _find_stash(
        self, *, stash_hash: str | None = None, message: str | None = None
    ) -> StashEntry | None:
        stashes = await self.adapter.stash_list()
        if stash_hash:
            for entry in stashes:
                if entry.hash == stash_hash:
                    return entry
        if message:
            for entry in stashes:
                if entry.has_message(message):
                    return entry
        return None

    async def _resolve_stash(self, entry: StashEntry) -> StashEntry:
        """Locate ``entry`` in the current stash list; indices shift over time."""
        found = await self._find_stash(stash_hash=entry.hash, message=entry.message)
        if found is None:
            raise StashNotFoundError(f"stash '{entry.message}' no longer exists")
        return found

    async def _apply_and_drop(self, entry: StashEntry) -> None:
        resolved = await self._resolve_stash(entry)
        await self.adapter.stash_apply(resolved.index, restore_index=True)
        resolved = await self._resolve_stash(resolved)
        await self.adapter.stash_drop(resolved.index)

    async def _pop_back(self, entry: StashEntry) -> None:
        try:
            resolved = await self._resolve_stash(entry)
            await self.adapter.stash_pop(resolved.index, restore_index=True)
        except GitDockError as e:
            logger.warning("stash_restore_failed", stash=entry.message, error=str(e))

    async def apply_stash(self, entry: StashEntry, *, delete_after: bool = False) -> bool:
        async def action() -> None:
            resolved = await self._resolve_stash(entry)
            await self.adapter.stash_apply(resolved.index)
            if delete_after:
                resolved = await self._resolve_stash(resolved)
                await self.adapter.stash_drop(resolved.index)

        ok = await self._perform("apply_stash", action, refresh_on_failure=True)
        await self.refresh_stashes()
        return ok

    async def drop_stash(self, entry: StashEntry) -> bool:
        async def action() -> None:
            resolved = await self._resolve_stash(entry)
            await self.adapter.stash_drop(resolved.index)

        ok = await self._perform("drop_stash", action, refresh_status=False)
        await self.refresh_stashes()
        return ok

    async def rename_stash(self, entry: StashEntry, new_message: str) -> bool:
        """Store the stash commit again under ``new_message``, then drop the old entry.

        The ``On <branch>: `` prefix of the old message is kept.
        """

        async def action() -> None:
            resolved = await self._resolve_stash(entry)
            if not resolved.hash:
                raise StashNotFoundError(f"stash '{resolved.message}' has no commit hash")
            await self.adapter.stash_store(resolved.hash, resolved.retitled(new_message))
            # The new entry is on top; the old one is the deepest copy of the commit
            copies = [s for s in await self.adapter.stash_list() if s.hash == resolved.hash]
            if len(copies) < 2:
                raise StashNotFoundError(f"stash '{resolved.message}' no longer exists")
            await self.adapter.stash_drop(copies[-1].index)

        ok = await self._perform("rename_stash", action, refresh_status=False)
        await self.refresh_stashes()
        return ok

    # -- remotes ---------------------------------------------------------------------

    async def add_remote(self, name: str, url: str) -> bool:
        async def action() -> None:
            await self.adapter.add_remote(name, url)
            await self._refresh_remotes()

        return await self._perform("add_remote", action, refresh_status=False)

    async def edit_remote(self, name: str, url: str) -> bool:
        async def action() -> None:
            await self.adapter.edit_remote(name, url)
            await self._refresh_remotes()

        return await self._perform("edit_remote", action, refresh_status=False)

    async def remove_remote(self, name: str) -> bool:
        async def action() -> None:
            await self.adapter.remove_remote(name)
            self.commit_cache.invalidate_prefix(f"{name}/")
            await self._refresh_remotes()

        return await self._perform(
            "remove_remote", action, refresh_status=False, refresh_branches=True
        )

    # -- conflicts ---------------------------------------------------------------------

    async def _update_conflict_sources(self) -> None:
        if not self.status.conflicts:
            self.conflict_sources = None
            return
        try:
            self.conflict_sources = await self._detect_conflict_sources()
        except GitDockError as e:
            logger.warning("conflict_detection_failed", repo=str(self.repo_path), error=str(e))
            self.conflict_sources = ConflictSources(
                ours=self.current_branch or "HEAD", theirs="unknown", operation="merge"
            )

    async def _git_path(self, name: str) -> Path:
        if self._git_dir is None:
            git_dir = (await self.adapter.raw(["rev-parse", "--git-dir"])).strip()
            self._git_dir = (self.repo_path / git_dir).resolve()
        return self._git_dir / name

    async def _ref_label(self, ref: str) -> str:
        try:
            output = await self.adapter.raw(["name-rev", "--name-only", "--no-undefined", ref])
            label = output.strip()
        except OperationError:
            label = ""
        if label:
            return label.removeprefix("remotes/")
        try:
            return (await self.adapter.raw(["rev-parse", "--short", ref])).strip() or ref
        except OperationError:
            return ref

    async def _detect_conflict_sources(self) -> ConflictSources:
        ours = self.current_branch or "HEAD"
        for directory in ("rebase-merge", "rebase-apply"):
            rebase_dir = await self._git_path(directory)
            if rebase_dir.is_dir():
                head_name = rebase_dir / "head-name"
                onto = rebase_dir / "onto"
                theirs = (
                    head_name.read_text().strip().removeprefix("refs/heads/")
                    if head_name.exists()
                    else "rebased commit"
                )
                upstream = (
                    await self._ref_label(onto.read_text().strip()) if onto.exists() else ours
                )
                # During a rebase "ours" is the branch being rebased onto
                return ConflictSources(ours=upstream, theirs=theirs, operation="rebase")

        for head, operation in (
            ("MERGE_HEAD", "merge"),
            ("CHERRY_PICK_HEAD", "cherry-pick"),
            ("REVERT_HEAD", "revert"),
        ):
            if (await self._git_path(head)).exists():
                theirs = await self._ref_label(head)
                if operation == "revert":
                    theirs = f"revert of {theirs}"
                return ConflictSources(ours=ours, theirs=theirs, operation=operation)

        return ConflictSources(ours=ours, theirs="stash", operation="stash")

    # -- lifecycle ---------------------------------------------------------------------

    def cancel(self) -> int:
        """Clear the busy indicator; the underlying commands are not stopped."""
        cleared = self.adapter.tracker.clear()
        logger.info("commands_cancelled", repo=str(self.repo_path), count=cleared)
        return cleared

    async def close(self) -> None:
        await self.stop_polling()
        await self.adapter.close()
