"""Per-branch commit history cache owned by the synchronizer."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from gitdock.git.models import Commit

logger = structlog.get_logger()


class BranchCommitCache:
    """Maps a branch name to its commits, newest first.

    Entries are replaced wholesale; the only in-place update is marking
    commits as reachable from the remote after a fetch or push.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[Commit]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str) -> list[Commit] | None:
        commits = self._entries.get(name)
        return list(commits) if commits is not None else None

    def put(self, name: str, commits: Iterable[Commit]) -> None:
        self._entries[name] = list(commits)

    def invalidate(self, name: str) -> bool:
        removed = self._entries.pop(name, None) is not None
        if removed:
            logger.debug("commit_cache_invalidated", branch=name)
        return removed

    def invalidate_prefix(self, prefix: str) -> list[str]:
        """Drop every entry whose name starts with ``prefix`` (e.g. ``origin/``)."""
        names = [name for name in self._entries if name.startswith(prefix)]
        for name in names:
            del self._entries[name]
        if names:
            logger.debug("commit_cache_invalidated", branches=names)
        return names

    def clear(self) -> None:
        self._entries.clear()

    def names(self) -> list[str]:
        return list(self._entries)

    def pending_origin(self, name: str) -> list[Commit]:
        """Cached commits of ``name`` not yet known to be on the remote."""
        return [c for c in self._entries.get(name, []) if not c.on_origin]

    def mark_on_origin(self, name: str, hashes: Iterable[str]) -> int:
        wanted = set(hashes)
        commits = self._entries.get(name)
        if not commits or not wanted:
            return 0
        updated = 0
        for i, commit in enumerate(commits):
            if commit.hash in wanted and not commit.on_origin:
                commits[i] = commit.model_copy(update={"on_origin": True})
                updated += 1
        return updated
