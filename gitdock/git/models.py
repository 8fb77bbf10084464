"""Data models for version-control results, shared by every backend."""

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict

FileStatus = Literal[
    "modified", "created", "deleted", "renamed", "copied", "conflict"
]

BLANK = " "
UNTRACKED = "?"
IGNORED = "!"

# Unmerged XY pairs from porcelain status
CONFLICT_PAIRS = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})

BRANCH_STASH_PREFIX = "branch-stash-"
_BRANCH_STASH_RE = re.compile(r"branch-stash-(\S+)")
_STASH_PREFIX_RE = re.compile(r"^On [^:]+:\s*")


def _code_to_status(code: str) -> FileStatus:
    return {
        "M": "modified",
        "T": "modified",
        "A": "created",
        "?": "created",
        "D": "deleted",
        "R": "renamed",
        "C": "copied",
        "U": "conflict",
    }.get(code, "modified")  # type: ignore[return-value]


class FileChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    status: FileStatus


class FileEntry(BaseModel):
    """One path from a status query with normalized single-character states."""

    model_config = ConfigDict(frozen=True)

    path: str
    working_tree_state: str = BLANK
    index_state: str = BLANK
    orig_path: str | None = None

    @property
    def is_untracked(self) -> bool:
        return self.index_state == UNTRACKED or self.working_tree_state == UNTRACKED

    @property
    def is_conflict(self) -> bool:
        return f"{self.index_state}{self.working_tree_state}" in CONFLICT_PAIRS

    @property
    def is_staged(self) -> bool:
        return self.index_state not in (BLANK, UNTRACKED, IGNORED, "")

    @property
    def is_unstaged(self) -> bool:
        return self.working_tree_state not in (BLANK, IGNORED, "")

    @property
    def is_staged_new(self) -> bool:
        return self.index_state == "A" and not self.is_conflict

    def _status(self, code: str) -> FileStatus:
        return "conflict" if self.is_conflict else _code_to_status(code)

    def staged_change(self) -> FileChange:
        return FileChange(path=self.path, status=self._status(self.index_state))

    def unstaged_change(self) -> FileChange:
        return FileChange(path=self.path, status=self._status(self.working_tree_state))


class RepositoryStatus(BaseModel):
    """Parsed output of a status query."""

    model_config = ConfigDict(frozen=True)

    current_branch: str = ""
    files: list[FileEntry] = []
    tracking: str | None = None
    ahead: int = 0
    behind: int = 0

    @property
    def staged(self) -> list[FileChange]:
        return [f.staged_change() for f in self.files if f.is_staged]

    @property
    def unstaged(self) -> list[FileChange]:
        return [f.unstaged_change() for f in self.files if f.is_unstaged]

    @property
    def conflicts(self) -> list[str]:
        return [f.path for f in self.files if f.is_conflict]

    @property
    def is_clean(self) -> bool:
        return not any(f.is_staged or f.is_unstaged for f in self.files)

    def entry(self, path: str) -> FileEntry | None:
        for f in self.files:
            if f.path == path:
                return f
        return None


class BranchSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    is_current: bool = False


class AheadBehind(BaseModel):
    """Commit counts between a branch and its counterpart; -1/-1 means unknown."""

    model_config = ConfigDict(frozen=True)

    ahead: int
    behind: int

    @classmethod
    def unknown(cls) -> "AheadBehind":
        return cls(ahead=-1, behind=-1)

    @property
    def is_known(self) -> bool:
        return self.ahead >= 0 and self.behind >= 0

    @property
    def in_sync(self) -> bool:
        return self.ahead == 0 and self.behind == 0


class Commit(BaseModel):
    model_config = ConfigDict(frozen=True)

    hash: str
    author_name: str
    author_email: str
    date: str
    subject: str
    body: str = ""
    on_origin: bool = False
    tags: list[str] = []

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


class CommitFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    path: str


class StashEntry(BaseModel):
    """A stash as listed at one point in time.

    The index is positional and shifts on every push/pop/drop; resolve an
    entry again (by hash, then message) before acting on it.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    message: str
    hash: str | None = None

    @property
    def stash_ref(self) -> str:
        return f"stash@{{{self.index}}}"

    @property
    def branch_stash_target(self) -> str | None:
        match = _BRANCH_STASH_RE.search(self.message)
        return match.group(1) if match else None

    def has_message(self, message: str) -> bool:
        # Pushed stashes are listed as "On <branch>: <message>"
        return self.message == message or self.message.endswith(f": {message}")

    def retitled(self, message: str) -> str:
        """``message`` carrying this entry's ``On <branch>: `` prefix, if it has one."""
        match = _STASH_PREFIX_RE.match(self.message)
        return f"{match.group(0)}{message}" if match else message


class StashInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    stash_ref: str
    index: int
    output: str = ""
    files: list[str] = []
    total_files: int = 0
    hash: str = ""
    author: str = ""
    date: str = ""
    merge: str = ""
    message: str = ""


class RemoteInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    url: str


class ConflictSources(BaseModel):
    """Labels for the two sides of an in-progress conflict."""

    model_config = ConfigDict(frozen=True)

    ours: str
    theirs: str
    operation: Literal["merge", "rebase", "cherry-pick", "revert", "stash"]


def branch_stash_message(branch: str) -> str:
    return f"{BRANCH_STASH_PREFIX}{branch}"
