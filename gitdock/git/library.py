"""Adapter backed by GitPython.

GitPython calls block, so each one runs on a worker thread through
``asyncio.to_thread``. Object-database reads (commits, tags, trees) share the
repository's persistent ``cat-file`` processes and are serialized by a lock.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

import structlog
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import BadName
from git.refs.remote import RemoteReference

from gitdock.exceptions import OperationError, RepositoryOpenError
from gitdock.git.adapter import GitAdapter, describe_paths
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
from gitdock.git.parsing import (
    STASH_LIST_FORMAT,
    parse_name_only,
    parse_name_status,
    parse_porcelain_status,
    parse_stash_list,
    parse_stash_show,
)

logger = structlog.get_logger()

T = TypeVar("T")

_STATUS_ARGS = ("--porcelain=v1", "-z", "--branch", "--untracked-files=all")


def _clean_stream(value: Any, name: str) -> str:
    """Undo GitCommandError's ``\\n  stderr: '...'`` decoration."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = (value or "").strip()
    prefix = f"{name}: '"
    if text.startswith(prefix) and text.endswith("'"):
        text = text[len(prefix) : -1]
    return text.strip()


def _as_list(file_paths: str | Sequence[str]) -> list[str]:
    return [file_paths] if isinstance(file_paths, str) else list(file_paths)


class GitPythonAdapter(GitAdapter):
    """Adapter driving a ``git.Repo`` instead of spawning commands directly."""

    backend_name = "gitpython"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._repo: Repo | None = None
        self._odb_lock = threading.Lock()

    @property
    def repo(self) -> Repo:
        self._require_open()
        assert self._repo is not None
        return self._repo

    async def open(self) -> None:
        with self.tracker.track(f"open {self.repo_path}"):
            try:
                repo = await asyncio.to_thread(Repo, str(self.repo_path))
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise RepositoryOpenError(
                    f"Not a git working tree: {self.repo_path}: {e}"
                ) from e
        if repo.bare:
            repo.close()
            raise RepositoryOpenError(f"Bare repository has no working tree: {self.repo_path}")
        repo.git.update_environment(GIT_TERMINAL_PROMPT="0")
        self._repo = repo
        self.is_open = True
        logger.debug("repository_opened", repo=str(self.repo_path), backend="gitpython")

    async def close(self) -> None:
        if self._repo is not None:
            self._repo.close()
            self._repo = None
        await super().close()

    # -- execution -------------------------------------------------------------

    async def _call(self, label: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` on a worker thread inside a tracked command."""
        with self.tracker.track(label):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except GitCommandError as e:
                stdout = _clean_stream(e.stdout, "stdout")
                stderr = _clean_stream(e.stderr, "stderr")
                raise OperationError(
                    label,
                    stderr or stdout or f"exit code {e.status}",
                    stdout=stdout,
                    stderr=stderr,
                ) from e
            except (BadName, ValueError) as e:
                raise OperationError(label, str(e)) from e

    async def _git(self, verb: str, *args: str, label: str | None = None, **kwargs: Any) -> str:
        """Call ``repo.git.<verb>`` with stdout returned verbatim."""
        method = getattr(self.repo.git, verb.replace("-", "_"))
        label = label or " ".join(("git", verb, *args))
        return await self._call(label, method, *args, strip_newline_in_stdout=False, **kwargs)

    async def _degrade(self, default: T, coro) -> T:
        try:
            return await coro
        except OperationError as e:
            logger.debug("git_query_degraded", command=e.command, error=e.message)
            return default

    async def _batched(self, verb: str, flags: tuple[str, ...], paths: list[str]) -> None:
        for batch in self._batches(paths):
            label = " ".join(("git", verb, *flags, "--", describe_paths(batch)))
            await self._git(verb, *flags, "--", *batch, label=label)

    # -- status & branches ---------------------------------------------------

    async def status(
        self, path: str | None = None, *, no_lock: bool = False
    ) -> RepositoryStatus:
        args = list(_STATUS_ARGS)
        if path:
            args.extend(["--", path])
        env = {"GIT_OPTIONAL_LOCKS": "0"} if no_lock else None
        status = parse_porcelain_status(await self._git("status", *args, env=env))
        self.current_branch = status.current_branch or None
        return status

    def _local_branches(self) -> list[BranchSummary]:
        repo = self.repo
        current = None if repo.head.is_detached else repo.head.reference.name
        return sorted(
            (BranchSummary(name=head.name, is_current=head.name == current) for head in repo.heads),
            key=lambda b: b.name,
        )

    async def branch_local(self) -> list[BranchSummary]:
        return await self._degrade([], self._call("git branch --list", self._local_branches))

    def _remote_branch_names(self) -> list[str]:
        return sorted(
            ref.name
            for ref in RemoteReference.iter_items(self.repo)
            if not ref.name.endswith("/HEAD")
        )

    async def remote_branches(self) -> list[str]:
        return await self._degrade(
            [], self._call("git branch --remotes", self._remote_branch_names)
        )

    async def create_branch(
        self, branch_name: str, start_point: str | None = None
    ) -> None:
        args = [branch_name, start_point] if start_point else [branch_name]
        await self._git("branch", *args)

    async def delete_branch(self, branch_name: str, *, force: bool = False) -> None:
        await self._git("branch", "-D" if force else "-d", branch_name)

    async def rename_branch(self, old_name: str, new_name: str) -> None:
        await self._git("branch", "-m", old_name, new_name)
        if self.current_branch == old_name:
            self.current_branch = new_name

    async def checkout_branch(self, branch_name: str) -> None:
        await self._git("checkout", branch_name)
        self.current_branch = branch_name

    def _count_ahead_behind(self, local_ref: str, remote_ref: str) -> AheadBehind:
        repo = self.repo
        ahead = sum(1 for _ in repo.iter_commits(f"{remote_ref}..{local_ref}"))
        behind = sum(1 for _ in repo.iter_commits(f"{local_ref}..{remote_ref}"))
        return AheadBehind(ahead=ahead, behind=behind)

    async def get_ahead_behind(self, local_ref: str, remote_ref: str) -> AheadBehind:
        return await self._degrade(
            AheadBehind.unknown(),
            self._call(
                f"git rev-list --left-right --count {local_ref}...{remote_ref}",
                self._count_ahead_behind,
                local_ref,
                remote_ref,
            ),
        )

    # -- remotes ---------------------------------------------------------------

    async def get_origin_url(self) -> str:
        remote = self.config.default_remote
        return await self._degrade(
            "",
            self._call(
                f"git remote get-url {remote}", lambda: self.repo.remote(remote).url
            ),
        )

    def _remotes(self) -> list[RemoteInfo]:
        return [
            RemoteInfo(name=remote.name, url=next(iter(remote.urls), ""))
            for remote in self.repo.remotes
        ]

    async def list_remotes(self) -> list[RemoteInfo]:
        return await self._degrade([], self._call("git remote -v", self._remotes))

    async def set_remote_url(self, remote_name: str, url: str) -> None:
        await self._call(
            f"git remote set-url {remote_name} {url}",
            lambda: self.repo.remote(remote_name).set_url(url),
        )

    async def add_remote(self, remote_name: str, url: str) -> None:
        await self._call(
            f"git remote add {remote_name} {url}", self.repo.create_remote, remote_name, url
        )

    async def remove_remote(self, remote_name: str) -> None:
        await self._call(
            f"git remote remove {remote_name}",
            lambda: self.repo.delete_remote(self.repo.remote(remote_name)),
        )

    async def fetch(self, remote: str) -> None:
        await self._git("fetch", remote)

    async def pull(self, remote: str, branch: str) -> None:
        await self._git("pull", remote, branch)

    async def push(
        self, remote: str, refspec: str, options: Sequence[str] = ()
    ) -> str:
        _, stdout, stderr = await self._git(
            "push", remote, refspec, *options, with_extended_output=True
        )
        return stdout + stderr

    async def reset_to_origin(self, branch: str) -> None:
        remote = self.config.default_remote
        await self._git("fetch", remote)
        await self._git("reset", "--hard", f"{remote}/{branch}")

    # -- stashes ---------------------------------------------------------------

    async def stash_list(self) -> list[StashEntry]:
        stdout = await self._degrade(
            "", self._git("stash", "list", f"--format={STASH_LIST_FORMAT}")
        )
        return parse_stash_list(stdout)

    async def stash_push(
        self,
        message: str,
        file_paths: Sequence[str] | None = None,
        *,
        include_untracked: bool = False,
    ) -> None:
        args = ["push", "--include-untracked"] if include_untracked else ["push"]
        args.extend(["-m", message])
        label = None
        if file_paths:
            paths = list(file_paths)
            args.extend(["--", *paths])
            label = f"git stash push -m {message} -- {describe_paths(paths)}"
        await self._git("stash", *args, label=label)

    async def stash_pop(self, index: int = 0, *, restore_index: bool = False) -> None:
        flags = ["--index"] if restore_index else []
        await self._git("stash", "pop", *flags, f"stash@{{{index}}}")

    async def stash_apply(self, index: int = 0, *, restore_index: bool = False) -> None:
        flags = ["--index"] if restore_index else []
        await self._git("stash", "apply", *flags, f"stash@{{{index}}}")

    async def stash_drop(self, index: int) -> None:
        await self._git("stash", "drop", f"stash@{{{index}}}")

    async def stash_store(self, commit_hash: str, message: str) -> None:
        await self._git("stash", "store", "-m", message, commit_hash)

    async def get_stash_info(self, stash_index: int) -> StashInfo:
        ref = f"stash@{{{stash_index}}}"
        try:
            output = await self._git("show", ref)
            names = await self._git("stash", "show", "--name-only", ref)
        except OperationError as e:
            logger.debug("git_query_degraded", command=e.command, error=e.message)
            return StashInfo(stash_ref=ref, index=stash_index)
        return parse_stash_show(output, stash_index, parse_name_only(names))

    async def get_stash_file_diff(self, stash_index: int, file_path: str) -> str:
        ref = f"stash@{{{stash_index}}}"
        return await self._degrade("", self._git("diff", f"{ref}^1", ref, "--", file_path))

    # -- index & working tree -------------------------------------------------

    async def add(self, file_paths: str | Sequence[str]) -> None:
        await self._batched("add", (), _as_list(file_paths))

    async def reset(self, file_paths: str | Sequence[str]) -> None:
        await self._batched("reset", ("-q",), _as_list(file_paths))

    async def restore(self, file_paths: Sequence[str]) -> None:
        await self._batched("checkout", (), list(file_paths))

    async def commit(self, message: str, *, amend: bool = False) -> None:
        args = ["-m", message, "--amend"] if amend else ["-m", message]
        await self._git("commit", *args)

    # -- history & content ----------------------------------------------------

    def _is_unborn(self, branch_name: str) -> bool:
        head = self.repo.head
        if head.is_detached or head.is_valid():
            return False
        return head.reference.name == branch_name

    def _tag_map(self) -> dict[str, list[str]]:
        tags: dict[str, list[str]] = {}
        for tag in self.repo.tags:
            try:
                target = tag.commit.hexsha
            except ValueError:
                # Tags on trees or blobs have no commit
                continue
            tags.setdefault(target, []).append(tag.name)
        return tags

    def _read_log(self, branch_name: str, max_count: int, remote: str) -> list[Commit]:
        repo = self.repo
        with self._odb_lock:
            if self._is_unborn(branch_name):
                return []
            commits = list(repo.iter_commits(branch_name, max_count=max_count))
            tags = self._tag_map()
            if branch_name.startswith(f"{remote}/"):
                unpushed: set[str] | None = None
                all_on_origin = True
            else:
                all_on_origin = False
                remote_ref = f"{remote}/{branch_name}"
                try:
                    repo.commit(remote_ref)
                except (BadName, ValueError, GitCommandError):
                    unpushed = None
                else:
                    unpushed = {
                        c.hexsha for c in repo.iter_commits(f"{remote_ref}..{branch_name}")
                    }

            result = []
            for c in commits:
                if all_on_origin:
                    on_origin = True
                elif unpushed is None:
                    on_origin = False
                else:
                    on_origin = c.hexsha not in unpushed
                message = c.message if isinstance(c.message, str) else c.message.decode()
                subject, _, body = message.partition("\n")
                result.append(
                    Commit(
                        hash=c.hexsha,
                        author_name=c.author.name or "",
                        author_email=c.author.email or "",
                        date=c.authored_datetime.isoformat(),
                        subject=subject.strip(),
                        body=body.strip(),
                        on_origin=on_origin,
                        tags=tags.get(c.hexsha, []),
                    )
                )
            return result

    async def log(
        self, branch_name: str, max_count: int = 100, *, remote: str | None = None
    ) -> list[Commit]:
        remote = remote or self.config.default_remote
        return await self._call(
            f"git log {branch_name} --max-count={max_count}",
            self._read_log,
            branch_name,
            max_count,
            remote,
        )

    async def contains_commit(self, ref: str, commit_hash: str) -> bool:
        return await self._degrade(
            False,
            self._call(
                f"git merge-base --is-ancestor {commit_hash} {ref}",
                self.repo.is_ancestor,
                commit_hash,
                ref,
            ),
        )

    def _commit_files(self, commit_hash: str) -> list[CommitFile]:
        repo = self.repo
        with self._odb_lock:
            commit = repo.commit(commit_hash)
            if not commit.parents:
                output = repo.git.diff_tree(
                    "--no-commit-id", "--name-status", "-r", "-M", "--root", commit.hexsha
                )
                return parse_name_status(output)
            files = []
            for change in commit.parents[0].diff(commit):
                path = change.a_path if change.change_type == "D" else change.b_path
                files.append(CommitFile(status=change.change_type, path=path or change.a_path))
            return files

    async def get_commit_files(self, commit_hash: str) -> list[CommitFile]:
        return await self._degrade(
            [],
            self._call(
                f"git diff-tree --name-status -r {commit_hash}",
                self._commit_files,
                commit_hash,
            ),
        )

    async def diff(self, file_path: str, is_staged: bool = False) -> str:
        args = ["--cached"] if is_staged else []
        return await self._degrade(
            "", self._git("diff", *args, "--ignore-space-at-eol", "--", file_path)
        )

    async def show(self, commit_hash: str, file_path: str) -> str:
        return await self._degrade(
            "",
            self._git("show", "--format=", "--unified=3", commit_hash, "--", file_path),
        )

    async def create_patch(
        self,
        file_paths: Sequence[str],
        output_path: Path | str,
        is_staged: bool = False,
    ) -> None:
        paths = list(file_paths)
        args = ["--cached"] if is_staged else []
        label = " ".join(("git", "diff", *args, "--", describe_paths(paths)))
        patch = await self._git("diff", *args, "--", *paths, label=label)
        try:
            Path(output_path).write_text(patch)
        except OSError as e:
            raise OperationError(f"write patch {output_path}", str(e)) from e

    async def clone(self, repo_url: str, parent_folder: Path | str, repo_name: str) -> Path:
        parent = Path(parent_folder).expanduser()
        target = parent / repo_name
        if not parent.is_dir():
            raise OperationError("git clone", f"Directory does not exist: {parent}")
        cloned = await self._call(
            f"git clone {repo_url} {target}", Repo.clone_from, repo_url, str(target)
        )
        cloned.close()
        logger.info("repository_cloned", url=repo_url, path=str(target))
        return target

    async def raw(self, args: Sequence[str]) -> str:
        args = list(args)
        return await self._call(
            " ".join(("git", *args)),
            self.repo.git.execute,
            ["git", *args],
            strip_newline_in_stdout=False,
        )
