"""Adapter that drives the git executable through asyncio subprocesses."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
from collections.abc import Sequence
from pathlib import Path

import structlog

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
    LOCAL_BRANCH_FORMAT,
    LOG_FORMAT,
    STASH_LIST_FORMAT,
    parse_ahead_behind,
    parse_local_branches,
    parse_log,
    parse_name_only,
    parse_name_status,
    parse_porcelain_status,
    parse_remote_branches,
    parse_remotes,
    parse_stash_list,
    parse_stash_show,
)

logger = structlog.get_logger()

# Output parsing relies on untranslated messages; never block on credential prompts
_GIT_ENV = {"LC_ALL": "C", "LANGUAGE": "C", "GIT_TERMINAL_PROMPT": "0"}
_STATUS_ARGS = ("status", "--porcelain=v1", "-z", "--branch", "--untracked-files=all")


def _as_list(file_paths: str | Sequence[str]) -> list[str]:
    return [file_paths] if isinstance(file_paths, str) else list(file_paths)


class CliGitAdapter(GitAdapter):
    """Async wrapper around the git CLI."""

    backend_name = "cli"

    async def open(self) -> None:
        if not self.repo_path.is_dir():
            raise RepositoryOpenError(f"Directory does not exist: {self.repo_path}")
        with self.tracker.track("git rev-parse --is-inside-work-tree"):
            code, stdout, stderr = await self._run("rev-parse", "--is-inside-work-tree")
        if code != 0 or stdout.strip() != "true":
            raise RepositoryOpenError(
                f"Not a git working tree: {self.repo_path}: {stderr.strip()}"
            )
        self.is_open = True
        logger.debug("repository_opened", repo=str(self.repo_path), backend="cli")

    # -- execution -------------------------------------------------------------

    async def _run(
        self, *args: str, cwd: Path | None = None, timeout: float | None = None
    ) -> tuple[int, str, str]:
        """Execute a git command via asyncio.create_subprocess_exec."""
        cwd = cwd or self.repo_path
        timeout = timeout or self.config.command_timeout_seconds
        cmd = ("git", *args)
        logger.debug("git_exec", command=cmd, cwd=str(cwd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                env={**os.environ, **_GIT_ENV},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
            stdout = stdout_bytes.decode("utf-8", errors="replace")
            stderr = stderr_bytes.decode("utf-8", errors="replace")
            return proc.returncode or 0, stdout, stderr
        except TimeoutError:
            logger.warning("git_exec_timeout", command=cmd, timeout=timeout)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            return 1, "", f"Command timed out after {timeout}s"
        except FileNotFoundError:
            return 1, "", "git is not installed or not in PATH"
        except OSError as e:
            logger.error("git_exec_error", command=cmd, error=str(e))
            return 1, "", str(e)

    async def _execute(
        self, *args: str, label: str | None = None, cwd: Path | None = None
    ) -> tuple[str, str]:
        """Run a tracked command and return (stdout, stderr); raise on failure."""
        command = label or shlex.join(("git", *args))
        with self.tracker.track(command):
            code, stdout, stderr = await self._run(*args, cwd=cwd)
        if code != 0:
            message = stderr.strip() or stdout.strip() or f"exit code {code}"
            raise OperationError(command, message, stdout=stdout, stderr=stderr)
        return stdout, stderr

    async def _git(self, *args: str, label: str | None = None) -> str:
        self._require_open()
        stdout, _ = await self._execute(*args, label=label)
        return stdout

    async def _git_or(self, default, *args: str, label: str | None = None):
        """Run a read-style query, returning ``default`` when it fails."""
        try:
            return await self._git(*args, label=label)
        except OperationError as e:
            logger.debug("git_query_degraded", command=e.command, error=e.message)
            return default

    async def _batched(self, verb: tuple[str, ...], paths: list[str]) -> None:
        for batch in self._batches(paths):
            label = f"git {' '.join(verb)} -- {describe_paths(batch)}"
            await self._git(*verb, "--", *batch, label=label)

    # -- status & branches ---------------------------------------------------

    async def status(
        self, path: str | None = None, *, no_lock: bool = False
    ) -> RepositoryStatus:
        args: list[str] = ["--no-optional-locks"] if no_lock else []
        args.extend(_STATUS_ARGS)
        if path:
            args.extend(["--", path])
        status = parse_porcelain_status(await self._git(*args))
        self.current_branch = status.current_branch or None
        return status

    async def branch_local(self) -> list[BranchSummary]:
        stdout = await self._git_or(
            "", "for-each-ref", f"--format={LOCAL_BRANCH_FORMAT}", "refs/heads"
        )
        return parse_local_branches(stdout)

    async def remote_branches(self) -> list[str]:
        stdout = await self._git_or(
            "", "for-each-ref", "--format=%(refname:short)", "refs/remotes"
        )
        return parse_remote_branches(stdout)

    async def create_branch(
        self, branch_name: str, start_point: str | None = None
    ) -> None:
        args = ["branch", branch_name]
        if start_point:
            args.append(start_point)
        await self._git(*args)

    async def delete_branch(self, branch_name: str, *, force: bool = False) -> None:
        await self._git("branch", "-D" if force else "-d", branch_name)

    async def rename_branch(self, old_name: str, new_name: str) -> None:
        await self._git("branch", "-m", old_name, new_name)
        if self.current_branch == old_name:
            self.current_branch = new_name

    async def checkout_branch(self, branch_name: str) -> None:
        await self._git("checkout", branch_name)
        self.current_branch = branch_name

    async def get_ahead_behind(self, local_ref: str, remote_ref: str) -> AheadBehind:
        stdout = await self._git_or(
            None, "rev-list", "--left-right", "--count", f"{local_ref}...{remote_ref}"
        )
        if stdout is None:
            return AheadBehind.unknown()
        return parse_ahead_behind(stdout)

    # -- remotes ---------------------------------------------------------------

    async def get_origin_url(self) -> str:
        stdout = await self._git_or("", "remote", "get-url", self.config.default_remote)
        return stdout.strip()

    async def list_remotes(self) -> list[RemoteInfo]:
        return parse_remotes(await self._git_or("", "remote", "-v"))

    async def set_remote_url(self, remote_name: str, url: str) -> None:
        await self._git("remote", "set-url", remote_name, url)

    async def add_remote(self, remote_name: str, url: str) -> None:
        await self._git("remote", "add", remote_name, url)

    async def remove_remote(self, remote_name: str) -> None:
        await self._git("remote", "remove", remote_name)

    async def fetch(self, remote: str) -> None:
        await self._git("fetch", remote)

    async def pull(self, remote: str, branch: str) -> None:
        await self._git("pull", remote, branch)

    async def push(
        self, remote: str, refspec: str, options: Sequence[str] = ()
    ) -> str:
        self._require_open()
        stdout, stderr = await self._execute("push", remote, refspec, *options)
        return stdout + stderr

    async def reset_to_origin(self, branch: str) -> None:
        remote = self.config.default_remote
        await self._git("fetch", remote)
        await self._git("reset", "--hard", f"{remote}/{branch}")

    # -- stashes ---------------------------------------------------------------

    async def stash_list(self) -> list[StashEntry]:
        stdout = await self._git_or(
            "", "stash", "list", f"--format={STASH_LIST_FORMAT}"
        )
        return parse_stash_list(stdout)

    async def stash_push(
        self,
        message: str,
        file_paths: Sequence[str] | None = None,
        *,
        include_untracked: bool = False,
    ) -> None:
        args = ["stash", "push", "--include-untracked"] if include_untracked else ["stash", "push"]
        args.extend(["-m", message])
        label = None
        if file_paths:
            paths = list(file_paths)
            label = f"{shlex.join(('git', *args))} -- {describe_paths(paths)}"
            args.extend(["--", *paths])
        await self._git(*args, label=label)

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
        return await self._git_or("", "diff", f"{ref}^1", ref, "--", file_path)

    # -- index & working tree -------------------------------------------------

    async def add(self, file_paths: str | Sequence[str]) -> None:
        await self._batched(("add",), _as_list(file_paths))

    async def reset(self, file_paths: str | Sequence[str]) -> None:
        await self._batched(("reset", "-q"), _as_list(file_paths))

    async def restore(self, file_paths: Sequence[str]) -> None:
        await self._batched(("checkout",), list(file_paths))

    async def commit(self, message: str, *, amend: bool = False) -> None:
        args = ["commit", "-m", message]
        if amend:
            args.append("--amend")
        await self._git(*args)

    # -- history & content ----------------------------------------------------

    async def log(
        self, branch_name: str, max_count: int = 100, *, remote: str | None = None
    ) -> list[Commit]:
        remote = remote or self.config.default_remote
        try:
            stdout = await self._git(
                "log", branch_name, f"--max-count={max_count}", f"--format={LOG_FORMAT}", "--"
            )
        except OperationError:
            if await self._is_unborn(branch_name):
                return []
            raise
        if branch_name.startswith(f"{remote}/"):
            return parse_log(stdout, all_on_origin=True)
        return parse_log(stdout, unpushed=await self._unpushed(branch_name, remote))

    async def _is_unborn(self, branch_name: str) -> bool:
        """True when HEAD points at ``branch_name`` but it has no commits yet."""
        head = await self._git_or(None, "symbolic-ref", "--quiet", "--short", "HEAD")
        if head is None or head.strip() != branch_name:
            return False
        ref = await self._git_or(
            None, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"
        )
        return ref is None

    async def _unpushed(self, branch_name: str, remote: str) -> set[str] | None:
        """Hashes on ``branch_name`` missing from its remote copy, None if no copy."""
        remote_ref = f"refs/remotes/{remote}/{branch_name}"
        exists = await self._git_or(None, "rev-parse", "--verify", "--quiet", remote_ref)
        if exists is None:
            return None
        stdout = await self._git("rev-list", branch_name, f"^{remote_ref}", "--")
        return {line.strip() for line in stdout.splitlines() if line.strip()}

    async def contains_commit(self, ref: str, commit_hash: str) -> bool:
        self._require_open()
        with self.tracker.track(f"git merge-base --is-ancestor {commit_hash} {ref}"):
            code, _, _ = await self._run("merge-base", "--is-ancestor", commit_hash, ref)
        return code == 0

    async def get_commit_files(self, commit_hash: str) -> list[CommitFile]:
        stdout = await self._git_or(
            "",
            "diff-tree",
            "--no-commit-id",
            "--name-status",
            "-r",
            "-M",
            "--root",
            commit_hash,
        )
        return parse_name_status(stdout)

    async def diff(self, file_path: str, is_staged: bool = False) -> str:
        args = ["diff"]
        if is_staged:
            args.append("--cached")
        return await self._git_or("", *args, "--ignore-space-at-eol", "--", file_path)

    async def show(self, commit_hash: str, file_path: str) -> str:
        return await self._git_or(
            "", "show", "--format=", "--unified=3", commit_hash, "--", file_path
        )

    async def create_patch(
        self,
        file_paths: Sequence[str],
        output_path: Path | str,
        is_staged: bool = False,
    ) -> None:
        paths = list(file_paths)
        args = ["diff", "--cached"] if is_staged else ["diff"]
        label = f"git {' '.join(args)} -- {describe_paths(paths)}"
        patch = await self._git(*args, "--", *paths, label=label)
        try:
            Path(output_path).write_text(patch)
        except OSError as e:
            raise OperationError(f"write patch {output_path}", str(e)) from e

    async def clone(self, repo_url: str, parent_folder: Path | str, repo_name: str) -> Path:
        parent = Path(parent_folder).expanduser()
        target = parent / repo_name
        if not parent.is_dir():
            raise OperationError("git clone", f"Directory does not exist: {parent}")
        await self._execute("clone", repo_url, str(target), cwd=parent)
        logger.info("repository_cloned", url=repo_url, path=str(target))
        return target

    async def raw(self, args: Sequence[str]) -> str:
        return await self._git(*args)
