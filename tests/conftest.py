"""Shared fixtures: environment isolation and throwaway git repositories."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from gitdock.core.config import GitDockConfig
from gitdock.core.events import EventBus

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

BACKENDS = ["cli", "gitpython"]


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Prevent .env file and shell env from leaking into tests."""
    monkeypatch.setitem(GitDockConfig.model_config, "env_file", None)
    for key in list(os.environ):
        if key.startswith("GITDOCK_"):
            monkeypatch.delenv(key, raising=False)
    # Keep user/system git configuration out of real-repository tests
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)


@pytest.fixture
def config(tmp_path):
    return GitDockConfig(
        snapshot_dir=tmp_path / "snapshots",
        poll_interval_seconds=0.05,
        disposition_timeout_seconds=2.0,
    )


@pytest.fixture
def event_bus():
    return EventBus()


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def init_repo(path: Path, branch: str = "main") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q", "-b", branch)
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    return path


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    target = repo / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(repo, "add", "--", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD").strip()


@pytest.fixture
def repo(tmp_path):
    """A repository on main with a single commit."""
    path = init_repo(tmp_path / "repo")
    commit_file(path, "README.md", "hello\n", "Initial commit")
    return path


@pytest.fixture
def empty_repo(tmp_path):
    """A freshly initialized repository without commits."""
    return init_repo(tmp_path / "empty")


@pytest.fixture
def remote_pair(tmp_path):
    """A bare origin plus a clone with one pushed commit.

    Returns (origin_path, clone_path).
    """
    origin = tmp_path / "origin.git"
    subprocess.run(
        ["git", "init", "-q", "--bare", "-b", "main", str(origin)],
        check=True,
        capture_output=True,
    )
    clone = init_repo(tmp_path / "clone")
    commit_file(clone, "README.md", "hello\n", "Initial commit")
    git(clone, "remote", "add", "origin", str(origin))
    git(clone, "push", "-q", "-u", "origin", "main")
    return origin, clone
