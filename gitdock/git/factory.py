"""Backend selection by name."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from gitdock.core.config import DEFAULT_BACKEND
from gitdock.core.tracker import CommandObserver, CommandTracker

if TYPE_CHECKING:
    from gitdock.core.config import GitDockConfig
    from gitdock.git.adapter import GitAdapter

logger = structlog.get_logger()


def _load_cli() -> type[GitAdapter]:
    from gitdock.git.cli import CliGitAdapter

    return CliGitAdapter


def _load_gitpython() -> type[GitAdapter]:
    from gitdock.git.library import GitPythonAdapter

    return GitPythonAdapter


_BACKENDS: dict[str, Callable[[], type[GitAdapter]]] = {
    "cli": _load_cli,
    "gitpython": _load_gitpython,
}

_ALIASES = {
    "git": "cli",
    "subprocess": "cli",
    "library": "gitpython",
    "lib": "gitpython",
}


def available_backends() -> list[str]:
    return list(_BACKENDS)


def resolve_backend(name: str | None) -> str:
    """Map a user-supplied backend name to a registered one, falling back to the default."""
    key = (name or "").strip().lower()
    key = _ALIASES.get(key, key)
    if key not in _BACKENDS:
        logger.warning("unknown_git_backend", backend=name, fallback=DEFAULT_BACKEND)
        return DEFAULT_BACKEND
    return key


def adapter_class(backend: str | None = DEFAULT_BACKEND) -> type[GitAdapter]:
    return _BACKENDS[resolve_backend(backend)]()


async def create_adapter(
    repo_path: Path | str,
    backend: str | None = DEFAULT_BACKEND,
    *,
    tracker: CommandTracker | None = None,
    observer: CommandObserver | None = None,
    config: GitDockConfig | None = None,
) -> GitAdapter:
    """Build and open an adapter for ``repo_path``.

    Raises RepositoryOpenError when the path is not a usable working tree.
    """
    cls = adapter_class(backend)
    if tracker is None:
        tracker = CommandTracker(observer)
    elif observer is not None:
        tracker.add_observer(observer)

    adapter = cls(repo_path, tracker=tracker, config=config)
    await adapter.open()
    logger.info("git_adapter_opened", backend=cls.backend_name, repo=str(adapter.repo_path))
    return adapter
