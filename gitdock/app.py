"""Bootstrap: wires adapters, synchronizers and storage together."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from gitdock.core.config import GitDockConfig
from gitdock.core.synchronizer import RepositoryStateSynchronizer
from gitdock.core.tracker import CommandTracker, event_bus_observer
from gitdock.git.factory import adapter_class, create_adapter
from gitdock.storage.memory import MemorySnapshotStore
from gitdock.storage.snapshot import SnapshotStore

if TYPE_CHECKING:
    from gitdock.core.events import EventBus
    from gitdock.storage.base import SnapshotBackend

logger = structlog.get_logger()


def configure_logging(config: GitDockConfig) -> None:
    """Set up structlog with console output and optional rotating JSON file handler."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(config.log_level.upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
        )
    )
    root_logger.addHandler(console_handler)

    # JSON lines for machine parsing
    if config.log_dir is not None:
        log_dir = config.log_dir.expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "gitdock.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
            )
        )
        root_logger.addHandler(file_handler)

    # GitPython logs every spawned command at DEBUG
    logging.getLogger("git").setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_snapshot_store(config: GitDockConfig) -> SnapshotBackend:
    if config.snapshot_dir is None:
        return MemorySnapshotStore()
    return SnapshotStore(config.snapshot_dir, max_age_days=config.snapshot_max_age_days)


async def open_repository(
    repo_path: Path | str,
    config: GitDockConfig | None = None,
    *,
    event_bus: EventBus | None = None,
    snapshots: SnapshotBackend | None = None,
) -> RepositoryStateSynchronizer:
    """Open ``repo_path`` with the configured backend and wrap it in a synchronizer.

    Raises RepositoryOpenError when the path is not a usable working tree.
    """
    if config is None:
        config = GitDockConfig()
    tracker = CommandTracker()
    if event_bus is not None:
        tracker.add_observer(event_bus_observer(event_bus, repo=str(repo_path)))
    adapter = await create_adapter(
        repo_path, config.backend, tracker=tracker, config=config
    )
    return RepositoryStateSynchronizer(
        adapter,
        config,
        event_bus=event_bus,
        snapshots=snapshots if snapshots is not None else build_snapshot_store(config),
    )


async def clone_repository(
    repo_url: str,
    parent_folder: Path | str,
    repo_name: str,
    config: GitDockConfig | None = None,
    *,
    event_bus: EventBus | None = None,
) -> RepositoryStateSynchronizer:
    """Clone ``repo_url`` into ``parent_folder/repo_name`` and open the result."""
    if config is None:
        config = GitDockConfig()
    cloner = adapter_class(config.backend)(parent_folder, config=config)
    target = await cloner.clone(repo_url, parent_folder, repo_name)
    return await open_repository(target, config, event_bus=event_bus)
