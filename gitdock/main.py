"""CLI entry point for gitdock."""

import asyncio
import signal
import sys
from pathlib import Path

import structlog

from gitdock.app import build_snapshot_store, configure_logging, open_repository
from gitdock.core.config import GitDockConfig
from gitdock.core.events import OPERATION_FAILED, STATUS_REFRESHED, Event, EventBus
from gitdock.core.synchronizer import RepositoryStateSynchronizer
from gitdock.exceptions import RepositoryOpenError

logger = structlog.get_logger()


def _summary(sync: RepositoryStateSynchronizer) -> str:
    lines = [f"{sync.repo_path} [{sync.adapter.backend_name}]"]
    branch = sync.current_branch or "(no branch)"
    ab = sync.branch_status.get(branch)
    tracking = f" ahead {ab.ahead}, behind {ab.behind}" if ab and ab.is_known else ""
    lines.append(f"  on {branch}{tracking}")
    lines.append(
        f"  {len(sync.staged)} staged, {len(sync.unstaged)} unstaged, "
        f"{len(sync.status.conflicts)} conflicted"
    )
    lines.append(f"  {len(sync.branches)} local branches, {len(sync.stashes)} stashes")
    if sync.origin_url:
        lines.append(f"  origin {sync.origin_url}")
    return "\n".join(lines)


async def _print_status_changes(event: Event) -> None:
    data = event.data
    print(
        f"{data['repo']}: {data['branch']} "
        f"({data['staged']} staged, {data['unstaged']} unstaged, {data['conflicts']} conflicted)"
    )


async def _print_failures(event: Event) -> None:
    print(f"{event.data['repo']}: {event.data['operation']} failed: {event.data['error']}",
          file=sys.stderr)


async def _run(config: GitDockConfig) -> None:
    event_bus = EventBus()
    event_bus.subscribe(OPERATION_FAILED, _print_failures)
    snapshots = build_snapshot_store(config)
    paths = config.repositories or [Path.cwd()]

    synchronizers: list[RepositoryStateSynchronizer] = []
    for path in paths:
        try:
            sync = await open_repository(path, config, event_bus=event_bus, snapshots=snapshots)
        except RepositoryOpenError as e:
            logger.error("repository_open_failed", repo=str(path), error=str(e))
            print(f"Cannot open {path}: {e}", file=sys.stderr)
            continue
        await sync.load()
        if sync.using_snapshot:
            await sync.refresh()
        synchronizers.append(sync)
        print(_summary(sync))

    if not synchronizers:
        print("No repository could be opened.", file=sys.stderr)
        sys.exit(1)

    event_bus.subscribe(STATUS_REFRESHED, _print_status_changes)
    for sync in synchronizers:
        await sync.start_polling()
    logger.info("gitdock_watching", repositories=[str(s.repo_path) for s in synchronizers])

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        logger.info("gitdock_shutting_down")
        for sync in synchronizers:
            await sync.close()
        print("\nShutdown complete.")


async def main() -> None:
    try:
        config = GitDockConfig()
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print("Set GITDOCK_REPOSITORIES or create a .env file.", file=sys.stderr)
        sys.exit(1)

    configure_logging(config)
    await _run(config)


def run() -> None:
    asyncio.run(main())
