"""Command lifecycle tracking behind the running-command indicator."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from gitdock.core.events import COMMAND_FINISHED, COMMAND_STARTED, Event

if TYPE_CHECKING:
    from gitdock.core.events import EventBus

logger = structlog.get_logger()


class CommandRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    command: str
    start_time: float
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CommandState(BaseModel):
    """Observer payload for one command transition."""

    model_config = ConfigDict(frozen=True)

    running: bool
    id: int
    command: str
    elapsed: float = 0.0
    cancelled: bool = False


CommandObserver = Callable[[CommandState], Any]


class CommandTracker:
    """Records every outgoing command between begin() and end().

    Ids increase monotonically per tracker. Observers are never called from
    inside begin()/end(); delivery is scheduled on the running loop.
    """

    def __init__(self, observer: CommandObserver | None = None) -> None:
        self._next_id = 0
        self._pending: dict[int, CommandRecord] = {}
        self._observers: list[CommandObserver] = [observer] if observer else []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def running(self) -> list[CommandRecord]:
        return list(self._pending.values())

    @property
    def is_busy(self) -> bool:
        return bool(self._pending)

    def add_observer(self, observer: CommandObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: CommandObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def begin(self, command: str) -> int:
        command_id = self._next_id
        self._next_id += 1
        self._pending[command_id] = CommandRecord(
            id=command_id, command=command, start_time=time.monotonic()
        )
        logger.debug("git_command_started", command=command, command_id=command_id)
        self._notify(CommandState(running=True, id=command_id, command=command))
        return command_id

    def end(self, command_id: int) -> None:
        record = self._pending.pop(command_id, None)
        if record is None:
            return
        elapsed = time.monotonic() - record.start_time
        logger.debug(
            "git_command_finished",
            command=record.command,
            command_id=command_id,
            duration=round(elapsed, 3),
        )
        self._notify(
            CommandState(
                running=False, id=command_id, command=record.command, elapsed=elapsed
            )
        )

    @contextmanager
    def track(self, command: str) -> Iterator[int]:
        command_id = self.begin(command)
        try:
            yield command_id
        finally:
            self.end(command_id)

    def clear(self) -> int:
        """Drop every live record without waiting for the commands themselves.

        Returns the number of records cleared. A later end() for one of them
        is a no-op.
        """
        records = list(self._pending.values())
        self._pending.clear()
        now = time.monotonic()
        for record in records:
            self._notify(
                CommandState(
                    running=False,
                    id=record.id,
                    command=record.command,
                    elapsed=now - record.start_time,
                    cancelled=True,
                )
            )
        if records:
            logger.info("git_commands_cleared", count=len(records))
        return len(records)

    def _notify(self, state: CommandState) -> None:
        if not self._observers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for observer in list(self._observers):
            if loop is None:
                self._deliver(observer, state)
            else:
                loop.call_soon(self._deliver, observer, state)

    def _deliver(self, observer: CommandObserver, state: CommandState) -> None:
        try:
            result = observer(state)
        except Exception:
            logger.exception("command_observer_error", command_id=state.id)
            return
        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run an async observer on
            if inspect.iscoroutine(result):
                result.close()
            return
        task = asyncio.ensure_future(result, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("command_observer_error", error=str(task.exception()))


def event_bus_observer(event_bus: EventBus, repo: str = "") -> CommandObserver:
    """Build an observer that republishes command transitions on the event bus."""

    async def _observer(state: CommandState) -> None:
        name = COMMAND_STARTED if state.running else COMMAND_FINISHED
        await event_bus.emit(
            Event(name=name, data={**state.model_dump(), "repo": repo})
        )

    return _observer
