"""Lightweight event bus for repository state observers."""

from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()

# Event name constants
COMMAND_STARTED = "command.started"
COMMAND_FINISHED = "command.finished"
STATUS_REFRESHED = "status.refreshed"
BRANCHES_REFRESHED = "branches.refreshed"
STASHES_REFRESHED = "stashes.refreshed"
COMMITS_LOADED = "commits.loaded"
REPOSITORY_REFRESHED = "repository.refreshed"
OPERATION_FAILED = "operation.failed"
BRANCH_SWITCH_REQUESTED = "branch_switch.requested"
BRANCH_SWITCH_RESOLVED = "branch_switch.resolved"
POLLING_STARTED = "polling.started"
POLLING_STOPPED = "polling.stopped"


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def has_subscribers(self, event_name: str) -> bool:
        return bool(self._handlers.get(event_name))

    async def emit(self, event: Event) -> None:
        for handler in list(self._handlers.get(event.name, [])):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_error",
                    event_name=event.name,
                    handler_name=getattr(handler, "__name__", repr(handler)),
                )
