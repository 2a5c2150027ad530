"""In-process event bus used by the scheduler, pool and garbage collector."""

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import StrEnum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class Event(StrEnum):
    TASK_QUEUED = "task.queued"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_RETRYING = "task.retrying"
    TASK_TIMEOUT = "task.timeout"
    TASK_CANCELLED = "task.cancelled"

    WORKER_CREATED = "worker.created"
    WORKER_ERROR = "worker.error"
    WORKER_ALLOCATED = "worker.allocated"
    WORKER_RELEASED = "worker.released"
    WORKER_DESTROYED = "worker.destroyed"


Handler = Callable[[dict[str, Any]], Awaitable[None] | None]


class EventBus:
    """Publish/subscribe with two emission modes.

    ``emit`` schedules every listener on the running loop and returns
    immediately. ``emit_async`` runs listeners one after another, in
    registration order, and returns once all of them have finished.
    A failing listener is logged and never stops the others.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        self._handlers[event] = [h for h in self._handlers[event] if h is not handler]

    def clear(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        """Fire-and-forget delivery. Requires a running event loop."""
        payload = payload or {}
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            return
        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._call(event, handler, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def emit_async(self, event: str, payload: dict[str, Any] | None = None) -> None:
        """Deliver to every listener sequentially and wait for all of them."""
        payload = payload or {}
        for handler in list(self._handlers.get(event, [])):
            await self._call(event, handler, payload)

    async def drain(self) -> None:
        """Wait for fire-and-forget deliveries, including ones they trigger."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _call(self, event: str, handler: Handler, payload: dict[str, Any]) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Listener %s failed for event %s",
                getattr(handler, "__qualname__", handler),
                event,
            )
