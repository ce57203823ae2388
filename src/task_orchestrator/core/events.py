# src/task_orchestrator/core/events.py

"""
Lifecycle notifications.

Two ways to consume them:
- observers: `bus.subscribe(handler, kinds=...)`; sync or async callables,
- a fan-out channel: `async for event in bus.stream(): ...`.

A failing handler is logged and never affects the engine or other handlers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    TASK_ADDED = "task_added"
    TASK_REMOVED = "task_removed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_ERROR = "task_error"
    TASK_QUEUED = "task_queued"
    TASK_DROPPED = "task_dropped"
    TASK_SKIPPED = "task_skipped"

    STARTED = "started"
    PAUSED = "paused"
    STOPPED = "stopped"
    STATE_RESTORED = "state_restored"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class OrchestratorEvent:
    kind: EventKind
    task_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


EventHandler = Callable[[OrchestratorEvent], Any]


@dataclass(slots=True)
class _Subscription:
    subscription_id: str
    handler: EventHandler
    kinds: frozenset[EventKind] | None
    name: str


class EventStream:
    """
    One consumer's view of the bus. Registered on creation, so nothing published
    after `bus.stream()` returns is missed. When the consumer falls behind, the
    oldest buffered events are discarded.
    """

    _CLOSED = object()

    def __init__(self, bus: EventBus, maxsize: int, kinds: frozenset[EventKind] | None) -> None:
        self._bus = bus
        self._kinds = kinds
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed = False

    def _offer(self, event: OrchestratorEvent) -> None:
        if self._closed or (self._kinds is not None and event.kind not in self._kinds):
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._streams.discard(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> OrchestratorEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class EventBus:
    def __init__(self, history_size: int = 200) -> None:
        self._subscriptions: list[_Subscription] = []
        self._streams: set[EventStream] = set()
        self._history: deque[OrchestratorEvent] = deque(maxlen=max(0, history_size))
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: EventHandler,
        kinds: Iterable[EventKind | str] | None = None,
        *,
        name: str | None = None,
    ) -> str:
        """Register an observer. `kinds=None` means every event. Returns a subscription id."""
        sub = _Subscription(
            subscription_id=uuid.uuid4().hex,
            handler=handler,
            kinds=frozenset(EventKind(k) for k in kinds) if kinds is not None else None,
            name=name or getattr(handler, "__qualname__", repr(handler)),
        )
        self._subscriptions.append(sub)
        logger.debug("Subscribed %s to %s", sub.name, sorted(sub.kinds) if sub.kinds else "*")
        return sub.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        for i, sub in enumerate(self._subscriptions):
            if sub.subscription_id == subscription_id:
                self._subscriptions.pop(i)
                return True
        return False

    def stream(self, maxsize: int = 100, kinds: Iterable[EventKind | str] | None = None) -> EventStream:
        wanted = frozenset(EventKind(k) for k in kinds) if kinds is not None else None
        stream = EventStream(self, maxsize, wanted)
        self._streams.add(stream)
        return stream

    def publish(self, event: OrchestratorEvent) -> None:
        self._history.append(event)

        for sub in list(self._subscriptions):
            if sub.kinds is not None and event.kind not in sub.kinds:
                continue
            try:
                result = sub.handler(event)
            except Exception:
                logger.exception("Event handler %s failed on %s", sub.name, event.kind.value)
                continue
            if inspect.isawaitable(result):
                self._schedule_handler(sub, result)

        for stream in list(self._streams):
            stream._offer(event)

    def _schedule_handler(self, sub: _Subscription, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async handler %s called without a running loop; skipped", sub.name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(self._run_handler(sub, awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_handler(sub: _Subscription, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Async event handler %s failed", sub.name)

    async def drain(self) -> None:
        """Wait for async handlers that are still running."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def history(self, limit: int | None = None) -> list[OrchestratorEvent]:
        events = list(self._history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def close_streams(self) -> None:
        for stream in list(self._streams):
            stream.close()
