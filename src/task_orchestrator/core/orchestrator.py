# src/task_orchestrator/core/orchestrator.py

"""
Orchestrator facade.

Owns:
- the shared context passed to every task invocation,
- the task registry + scheduler,
- the snapshot store (runtime records, context, pause markers),
- the event bus callers subscribe to.

Task code cannot be persisted. Register definitions first, then call
initialize(): persisted runtime records are matched by id and re-attached to the
registered callables; records without a registered definition are dropped.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
import logging
import sys
import threading
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import Settings
from ..errors import OrchestratorError, OrchestratorStoppedError, PersistenceError, TaskError
from ..tasks.task_models import (
    Condition,
    OverflowPolicy,
    ResourceLocks,
    Task,
    TaskContext,
    TaskFn,
    TaskStatus,
    utcnow,
)
from ..tasks.task_registry import TaskRegistry
from ..tasks.task_scheduler import TaskScheduler, invoke_callable
from .events import EventBus, EventHandler, EventKind, EventStream, OrchestratorEvent
from .ports import ErrorHandler, StateStore
from .state import OrchestratorPhase, OrchestratorState, OrchestratorStatus
from .state_manager import StateManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestratorConfig:
    name: str = "Orchestrator"
    context: Any = None
    state_path: str | Path | None = None
    max_concurrent_tasks: int = 5
    default_timeout: float = 60.0
    default_retry_delay: float = 5.0
    overflow_policy: OverflowPolicy = OverflowPolicy.QUEUE
    queue_maxsize: int = 100
    event_history: int = 200
    error_handler: ErrorHandler | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> OrchestratorConfig:
        values: dict[str, Any] = {
            "name": settings.app_name,
            "state_path": settings.state_path,
            "max_concurrent_tasks": settings.max_concurrent_tasks,
            "default_timeout": settings.default_timeout,
            "default_retry_delay": settings.default_retry_delay,
            "overflow_policy": OverflowPolicy.from_raw(settings.overflow_policy),
            "queue_maxsize": settings.queue_maxsize,
            "event_history": settings.event_history,
        }
        values.update(overrides)
        return cls(**values)


class Orchestrator:
    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        state_store: StateStore | None = None,
    ) -> None:
        config = config or OrchestratorConfig()

        self._name = config.name or "Orchestrator"
        self._context: Any = config.context if config.context is not None else {}
        self._error_handler = config.error_handler

        self._events = EventBus(history_size=config.event_history)
        self._locks = ResourceLocks()
        self._registry = TaskRegistry()
        self._scheduler = TaskScheduler(
            self._registry,
            context_provider=lambda: self._context,
            on_event=self._on_scheduler_event,
            locks=self._locks,
            max_concurrent=config.max_concurrent_tasks,
            default_timeout=config.default_timeout,
            default_retry_delay=config.default_retry_delay,
            overflow_policy=OverflowPolicy(config.overflow_policy),
            queue_maxsize=config.queue_maxsize,
        )
        self._store: StateStore = state_store if state_store is not None else StateManager(config.state_path)

        self._phase = OrchestratorPhase.CREATED
        self._is_paused = False
        self._held: set[str] = set()
        self._start_time = None
        self._pause_time = None
        self._resume_time = None

        self._persist_enabled = False
        self._save_requested = False
        self._save_task: asyncio.Task | None = None
        self._write_lock = threading.Lock()
        self._generations = itertools.count(1)
        self._written_generation = 0
        self._callbacks: set[asyncio.Task] = set()

    # ---- properties ----

    @property
    def name(self) -> str:
        return self._name

    @property
    def phase(self) -> OrchestratorPhase:
        return self._phase

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def events(self) -> EventBus:
        return self._events

    # ---- lifecycle ----

    async def initialize(self) -> bool:
        """
        Load the previous snapshot (if any) and restore it onto the registered tasks.

        Returns True when a snapshot was restored. Persistence is enabled from here
        on, so a snapshot is never overwritten before it has been read.
        """
        self._ensure_not_stopped()
        if self._phase is not OrchestratorPhase.CREATED:
            return False

        try:
            saved = self._store.load_state()
        except PersistenceError as exc:
            self._report_persistence_error(exc)
            saved = None

        self._phase = OrchestratorPhase.IDLE
        self._persist_enabled = True
        if saved is None:
            return False

        self._restore_from_state(saved)
        return True

    async def start(self) -> None:
        """Arm every task (first start) or resume the ones held by pause()."""
        self._ensure_not_stopped()
        if self._phase is OrchestratorPhase.CREATED:
            await self.initialize()
        if self._phase is OrchestratorPhase.RUNNING:
            return

        now = utcnow()
        resumed = self._is_paused
        if resumed:
            self._resume_time = now
        else:
            self._start_time = now
        self._is_paused = False

        if not self._scheduler.active:
            self._scheduler.start()
        held, self._held = self._held, set()
        for task_id in held:
            if task_id in self._registry:
                self._scheduler.resume_task(task_id)

        self._phase = OrchestratorPhase.RUNNING
        logger.info("%s %s (%d tasks)", self._name, "resumed" if resumed else "started", len(self._registry))
        self._publish(EventKind.STARTED, resumed=resumed)
        await self._flush_state()

    async def pause(self) -> None:
        """
        Pause every task. In-flight executions are not interrupted; they finish
        (or time out) and record their outcome.
        """
        self._ensure_not_stopped()
        if self._phase is not OrchestratorPhase.RUNNING:
            logger.debug("pause() ignored in phase %s", self._phase.value)
            return

        self._is_paused = True
        self._pause_time = utcnow()
        self._held.update(self._scheduler.pause_all())
        self._phase = OrchestratorPhase.PAUSED
        logger.info("%s paused (%d tasks held)", self._name, len(self._held))
        self._publish(EventKind.PAUSED, held=sorted(self._held))
        await self._flush_state()

    async def stop(self) -> None:
        """Full teardown: cancel every schedule and execution, delete the snapshot."""
        if self._phase is OrchestratorPhase.STOPPED:
            return

        self._persist_enabled = False
        if self._save_task is not None:
            # Let a write already in a worker thread land before the snapshot is deleted.
            await asyncio.gather(self._save_task, return_exceptions=True)
            self._save_task = None
        with self._write_lock:
            self._written_generation = sys.maxsize

        await self._scheduler.shutdown()
        self._registry.clear()
        self._held.clear()

        try:
            self._store.clear_state()
        except PersistenceError as exc:
            self._report_persistence_error(exc)

        self._phase = OrchestratorPhase.STOPPED
        logger.info("%s stopped", self._name)
        self._publish(EventKind.STOPPED)

        if self._callbacks:
            await asyncio.gather(*list(self._callbacks), return_exceptions=True)
        await self._events.drain()
        self._events.close_streams()

    # ---- tasks ----

    def add_task(self, task: Task) -> Task:
        """
        Register (or redefine) a task. Raises ScheduleError for a bad definition, in
        which case nothing is registered. While the orchestrator is paused the new
        task is held paused until start().
        """
        self._ensure_not_stopped()
        hold = self._phase is OrchestratorPhase.PAUSED
        self._scheduler.add_task(task, paused=hold)
        if hold:
            self._held.add(task.id)
        else:
            self._held.discard(task.id)

        logger.info("Task %s added (%s)", task.id, task.schedule_kind)
        self._publish(EventKind.TASK_ADDED, task.id, task=task)
        self._request_save()
        return task

    def remove_task(self, task_id: str) -> bool:
        self._ensure_not_stopped()
        removed = self._scheduler.remove_task(task_id)
        self._held.discard(task_id)
        if removed is None:
            return False
        logger.info("Task %s removed", task_id)
        self._publish(EventKind.TASK_REMOVED, task_id)
        self._request_save()
        return True

    def pause_task(self, task_id: str) -> Task:
        self._ensure_not_stopped()
        task = self._scheduler.pause_task(task_id)
        # An explicit pause outlives the orchestrator-wide one.
        self._held.discard(task_id)
        self._request_save()
        return task

    def resume_task(self, task_id: str) -> bool:
        self._ensure_not_stopped()
        self._held.discard(task_id)
        if self._phase is OrchestratorPhase.PAUSED:
            # Stays paused with everything else; start() brings it back.
            task = self._scheduler.get_task(task_id)
            if task is None:
                raise KeyError(task_id)
            if task.status is TaskStatus.PAUSED:
                self._held.add(task_id)
            return False
        resumed = self._scheduler.resume_task(task_id)
        if resumed:
            self._request_save()
        return resumed

    async def run_task(self, task_id: str) -> Task | None:
        """Fire a task now, outside its schedule. None if it was skipped or dropped."""
        self._ensure_not_stopped()
        if self._phase is not OrchestratorPhase.RUNNING:
            raise OrchestratorError(f"cannot run tasks while {self._phase.value}")
        return await self._scheduler.run_now(task_id)

    def get_tasks(self) -> list[Task]:
        return self._scheduler.get_tasks()

    def get_task(self, task_id: str) -> Task | None:
        return self._scheduler.get_task(task_id)

    # ---- sugar constructors ----

    def add_interval(self, task_id: str, fn: TaskFn, interval: float, **options: Any) -> Task:
        return self.add_task(Task(id=task_id, fn=fn, interval=interval, **options))

    def add_cron(self, task_id: str, fn: TaskFn, expression: str, **options: Any) -> Task:
        return self.add_task(Task(id=task_id, fn=fn, cron=expression, **options))

    def add_one_time(self, task_id: str, fn: TaskFn, **options: Any) -> Task:
        """Runs once on the next tick; removes itself after the first successful run."""

        async def run_once(ctx: TaskContext) -> Any:
            result = await invoke_callable(fn, ctx)
            current = self._registry.get(task_id)
            if current is not None and current.fn is run_once and self._phase is not OrchestratorPhase.STOPPED:
                self.remove_task(task_id)
            return result

        options.setdefault("run_on_start", True)
        return self.add_task(Task(id=task_id, fn=run_once, **options))

    def add_conditional(
        self,
        task_id: str,
        fn: TaskFn,
        condition: Condition,
        check_interval: float,
        **options: Any,
    ) -> Task:
        return self.add_task(Task(id=task_id, fn=fn, condition=condition, interval=check_interval, **options))

    # ---- context ----

    def set_context(self, context: Any) -> None:
        self._ensure_not_stopped()
        self._context = context
        self._request_save()

    def update_context(self, updates: Mapping[str, Any] | None = None, **fields: Any) -> Any:
        """
        Merge values into the context in place (running tasks hold a reference to it).
        Mappings are updated key by key; other objects get attributes set.
        """
        self._ensure_not_stopped()
        merged = dict(updates or {})
        merged.update(fields)
        if isinstance(self._context, MutableMapping):
            self._context.update(merged)
        else:
            for key, value in merged.items():
                setattr(self._context, key, value)
        self._request_save()
        return self._context

    def get_context(self) -> Any:
        return self._context

    def lock(self, name: str = "context") -> asyncio.Lock:
        """Named lock shared with task bodies (`ctx.lock(name)`)."""
        return self._locks.get(name)

    # ---- state ----

    def get_state(self) -> OrchestratorState:
        return OrchestratorState(
            name=self._name,
            context=self._context,
            tasks=[task.to_record() for task in self._registry.list()],
            is_paused=self._is_paused,
            held_tasks=sorted(self._held),
            start_time=self._start_time,
            pause_time=self._pause_time,
            resume_time=self._resume_time,
        )

    def get_status(self) -> OrchestratorStatus:
        sched = self._scheduler.status()
        return OrchestratorStatus(
            name=self._name,
            phase=self._phase,
            is_paused=self._is_paused,
            task_count=len(self._registry),
            running_tasks=tuple(sched["running"]),
            queued_attempts=sched["queued"],
            armed_tasks=tuple(sched["armed"]),
            start_time=self._start_time,
            pause_time=self._pause_time,
            resume_time=self._resume_time,
        )

    def save_state(self) -> bool:
        """
        Write the snapshot now, on the calling thread. A failure is reported as an
        "error" event; the in-memory state stays authoritative. Returns True when written.
        """
        if not self._persist_enabled or not self._store.enabled:
            return False
        snapshot = self._snapshot()
        if snapshot is None:
            return False
        try:
            return self._write(*snapshot)
        except PersistenceError as exc:
            self._report_persistence_error(exc)
            return False

    # ---- events ----

    def subscribe(
        self,
        handler: EventHandler,
        kinds: Iterable[EventKind | str] | None = None,
        *,
        name: str | None = None,
    ) -> str:
        return self._events.subscribe(handler, kinds, name=name)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._events.unsubscribe(subscription_id)

    def stream(self, maxsize: int = 100, kinds: Iterable[EventKind | str] | None = None) -> EventStream:
        return self._events.stream(maxsize, kinds)

    def history(self, limit: int | None = None) -> list[OrchestratorEvent]:
        return self._events.history(limit)

    # ---- internals ----

    def _ensure_not_stopped(self) -> None:
        if self._phase is OrchestratorPhase.STOPPED:
            raise OrchestratorStoppedError(f"{self._name} is stopped")

    def _publish(self, kind: EventKind, task_id: str | None = None, **payload: Any) -> None:
        self._events.publish(OrchestratorEvent(kind=kind, task_id=task_id, payload=payload))

    def _on_scheduler_event(self, kind: EventKind, task: Task, payload: dict[str, Any]) -> None:
        self._publish(kind, task.id, task=task, **payload)

        if kind is EventKind.TASK_ERROR:
            self._call_error_handler(payload["error"], task)
        if kind in (EventKind.TASK_COMPLETED, EventKind.TASK_ERROR):
            self._request_save()

    def _call_error_handler(self, error: TaskError, task: Task) -> None:
        handler = self._error_handler
        if handler is None:
            return
        try:
            result = handler(error, task)
        except Exception:
            logger.exception("Error handler failed for task %s", task.id)
            return
        if inspect.isawaitable(result):
            self._track(result, f"error handler for {task.id}")

    def _track(self, awaitable: Any, label: str) -> None:
        async def runner() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("%s failed", label)

        cb = asyncio.get_running_loop().create_task(runner())
        self._callbacks.add(cb)
        cb.add_done_callback(self._callbacks.discard)

    def _report_persistence_error(self, exc: PersistenceError) -> None:
        logger.warning("%s: persistence failed: %s", self._name, exc)
        self._publish(EventKind.ERROR, error=exc)

    def _request_save(self) -> None:
        """
        Coalesce saves requested within one loop iteration into a single write,
        done in a worker thread so a large context never stalls the timers.
        """
        if not self._persist_enabled or not self._store.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save_state()
            return
        self._save_requested = True
        if self._save_task is None or self._save_task.done():
            self._save_task = loop.create_task(self._save_worker(), name=f"save:{self._name}")

    async def _save_worker(self) -> None:
        while self._save_requested and self._persist_enabled:
            self._save_requested = False
            await self._flush_state()

    async def _flush_state(self) -> bool:
        if not self._persist_enabled or not self._store.enabled:
            return False
        snapshot = self._snapshot()
        if snapshot is None:
            return False
        try:
            return await asyncio.to_thread(self._write, *snapshot)
        except PersistenceError as exc:
            self._report_persistence_error(exc)
            return False

    def _snapshot(self) -> tuple[int, OrchestratorState] | None:
        """State taken on the loop; the context is copied so tasks may keep mutating it."""
        state = self.get_state()
        try:
            state.context = copy.deepcopy(state.context)
        except Exception as exc:
            self._report_persistence_error(PersistenceError(f"Cannot snapshot context: {exc!r}"))
            return None
        return next(self._generations), state

    def _write(self, generation: int, state: OrchestratorState) -> bool:
        # Runs on any thread. An older snapshot never overwrites a newer one.
        with self._write_lock:
            if generation < self._written_generation:
                return False
            self._store.save_state(state)
            self._written_generation = generation
        return True

    def _restore_from_state(self, state: OrchestratorState) -> None:
        if state.context is not None:
            self._context = state.context
        self._is_paused = state.is_paused
        self._start_time = state.start_time
        self._pause_time = state.pause_time
        self._resume_time = state.resume_time

        restored: list[str] = []
        dropped: list[str] = []
        for record in state.tasks:
            task_id = record["id"]
            task = self._registry.get(task_id)
            if task is None:
                logger.warning("Dropping persisted record of unregistered task %s", task_id)
                dropped.append(task_id)
                continue
            task.apply_runtime_record(record)
            restored.append(task_id)

        self._held = {t for t in state.held_tasks if t in self._registry}
        logger.info(
            "%s restored: %d tasks, %d dropped, paused=%s",
            self._name,
            len(restored),
            len(dropped),
            self._is_paused,
        )
        self._publish(EventKind.STATE_RESTORED, restored=restored, dropped=dropped, is_paused=self._is_paused)
