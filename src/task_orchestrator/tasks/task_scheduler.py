# src/task_orchestrator/tasks/task_scheduler.py

from __future__ import annotations

"""
Task scheduler.

Decides *when* a task fires and *whether* an attempt may run:
- one timer coroutine per armed task (interval or cron),
- a fixed pool of worker coroutines (= concurrency bound) fed by a priority queue,
- per-attempt timeout, retry-after-failure, single-flight per task id.

Event order for one fire:
    enabled -> capacity -> condition -> single-flight -> enqueue -> execute -> complete

The scheduler only reports what happened through `on_event`; persistence and
fan-out belong to the orchestrator.
"""

import asyncio
import inspect
import itertools
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.events import EventKind
from ..errors import ScheduleError, TaskError, TaskExecutionError, TaskTimeoutError
from . import cron as cron_expr
from .task_models import (
    OverflowPolicy,
    ResourceLocks,
    Task,
    TaskContext,
    TaskStatus,
    read_only_view,
    utcnow,
)
from .task_registry import TaskRegistry

logger = logging.getLogger(__name__)

SchedulerListener = Callable[[EventKind, Task, dict[str, Any]], None]


async def invoke_callable(fn: Callable[..., Any], *args: Any) -> Any:
    """
    Call a task body or predicate.

    Coroutine functions are awaited on the loop; plain callables run in a worker
    thread so a blocking body never stalls other timers. An awaitable returned by a
    plain callable is awaited too.
    """
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def evaluate_condition(condition: Callable[..., Any], ctx: TaskContext) -> bool:
    # Predicates are expected to be cheap: sync ones run inline on the loop.
    result = condition(ctx)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


def _consume_outcome(fut: asyncio.Future) -> None:
    # Abandoned (timed out) bodies may still fail later: retrieve the exception.
    if not fut.cancelled():
        fut.exception()


@dataclass(order=True, slots=True)
class _WorkItem:
    sort_key: tuple[float, int]
    task_id: str = field(compare=False)
    reason: str = field(compare=False)
    retry: bool = field(default=False, compare=False)
    waiter: asyncio.Future | None = field(default=None, compare=False)


class TaskScheduler:
    def __init__(
        self,
        registry: TaskRegistry,
        *,
        context_provider: Callable[[], Any],
        on_event: SchedulerListener | None = None,
        locks: ResourceLocks | None = None,
        max_concurrent: int = 5,
        default_timeout: float = 60.0,
        default_retry_delay: float = 5.0,
        overflow_policy: OverflowPolicy = OverflowPolicy.QUEUE,
        queue_maxsize: int = 100,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if default_timeout <= 0:
            raise ValueError("default_timeout must be > 0")

        self._registry = registry
        self._context_provider = context_provider
        self._on_event = on_event
        self._locks = locks or ResourceLocks()

        self.max_concurrent = int(max_concurrent)
        self.default_timeout = float(default_timeout)
        self.default_retry_delay = max(0.0, float(default_retry_delay))
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self.queue_maxsize = max(int(queue_maxsize), self.max_concurrent)

        self._timers: dict[str, asyncio.Task] = {}
        self._next_due: dict[str, datetime] = {}
        self._retries: dict[str, asyncio.TimerHandle] = {}
        self._fires: set[asyncio.Task] = set()
        self._waiters: set[asyncio.Future] = set()

        self._running: set[str] = set()
        self._queued: Counter[str] = Counter()
        self._queue: asyncio.PriorityQueue[_WorkItem] | None = None
        self._workers: list[asyncio.Task] = []
        self._seq = itertools.count()
        self._active = False

    # ---- lifecycle ----

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Spin up the worker pool and arm every enabled, non-paused task. Needs a running loop."""
        if self._active:
            return
        loop = asyncio.get_running_loop()
        self._queue = asyncio.PriorityQueue(maxsize=self.queue_maxsize)
        self._workers = [
            loop.create_task(self._worker(i), name=f"task-worker-{i}") for i in range(self.max_concurrent)
        ]
        self._active = True
        for task in self._registry.list():
            self._arm(task)
        logger.info(
            "Scheduler started workers=%d policy=%s tasks=%d",
            self.max_concurrent,
            self.overflow_policy.value,
            len(self._registry),
        )

    async def shutdown(self) -> None:
        """Cancel every timer, pending retry, queued attempt and in-flight execution."""
        self._active = False
        for task_id in list(self._timers):
            self._disarm(task_id)
        for task_id in list(self._retries):
            self._cancel_retry(task_id)

        pending = [*self._fires, *self._workers]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()
        self._fires.clear()
        self._workers = []
        self._running.clear()
        self._queued.clear()
        self._queue = None
        logger.info("Scheduler shut down")

    # ---- task management ----

    def add_task(self, task: Task, *, paused: bool = False) -> Task:
        task.validate()
        if task.id in self._registry:
            self._disarm(task.id)
            self._cancel_retry(task.id)
        self._registry.add(task)
        if paused:
            task.status = TaskStatus.PAUSED
        self._arm(task)
        return task

    def remove_task(self, task_id: str) -> Task | None:
        self._disarm(task_id)
        self._cancel_retry(task_id)
        return self._registry.remove(task_id)

    def pause_task(self, task_id: str) -> Task:
        task = self._require(task_id)
        self._disarm(task_id)
        self._cancel_retry(task_id)
        task.status = TaskStatus.PAUSED
        task.next_execution_time = None
        logger.debug("Task %s paused", task_id)
        return task

    def resume_task(self, task_id: str) -> bool:
        """Re-arm a paused task from the current time. Returns False if it was not paused."""
        task = self._require(task_id)
        if task.status is not TaskStatus.PAUSED:
            return False
        task.status = TaskStatus.IDLE
        self._arm(task)
        logger.debug("Task %s resumed", task_id)
        return True

    def pause_all(self) -> list[str]:
        paused: list[str] = []
        for task in self._registry.list():
            if task.status is not TaskStatus.PAUSED:
                self.pause_task(task.id)
                paused.append(task.id)
        return paused

    def get_task(self, task_id: str) -> Task | None:
        return self._registry.get(task_id)

    def get_tasks(self) -> list[Task]:
        return self._registry.list()

    async def run_now(self, task_id: str) -> Task | None:
        """
        Fire a task immediately, outside its schedule.

        Goes through the same checks as a timer fire. Returns the task once the
        attempt has finished, or None if it was skipped or dropped.
        """
        self._require(task_id)
        if not self._active:
            raise RuntimeError("scheduler is not running")
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        self._start_fire(task_id, "manual", waiter)
        return await waiter

    def status(self) -> dict[str, Any]:
        return {
            "running": sorted(self._running),
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "armed": sorted(self._timers),
        }

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    # ---- arming ----

    def _require(self, task_id: str) -> Task:
        task = self._registry.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    def _arm(self, task: Task) -> None:
        self._disarm(task.id)
        if not self._active or not task.enabled or task.status is TaskStatus.PAUSED:
            return

        loop = asyncio.get_running_loop()
        if task.interval is not None:
            self._timers[task.id] = loop.create_task(
                self._interval_loop(task.id, float(task.interval)), name=f"timer:{task.id}"
            )
        elif task.cron is not None:
            self._timers[task.id] = loop.create_task(
                self._cron_loop(task.id, task.cron), name=f"cron:{task.id}"
            )

        if task.interval is not None:
            self._next_due[task.id] = utcnow() + timedelta(seconds=float(task.interval))
        elif task.cron is not None:
            self._next_due[task.id] = cron_expr.next_fire_time(task.cron)
        task.next_execution_time = self._next_due.get(task.id)

        if task.run_on_start:
            self._start_fire(task.id, "run_on_start")

    def _disarm(self, task_id: str) -> None:
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        self._next_due.pop(task_id, None)

    def _cancel_retry(self, task_id: str) -> None:
        handle = self._retries.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    async def _interval_loop(self, task_id: str, interval: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while True:
            deadline += interval
            now = loop.time()
            if deadline < now:
                # Fell behind (blocked loop): skip missed ticks instead of bursting.
                deadline = now
            self._next_due[task_id] = utcnow() + timedelta(seconds=deadline - now)
            await asyncio.sleep(deadline - now)
            self._start_fire(task_id, "interval")

    async def _cron_loop(self, task_id: str, expression: str) -> None:
        base = utcnow()
        while True:
            nxt = cron_expr.next_fire_time(expression, base)
            self._next_due[task_id] = nxt
            await asyncio.sleep(max(0.0, (nxt - utcnow()).total_seconds()))
            # Never compute from before the instant just fired (early wake-ups).
            base = max(utcnow(), nxt)
            self._start_fire(task_id, "cron")

    def _update_next_execution_time(self, task: Task) -> None:
        if task.status is TaskStatus.PAUSED:
            task.next_execution_time = None
            return
        if task.id in self._timers:
            due = self._next_due.get(task.id)
            if due is not None and due > utcnow():
                task.next_execution_time = due
                return
        if task.interval is not None:
            task.next_execution_time = utcnow() + timedelta(seconds=float(task.interval))
        elif task.cron is not None:
            try:
                task.next_execution_time = cron_expr.next_fire_time(task.cron)
            except ScheduleError:
                task.next_execution_time = None
        else:
            task.next_execution_time = None

    # ---- fire path ----

    def _start_fire(self, task_id: str, reason: str, waiter: asyncio.Future | None = None) -> None:
        fire = asyncio.get_running_loop().create_task(self._fire(task_id, reason, waiter))
        self._fires.add(fire)
        fire.add_done_callback(self._fires.discard)

    def _resolve(self, waiter: asyncio.Future | None, value: Task | None) -> None:
        if waiter is None:
            return
        self._waiters.discard(waiter)
        if not waiter.done():
            waiter.set_result(value)

    def _saturated(self) -> bool:
        assert self._queue is not None
        if self.overflow_policy is OverflowPolicy.QUEUE:
            return self._queue.full()
        return len(self._running) + self._queue.qsize() >= self.max_concurrent

    async def _fire(self, task_id: str, reason: str, waiter: asyncio.Future | None) -> None:
        task = self._registry.get(task_id)
        if task is None or not self._active:
            self._resolve(waiter, None)
            return

        # 1. enabled (paused tasks are treated the same: their timer is already gone)
        if not task.enabled or task.status is TaskStatus.PAUSED:
            self._resolve(waiter, None)
            return

        # 2. capacity
        if self._saturated():
            self._drop(task, "concurrency limit reached", waiter)
            return

        # 3. condition
        if task.condition is not None:
            ctx = self._build_context(task, read_only=True)
            try:
                ok = await evaluate_condition(task.condition, ctx)
            except Exception as exc:
                logger.exception("Condition of task %s raised", task_id)
                ok = False
                reason_text = f"condition failed: {exc!r}"
            else:
                reason_text = "condition not met"
            if not ok:
                self._update_next_execution_time(task)
                self._emit(EventKind.TASK_SKIPPED, task, reason=reason_text)
                self._resolve(waiter, None)
                return
            if self._registry.get(task_id) is not task or task.status is TaskStatus.PAUSED:
                self._resolve(waiter, None)
                return

        # 4. single-flight
        if task_id in self._running or self._queued[task_id] > 0:
            self._drop(task, "already running", waiter)
            return

        self._enqueue(task, reason, waiter=waiter)

    def _drop(self, task: Task, why: str, waiter: asyncio.Future | None) -> None:
        logger.debug("Task %s dropped: %s", task.id, why)
        self._emit(EventKind.TASK_DROPPED, task, reason=why)
        self._resolve(waiter, None)

    def _enqueue(
        self,
        task: Task,
        reason: str,
        *,
        retry: bool = False,
        waiter: asyncio.Future | None = None,
    ) -> bool:
        if self._queue is None:
            self._resolve(waiter, None)
            return False
        if not retry and self.overflow_policy is OverflowPolicy.DROP and self._saturated():
            self._drop(task, "concurrency limit reached", waiter)
            return False

        must_wait = len(self._running) + self._queue.qsize() >= self.max_concurrent
        item = _WorkItem((-float(task.priority), next(self._seq)), task.id, reason, retry, waiter)
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._drop(task, "work queue full", waiter)
            return False

        self._queued[task.id] += 1
        if must_wait:
            self._emit(EventKind.TASK_QUEUED, task, reason=reason, queued=self._queue.qsize())
        return True

    def _schedule_retry(self, task: Task) -> None:
        delay = task.retry_delay if task.retry_delay is not None else self.default_retry_delay
        self._cancel_retry(task.id)
        loop = asyncio.get_running_loop()
        self._retries[task.id] = loop.call_later(delay, self._fire_retry, task.id)
        logger.info(
            "Task %s will retry in %.3gs (attempt %d/%d)",
            task.id,
            delay,
            task.execution_count + 1,
            task.max_retries,
        )

    def _fire_retry(self, task_id: str) -> None:
        self._retries.pop(task_id, None)
        task = self._registry.get(task_id)
        if task is None or not self._active or not task.enabled or task.status is TaskStatus.PAUSED:
            return
        self._enqueue(task, "retry", retry=True)

    # ---- execution ----

    async def _worker(self, index: int) -> None:
        while True:
            assert self._queue is not None
            item = await self._queue.get()
            try:
                await self._run_item(item)
            except asyncio.CancelledError:
                self._resolve(item.waiter, None)
                raise
            except Exception:
                logger.exception("Worker %d failed on task %s", index, item.task_id)
                self._resolve(item.waiter, None)
            finally:
                if self._queue is not None:
                    self._queue.task_done()

    async def _run_item(self, item: _WorkItem) -> None:
        self._queued[item.task_id] -= 1
        if self._queued[item.task_id] <= 0:
            del self._queued[item.task_id]

        task = self._registry.get(item.task_id)
        if task is None or not task.enabled or task.status is TaskStatus.PAUSED:
            self._resolve(item.waiter, None)
            return
        if task.id in self._running:
            self._drop(task, "already running", item.waiter)
            return

        await self._execute(task, item)
        self._resolve(item.waiter, task)

    def _build_context(self, task: Task, *, read_only: bool = False) -> TaskContext:
        shared = self._context_provider()
        return TaskContext(
            shared=read_only_view(shared) if read_only else shared,
            task_id=task.id,
            execution_count=task.execution_count,
            last_execution_time=task.last_execution_time,
            next_execution_time=task.next_execution_time,
            locks=self._locks,
            loop=asyncio.get_running_loop(),
        )

    async def _execute(self, task: Task, item: _WorkItem) -> None:
        self._running.add(task.id)
        task.status = TaskStatus.RUNNING
        task.execution_count += 1
        task.last_execution_time = utcnow()
        ctx = self._build_context(task)
        timeout = task.timeout or self.default_timeout

        self._emit(
            EventKind.TASK_STARTED,
            task,
            reason=item.reason,
            attempt=task.execution_count,
            retry=item.retry,
        )

        error: TaskError | None = None
        result: Any = None
        try:
            result = await self._call_with_timeout(task, ctx, timeout)
        except TaskTimeoutError as exc:
            error = exc
        except Exception as exc:
            error = TaskExecutionError(task.id, exc)
        finally:
            self._running.discard(task.id)

        # Paused (or removed) while in flight: record the outcome, keep the pause.
        paused = task.status is TaskStatus.PAUSED
        if error is None:
            task.last_result = result
            if not paused:
                task.status = TaskStatus.COMPLETED
            self._update_next_execution_time(task)
            logger.debug("Task %s completed (run %d)", task.id, task.execution_count)
            self._emit(EventKind.TASK_COMPLETED, task, result=result)
            return

        task.last_error = error
        if not paused:
            task.status = TaskStatus.ERROR
        self._update_next_execution_time(task)
        logger.warning("Task %s failed (run %d): %s", task.id, task.execution_count, error)
        self._emit(EventKind.TASK_ERROR, task, error=error)

        still_registered = self._registry.get(task.id) is task
        if (
            still_registered
            and not paused
            and self._active
            and task.max_retries
            and task.execution_count < task.max_retries
        ):
            self._schedule_retry(task)

    async def _call_with_timeout(self, task: Task, ctx: TaskContext, timeout: float) -> Any:
        inner = asyncio.ensure_future(invoke_callable(task.fn, ctx))
        try:
            done, _ = await asyncio.wait({inner}, timeout=timeout)
        except asyncio.CancelledError:
            inner.cancel()
            raise
        if inner not in done:
            # Stop waiting; the body itself may keep running if it ignores cancellation.
            inner.cancel()
            inner.add_done_callback(_consume_outcome)
            raise TaskTimeoutError(task.id, timeout)
        if inner.cancelled():
            raise TaskExecutionError(task.id, message="task body was cancelled", error_type="CancelledError")
        return inner.result()

    def _emit(self, kind: EventKind, task: Task, **payload: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(kind, task, payload)
        except Exception:
            logger.exception("Event listener failed for %s on task %s", kind.value, task.id)
