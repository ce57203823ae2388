# src/task_orchestrator/tasks/task_models.py

from __future__ import annotations

import asyncio
import math
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from ..errors import ScheduleError, TaskError, error_from_record, error_to_record
from . import cron as cron_expr


def utcnow() -> datetime:
    return datetime.now(UTC)


class TaskStatus(StrEnum):
    """Runtime status of a task. Only the scheduler mutates it."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETED = "completed"

    @classmethod
    def from_raw(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.IDLE
        try:
            return cls(raw)
        except ValueError:
            return cls.IDLE


class OverflowPolicy(StrEnum):
    """
    What happens to an attempt that arrives while the concurrency bound is saturated.

    - DROP: discard it (a "task_dropped" event is raised).
    - QUEUE: let it wait in a bounded priority queue ("task_queued").
    """

    DROP = "drop"
    QUEUE = "queue"

    @classmethod
    def from_raw(cls, raw: str | None, default: OverflowPolicy | None = None) -> OverflowPolicy:
        fallback = default or cls.QUEUE
        if not raw:
            return fallback
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return fallback


class ResourceLocks:
    """Named asyncio locks shared by every task of one orchestrator."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = threading.Lock()

    def get(self, name: str = "context") -> asyncio.Lock:
        # Also called from worker threads (sync task bodies).
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = asyncio.Lock()
        return lock

    def names(self) -> list[str]:
        return sorted(self._locks)


class _ThreadSideLock:
    """
    Blocking view of an orchestrator lock for sync bodies running in a worker thread.

    Acquire and release happen on the event loop, so it excludes async holders of the
    same named lock too.
    """

    def __init__(self, lock: asyncio.Lock, loop: asyncio.AbstractEventLoop) -> None:
        self._lock = lock
        self._loop = loop

    def __enter__(self) -> _ThreadSideLock:
        asyncio.run_coroutine_threadsafe(self._lock.acquire(), self._loop).result()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._loop.call_soon_threadsafe(self._lock.release)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


@dataclass(slots=True)
class TaskContext:
    """
    What a task body (or condition) receives on each invocation.

    `shared` is the orchestrator's context object, passed by reference. There is no
    implicit locking around it: tasks that need mutual exclusion take a named lock.
    Async bodies use `async with ctx.lock("name"):`; sync bodies (run in a worker
    thread) use `with ctx.lock("name"):` and exclude the async holders as well.
    """

    shared: Any
    task_id: str
    execution_count: int
    last_execution_time: datetime | None = None
    next_execution_time: datetime | None = None
    locks: ResourceLocks | None = field(default=None, repr=False)
    loop: asyncio.AbstractEventLoop | None = field(default=None, repr=False)

    def lock(self, name: str = "context") -> asyncio.Lock | _ThreadSideLock:
        if self.locks is None:
            self.locks = ResourceLocks()
        lock = self.locks.get(name)
        if self.loop is not None and _running_loop() is not self.loop:
            return _ThreadSideLock(lock, self.loop)
        return lock


TaskFn = Callable[[TaskContext], Any]
Condition = Callable[[TaskContext], "bool | Awaitable[bool]"]


def read_only_view(value: Any) -> Any:
    """Mappings are wrapped read-only; other objects are passed as-is."""
    if isinstance(value, Mapping):
        return MappingProxyType(value)  # type: ignore[arg-type]
    return value


# Definition fields that are persisted next to the runtime record.
DEFINITION_FIELDS = (
    "name",
    "interval",
    "cron",
    "run_on_start",
    "priority",
    "max_retries",
    "retry_delay",
    "timeout",
    "enabled",
)


@dataclass(slots=True, eq=False)
class Task:
    """
    A schedulable unit of work: immutable-ish definition + mutable runtime record.

    Schedule: at most one of `interval` (seconds) and `cron`. Neither means manual
    (or one-shot when `run_on_start` is set).
    """

    id: str
    fn: TaskFn
    name: str | None = None
    interval: float | None = None
    cron: str | None = None
    run_on_start: bool = False
    condition: Condition | None = None
    priority: float = 0
    max_retries: int = 0
    retry_delay: float | None = None
    timeout: float | None = None
    enabled: bool = True

    # runtime record
    status: TaskStatus = TaskStatus.IDLE
    execution_count: int = 0
    last_execution_time: datetime | None = None
    next_execution_time: datetime | None = None
    last_result: Any = None
    last_error: TaskError | None = None

    @property
    def schedule_kind(self) -> str:
        if self.interval is not None:
            return "interval"
        if self.cron is not None:
            return "cron"
        return "manual"

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def validate(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ScheduleError("task id must be a non-empty string")
        if not callable(self.fn):
            raise ScheduleError("fn must be callable", task_id=self.id)
        if self.condition is not None and not callable(self.condition):
            raise ScheduleError("condition must be callable", task_id=self.id)

        if self.interval is not None and self.cron is not None:
            raise ScheduleError("interval and cron are mutually exclusive", task_id=self.id)
        if self.interval is not None:
            _require_positive("interval", self.interval, self.id)
        if self.cron is not None and not cron_expr.is_valid(self.cron):
            raise ScheduleError(f"invalid cron expression: {self.cron!r}", task_id=self.id)

        if self.timeout is not None:
            _require_positive("timeout", self.timeout, self.id)
        if self.retry_delay is not None:
            if not _is_number(self.retry_delay) or self.retry_delay < 0:
                raise ScheduleError("retry_delay must be >= 0", task_id=self.id)
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ScheduleError("max_retries must be a non-negative integer", task_id=self.id)
        if not _is_number(self.priority):
            raise ScheduleError("priority must be a number", task_id=self.id)

    def reset_runtime(self) -> None:
        self.status = TaskStatus.IDLE
        self.execution_count = 0
        self.last_execution_time = None
        self.next_execution_time = None
        self.last_result = None
        self.last_error = None

    def to_record(self) -> dict[str, Any]:
        """Definition + runtime record without callables (fn, condition)."""
        record: dict[str, Any] = {"id": self.id}
        for key in DEFINITION_FIELDS:
            record[key] = getattr(self, key)
        record["status"] = self.status.value
        record["execution_count"] = self.execution_count
        record["last_execution_time"] = self.last_execution_time
        record["next_execution_time"] = self.next_execution_time
        record["last_result"] = self.last_result
        record["last_error"] = error_to_record(self.last_error) if self.last_error is not None else None
        return record

    def apply_runtime_record(self, record: Mapping[str, Any]) -> None:
        """
        Copy persisted runtime fields onto this (freshly registered) task.

        The definition stays as registered in code. A persisted "running" status
        cannot be true after a restart and is restored as idle.
        """
        status = TaskStatus.from_raw(record.get("status"))
        self.status = TaskStatus.IDLE if status is TaskStatus.RUNNING else status

        try:
            self.execution_count = max(0, int(record.get("execution_count") or 0))
        except (TypeError, ValueError):
            self.execution_count = 0

        self.last_execution_time = _as_datetime(record.get("last_execution_time"))
        self.next_execution_time = _as_datetime(record.get("next_execution_time"))
        self.last_result = record.get("last_result")
        self.last_error = error_from_record(self.id, record.get("last_error"))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _require_positive(label: str, value: Any, task_id: str) -> None:
    if not _is_number(value) or value <= 0:
        raise ScheduleError(f"{label} must be a positive number of seconds", task_id=task_id)


def _as_datetime(value: Any) -> datetime | None:
    return value if isinstance(value, datetime) else None
