# src/task_orchestrator/errors.py

"""
Exception taxonomy.

- ScheduleError: a task definition is rejected at registration time.
- TaskError: one failed attempt of a task (timeout or body exception).
- PersistenceError: snapshot I/O or encoding failure.

Task errors are captured on the task's runtime record and reported through events;
they never escape lifecycle calls.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class OrchestratorError(Exception):
    """Base class for every error raised by this package."""


class OrchestratorStoppedError(OrchestratorError):
    """A mutating call was made after stop()."""


class ScheduleError(OrchestratorError, ValueError):
    """Malformed schedule or failure-handling parameters."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        self.task_id = task_id
        if task_id:
            message = f"task {task_id!r}: {message}"
        super().__init__(message)


class TaskError(OrchestratorError):
    """A single attempt of a task failed."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id

    @property
    def error_type(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        return str(self)


class TaskTimeoutError(TaskError, TimeoutError):
    def __init__(self, task_id: str, timeout: float | None) -> None:
        if timeout is None:
            text = f"task {task_id!r} timed out"
        else:
            text = f"task {task_id!r} timed out after {timeout:g}s"
        super().__init__(task_id, text)
        self.timeout = timeout


class TaskExecutionError(TaskError):
    """
    Wraps whatever the task body raised.

    `cause` is the original exception (None when the error was restored from a
    snapshot); `error_type` keeps the original class name either way.
    """

    def __init__(
        self,
        task_id: str,
        cause: BaseException | None = None,
        *,
        message: str | None = None,
        error_type: str | None = None,
    ) -> None:
        if message is None:
            message = str(cause) if cause is not None else "task failed"
        super().__init__(task_id, message)
        self.cause = cause
        self._error_type = error_type or (type(cause).__name__ if cause is not None else "Exception")
        if cause is not None:
            self.__cause__ = cause

    @property
    def error_type(self) -> str:
        return self._error_type


class PersistenceError(OrchestratorError):
    def __init__(self, message: str, *, path: str | Path | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


def error_to_record(error: BaseException) -> dict[str, str]:
    """Flatten a task error into the persisted {"type", "message"} form."""
    if isinstance(error, TaskError):
        return {"type": error.error_type, "message": error.message}
    return {"type": type(error).__name__, "message": str(error)}


def error_from_record(task_id: str, record: Any) -> TaskError | None:
    if not isinstance(record, dict):
        return None
    error_type = str(record.get("type") or "Exception")
    message = str(record.get("message") or "")
    if error_type == TaskTimeoutError.__name__:
        err = TaskTimeoutError(task_id, None)
        if message:
            err.args = (message,)
        return err
    return TaskExecutionError(task_id, message=message, error_type=error_type)
