# src/task_orchestrator/tasks/task_registry.py

from __future__ import annotations

import logging

from .task_models import Task

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    In-memory table of tasks keyed by id.

    Pure storage: cancelling timers on removal is the scheduler's job.
    Re-adding an existing id replaces the definition and resets the runtime record.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def add(self, task: Task) -> Task | None:
        previous = self._tasks.get(task.id)
        task.reset_runtime()
        self._tasks[task.id] = task
        if previous is not None:
            logger.debug("Task %s redefined; runtime record reset", task.id)
        return previous

    def remove(self, task_id: str) -> Task | None:
        return self._tasks.pop(task_id, None)

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list(self) -> list[Task]:
        return list(self._tasks.values())

    def ids(self) -> list[str]:
        return list(self._tasks)

    def clear(self) -> None:
        self._tasks.clear()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
