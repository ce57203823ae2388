# src/task_orchestrator/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the orchestrator.

The orchestrator depends on Protocols instead of concrete implementations, so the
snapshot store can be swapped (or faked in tests).
"""

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..errors import TaskError
    from ..tasks.task_models import Task
    from .state import OrchestratorState


class StateStore(Protocol):
    """
    Durable home of one orchestrator snapshot.

    Implementations raise PersistenceError on I/O or encoding failure.
    """

    @property
    def enabled(self) -> bool: ...

    def save_state(self, state: OrchestratorState) -> None: ...
    def load_state(self) -> OrchestratorState | None: ...
    def clear_state(self) -> None: ...


class ErrorHandler(Protocol):
    """Called for every failed task attempt (timeout or body exception)."""

    def __call__(self, error: TaskError, task: Task) -> Any: ...
