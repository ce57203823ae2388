"""
Single-process task orchestration engine.

Register tasks (interval, cron, one-shot or conditional), run them under a
concurrency bound with timeouts and retries, observe them through events, and keep
their runtime state across restarts.
"""

from .core.events import EventBus, EventKind, EventStream, OrchestratorEvent
from .core.orchestrator import Orchestrator, OrchestratorConfig
from .core.state import OrchestratorPhase, OrchestratorState, OrchestratorStatus
from .core.state_manager import StateManager
from .errors import (
    OrchestratorError,
    OrchestratorStoppedError,
    PersistenceError,
    ScheduleError,
    TaskError,
    TaskExecutionError,
    TaskTimeoutError,
)
from .tasks.task_models import OverflowPolicy, Task, TaskContext, TaskStatus
from .tasks.task_registry import TaskRegistry
from .tasks.task_scheduler import TaskScheduler

__all__ = [
    "EventBus",
    "EventKind",
    "EventStream",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "OrchestratorEvent",
    "OrchestratorPhase",
    "OrchestratorState",
    "OrchestratorStatus",
    "OrchestratorStoppedError",
    "OverflowPolicy",
    "PersistenceError",
    "ScheduleError",
    "StateManager",
    "Task",
    "TaskContext",
    "TaskError",
    "TaskExecutionError",
    "TaskRegistry",
    "TaskScheduler",
    "TaskStatus",
    "TaskTimeoutError",
]

__version__ = "0.1.0"
