# src/task_orchestrator/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class OrchestratorPhase(StrEnum):
    """
    created -> (initialize) -> idle -> (start) -> running <-> paused -> (stop) -> stopped

    stop() is reachable from every phase except stopped, which is terminal.
    """

    CREATED = "created"
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(slots=True)
class OrchestratorState:
    """
    Persistence-only snapshot.

    `tasks` holds task records (definition fields + runtime record) without the
    callables; `held_tasks` are the ids paused by an orchestrator-wide pause, which
    start() resumes.
    """

    name: str
    context: Any
    tasks: list[dict[str, Any]] = field(default_factory=list)
    is_paused: bool = False
    held_tasks: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    pause_time: datetime | None = None
    resume_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class OrchestratorStatus:
    name: str
    phase: OrchestratorPhase
    is_paused: bool
    task_count: int
    running_tasks: tuple[str, ...]
    queued_attempts: int
    armed_tasks: tuple[str, ...]
    start_time: datetime | None = None
    pause_time: datetime | None = None
    resume_time: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.phase is OrchestratorPhase.RUNNING
