# tests/conftest.py

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from task_orchestrator.core.orchestrator import Orchestrator, OrchestratorConfig
from task_orchestrator.core.state_manager import StateManager
from task_orchestrator.tasks.task_registry import TaskRegistry
from task_orchestrator.tasks.task_scheduler import TaskScheduler

from .fakes import EventRecorder


@pytest.fixture()
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "orchestrator.json"


@pytest.fixture()
def state_manager(state_path: Path) -> StateManager:
    return StateManager(state_path)


@pytest_asyncio.fixture()
async def make_orchestrator() -> AsyncIterator[Callable[..., Orchestrator]]:
    """
    Factory for orchestrators that are always stopped at teardown.

    Short defaults keep tests fast; pass `state_store=` to swap the snapshot store.
    """
    created: list[Orchestrator] = []

    def factory(*, state_store: Any = None, **overrides: Any) -> Orchestrator:
        overrides.setdefault("name", "test")
        overrides.setdefault("default_timeout", 5.0)
        overrides.setdefault("default_retry_delay", 0.01)
        orch = Orchestrator(OrchestratorConfig(**overrides), state_store=state_store)
        created.append(orch)
        return orch

    yield factory

    for orch in created:
        await orch.stop()


@pytest_asyncio.fixture()
async def make_scheduler() -> AsyncIterator[Callable[..., tuple[TaskScheduler, EventRecorder]]]:
    """Bare scheduler + registry, context {} and an event recorder; shut down at teardown."""
    created: list[TaskScheduler] = []

    def factory(context: Any = None, **options: Any) -> tuple[TaskScheduler, EventRecorder]:
        recorder = EventRecorder()
        shared = {} if context is None else context
        options.setdefault("default_retry_delay", 0.01)
        scheduler = TaskScheduler(
            TaskRegistry(),
            context_provider=lambda: shared,
            on_event=lambda kind, task, payload: recorder.record(kind, task, payload),
            **options,
        )
        created.append(scheduler)
        return scheduler, recorder

    yield factory

    for scheduler in created:
        await scheduler.shutdown()
