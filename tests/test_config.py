# tests/test_config.py

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from task_orchestrator import config
from task_orchestrator.core.orchestrator import OrchestratorConfig
from task_orchestrator.tasks.task_models import OverflowPolicy

_KEYS = (
    "APP_NAME",
    "LOG_LEVEL",
    "DATA_DIR",
    "STATE_PATH",
    "MAX_CONCURRENT_TASKS",
    "DEFAULT_TIMEOUT",
    "DEFAULT_RETRY_DELAY",
    "OVERFLOW_POLICY",
    "QUEUE_MAXSIZE",
    "EVENT_HISTORY",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    for key in _KEYS:
        monkeypatch.delenv(config._k(key), raising=False)
    yield monkeypatch
    monkeypatch.undo()
    config.reload_settings()


def test_defaults(clean_env) -> None:
    settings = config.reload_settings()

    assert settings.app_name == "orchestrator"
    assert settings.max_concurrent_tasks == 5
    assert settings.default_timeout == 60.0
    assert settings.default_retry_delay == 5.0
    assert settings.overflow_policy == "queue"
    assert settings.queue_maxsize == 100
    assert settings.event_history == 200
    assert settings.state_path == settings.data_dir / "state.json"
    assert config.get_settings() is settings


def test_env_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("TASKORCH_APP_NAME", "billing")
    clean_env.setenv("TASKORCH_DATA_DIR", str(tmp_path))
    clean_env.setenv("TASKORCH_MAX_CONCURRENT_TASKS", "2")
    clean_env.setenv("TASKORCH_DEFAULT_TIMEOUT", "1.5")
    clean_env.setenv("TASKORCH_OVERFLOW_POLICY", "DROP")

    settings = config.reload_settings()

    assert settings.app_name == "billing"
    assert settings.state_path == tmp_path / "state.json"
    assert settings.max_concurrent_tasks == 2
    assert settings.default_timeout == 1.5

    cfg = OrchestratorConfig.from_settings(settings)
    assert cfg.name == "billing"
    assert cfg.overflow_policy is OverflowPolicy.DROP


def test_bad_values_fall_back(clean_env) -> None:
    clean_env.setenv("TASKORCH_MAX_CONCURRENT_TASKS", "lots")
    clean_env.setenv("TASKORCH_DEFAULT_TIMEOUT", "-3")
    clean_env.setenv("TASKORCH_DEFAULT_RETRY_DELAY", "-1")
    clean_env.setenv("TASKORCH_QUEUE_MAXSIZE", "0")
    clean_env.setenv("TASKORCH_APP_NAME", "   ")

    settings = config.reload_settings()

    assert settings.max_concurrent_tasks == 5
    assert settings.default_timeout == 60.0
    assert settings.default_retry_delay == 0.0
    assert settings.queue_maxsize == 1
    assert settings.app_name == "orchestrator"
