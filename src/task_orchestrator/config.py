# src/task_orchestrator/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole process.
- Nothing is required at import time; every key has a default.
- Explicit values passed to OrchestratorConfig always win over the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "TASKORCH"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except ImportError:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths ----
    data_dir: Path
    state_path: Path

    # ---- Scheduling ----
    max_concurrent_tasks: int
    default_timeout: float
    default_retry_delay: float
    overflow_policy: str
    queue_maxsize: int

    # ---- Events ----
    event_history: int

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "orchestrator").strip() or "orchestrator"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/task_orchestrator"))
        state_path = _env_path(_k("STATE_PATH"), data_dir / "state.json")

        max_concurrent_tasks = max(1, _env_int(_k("MAX_CONCURRENT_TASKS"), 5))
        default_timeout = _env_float(_k("DEFAULT_TIMEOUT"), 60.0)
        if default_timeout <= 0:
            default_timeout = 60.0
        default_retry_delay = max(0.0, _env_float(_k("DEFAULT_RETRY_DELAY"), 5.0))
        overflow_policy = _env(_k("OVERFLOW_POLICY"), "queue").strip().lower() or "queue"
        queue_maxsize = max(1, _env_int(_k("QUEUE_MAXSIZE"), 100))

        event_history = max(0, _env_int(_k("EVENT_HISTORY"), 200))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            state_path=state_path,
            max_concurrent_tasks=max_concurrent_tasks,
            default_timeout=default_timeout,
            default_retry_delay=default_retry_delay,
            overflow_policy=overflow_policy,
            queue_maxsize=queue_maxsize,
            event_history=event_history,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS


def reload_settings() -> Settings:
    """Re-read the environment (tests, long-lived processes after env changes)."""
    global SETTINGS
    SETTINGS = Settings.from_env()
    return SETTINGS
