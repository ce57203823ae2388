# src/task_orchestrator/core/state_manager.py

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import PersistenceError
from .state import OrchestratorState

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_STATE_TIMESTAMPS = ("start_time", "pause_time", "resume_time")
_TASK_TIMESTAMPS = ("last_execution_time", "next_execution_time")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return list(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _parse_timestamp(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        ts = datetime.fromisoformat(str(raw))
    except ValueError:
        logger.warning("Ignoring malformed timestamp in snapshot: %r", raw)
        return None
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


def _encodable_result(value: Any) -> Any:
    """Results are informational: keep them when JSON can carry them, else their repr."""
    try:
        json.dumps(value, default=_json_default)
    except (TypeError, ValueError):
        return repr(value)
    return value


class StateManager:
    """
    JSON snapshot file for one orchestrator.

    - save_state: atomic write (tmp file + os.replace), parent dirs created on demand
    - load_state: None when no snapshot exists; timestamps come back as datetimes
    - clear_state: a missing file is fine

    Without a path every call is a no-op (persistence disabled).
    Failures are raised as PersistenceError, never swallowed.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path).expanduser() if path else None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def enabled(self) -> bool:
        return self._path is not None

    # ---- encoding ----

    @staticmethod
    def to_dict(state: OrchestratorState) -> dict[str, Any]:
        tasks: list[dict[str, Any]] = []
        for record in state.tasks:
            clean = {k: v for k, v in record.items() if k not in ("fn", "condition")}
            clean["last_result"] = _encodable_result(clean.get("last_result"))
            tasks.append(clean)

        return {
            "version": FORMAT_VERSION,
            "saved_at": datetime.now(UTC),
            "name": state.name,
            "context": state.context,
            "is_paused": state.is_paused,
            "held_tasks": list(state.held_tasks),
            "start_time": state.start_time,
            "pause_time": state.pause_time,
            "resume_time": state.resume_time,
            "tasks": tasks,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> OrchestratorState:
        tasks: list[dict[str, Any]] = []
        for raw in data.get("tasks") or []:
            if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
                logger.warning("Skipping malformed task record in snapshot: %r", raw)
                continue
            record = dict(raw)
            for key in _TASK_TIMESTAMPS:
                record[key] = _parse_timestamp(record.get(key))
            tasks.append(record)

        held = data.get("held_tasks") or []
        return OrchestratorState(
            name=str(data.get("name") or ""),
            context=data.get("context"),
            tasks=tasks,
            is_paused=bool(data.get("is_paused", False)),
            held_tasks=[str(x) for x in held] if isinstance(held, list) else [],
            **{key: _parse_timestamp(data.get(key)) for key in _STATE_TIMESTAMPS},
        )

    # ---- public API ----

    def save_state(self, state: OrchestratorState) -> None:
        if self._path is None:
            return
        path = self._path

        try:
            payload = json.dumps(self.to_dict(state), default=_json_default, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot encode orchestrator state: {exc}", path=path) from exc

        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, "utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise PersistenceError(f"Failed to save orchestrator state: {exc}", path=path) from exc

        with contextlib.suppress(OSError):
            # Owner-only; best-effort on filesystems without POSIX modes.
            os.chmod(path, 0o600)
        logger.debug("Saved state: %d tasks to %s", len(state.tasks), path)

    def load_state(self) -> OrchestratorState | None:
        if self._path is None:
            return None
        path = self._path

        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read orchestrator state: {exc}", path=path) from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt orchestrator state: {exc}", path=path) from exc
        if not isinstance(data, dict):
            raise PersistenceError("Corrupt orchestrator state: top level is not an object", path=path)

        state = self.from_dict(data)
        logger.info("Loaded state: %d tasks from %s", len(state.tasks), path)
        return state

    def clear_state(self) -> None:
        if self._path is None:
            return
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceError(f"Failed to clear orchestrator state: {exc}", path=self._path) from exc
        logger.info("Cleared state at %s", self._path)
