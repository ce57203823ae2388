# src/task_orchestrator/cli/commands.py

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from ..core.state import OrchestratorState
from ..core.state_manager import StateManager

CommandHandler = Callable[[list[str], Path], str]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple sub-command registry used by the CLI (help, status, tasks, clear)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, argv: list[str], *, default_path: Path) -> str | None:
        """
        Run `argv[0]` with the remaining arguments.
        Returns the output text, or None if the command is unknown.
        """
        if not argv:
            return self.build_help()

        name = argv[0].lower()
        handler = self._handlers.get(name)
        if handler is None:
            return None
        return handler(argv[1:], default_path)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  {name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_ts(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _store(args: list[str], default_path: Path) -> StateManager:
    return StateManager(Path(args[0]) if args else default_path)


def _load(args: list[str], default_path: Path) -> tuple[StateManager, OrchestratorState | None]:
    store = _store(args, default_path)
    return store, store.load_state()


def _schedule_label(record: dict) -> str:
    if record.get("interval") is not None:
        return f"every {record['interval']:g}s"
    if record.get("cron"):
        return f"cron '{record['cron']}'"
    return "once" if record.get("run_on_start") else "manual"


def cmd_help(args: list[str], default_path: Path) -> str:
    return registry.build_help()


def cmd_status(args: list[str], default_path: Path) -> str:
    store, state = _load(args, default_path)
    if state is None:
        return f"No snapshot at {store.path}"

    counts = Counter(str(t.get("status") or "idle") for t in state.tasks)
    breakdown = ", ".join(f"{k} {v}" for k, v in sorted(counts.items())) or "none"
    return (
        "Status:\n"
        f"  Orchestrator: {state.name or '-'}\n"
        f"  State file:   {store.path}\n"
        f"  Paused:       {'yes' if state.is_paused else 'no'}\n"
        f"  Started:      {_fmt_ts(state.start_time)}\n"
        f"  Paused at:    {_fmt_ts(state.pause_time)}\n"
        f"  Resumed at:   {_fmt_ts(state.resume_time)}\n"
        f"  Tasks:        {len(state.tasks)} ({breakdown})"
    )


def cmd_tasks(args: list[str], default_path: Path) -> str:
    store, state = _load(args, default_path)
    if state is None:
        return f"No snapshot at {store.path}"
    if not state.tasks:
        return "No tasks."

    lines = []
    for t in sorted(state.tasks, key=lambda r: r["id"]):
        line = (
            f"{t['id']}: {t.get('status') or 'idle'} runs={t.get('execution_count') or 0} "
            f"{_schedule_label(t)} last={_fmt_ts(t.get('last_execution_time'))} "
            f"next={_fmt_ts(t.get('next_execution_time'))}"
        )
        err = t.get("last_error")
        if isinstance(err, dict) and err.get("message"):
            line += f" error={err.get('type')}: {err['message']}"
        lines.append(line)
    return "\n".join(lines)


def cmd_clear(args: list[str], default_path: Path) -> str:
    store = _store(args, default_path)
    store.clear_state()
    logger.info("Snapshot cleared: %s", store.path)
    return f"Cleared {store.path}"


registry.register("help", cmd_help, "show this help", aliases=["h", "?"])
registry.register("status", cmd_status, "summary of a snapshot: status [path]")
registry.register("tasks", cmd_tasks, "one line per persisted task: tasks [path]", aliases=["ls"])
registry.register("clear", cmd_clear, "delete a snapshot: clear [path]")
