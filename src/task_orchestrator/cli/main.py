# src/task_orchestrator/cli/main.py

"""
CLI entrypoint.

    task-orchestrator status [path]
    task-orchestrator tasks [path]
    task-orchestrator clear [path]

The snapshot path defaults to TASKORCH_STATE_PATH.
"""

from __future__ import annotations

import logging
import sys

from ..config import get_settings
from ..errors import PersistenceError
from ..logging_setup import setup_logging
from .commands import registry

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    args = list(sys.argv[1:] if argv is None else argv)

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    # Inspection only: console logging, no log file.
    setup_logging(log_dir=None, console_level=console_level)

    try:
        output = registry.handle(args, default_path=settings.state_path)
    except PersistenceError as exc:
        logger.error("%s", exc)
        return 1

    if output is None:
        print(f"Unknown command: {args[0]}. Use 'help' to list available commands.", file=sys.stderr)
        return 1

    print(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
