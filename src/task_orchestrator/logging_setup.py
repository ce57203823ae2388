# src/task_orchestrator/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

PACKAGE_LOGGER = "task_orchestrator"


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the console readable:
    - allow task_orchestrator logs
    - but the per-fire scheduler chatter only at WARNING+ (it is all in the file)
    - suppress Python warnings (captured as 'py.warnings') unless ERROR+
    - suppress third-party noise unless ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name == PACKAGE_LOGGER or name.startswith(PACKAGE_LOGGER + "."):
            if name.startswith(PACKAGE_LOGGER + ".tasks.task_scheduler"):
                return record.levelno >= logging.WARNING
            return True

        if name == "py.warnings":
            return record.levelno >= logging.ERROR

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path | None = ".local/task_orchestrator",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path | None:
    """
    Configure logging with:
    - Console handler: filtered for interactive use
    - File handler: full logs for debugging (skipped when log_dir is None)

    Call this ONCE, very early (before the first logger.info). Returns the log file path.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Remove any pre-existing handlers to avoid duplicates.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    log_file: Path | None = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "orchestrator.log"

        fh = logging.FileHandler(str(log_file), encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    # Route warnings.warn(...) into logging as 'py.warnings'
    logging.captureWarnings(True)
    return log_file
