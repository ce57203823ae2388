# src/task_orchestrator/tasks/cron.py

"""
Cron expression helpers (croniter-backed).

Accepted forms:
- standard 5 fields: "minute hour day month weekday"
- 6 fields with a leading seconds field: "*/30 * * * * *"

Expressions are evaluated in local time; returned instants are UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from ..errors import ScheduleError


def normalize_expression(expression: str) -> str:
    fields = expression.split()
    if len(fields) == 6:
        # croniter wants the seconds field last.
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


def _syntax_ok(expression: object) -> bool:
    if not isinstance(expression, str) or not expression.strip():
        return False
    if len(expression.split()) not in (5, 6):
        return False
    try:
        return bool(croniter.is_valid(normalize_expression(expression)))
    except Exception:
        return False


def is_valid(expression: object) -> bool:
    """Well-formed and matches at least one future instant ("0 0 30 2 *" does not)."""
    try:
        next_fire_time(expression)  # type: ignore[arg-type]
    except ScheduleError:
        return False
    return True


def next_fire_time(expression: str, base: datetime | None = None) -> datetime:
    """Exact next matching instant strictly after `base` (default: now)."""
    if not _syntax_ok(expression):
        raise ScheduleError(f"invalid cron expression: {expression!r}")

    if base is None:
        base = datetime.now(UTC)
    elif base.tzinfo is None:
        base = base.replace(tzinfo=UTC)

    local_base = base.astimezone()
    try:
        nxt = croniter(normalize_expression(expression), local_base).get_next(datetime)
    except (CroniterBadDateError, CroniterBadCronError) as exc:
        raise ScheduleError(f"cron expression {expression!r} never fires: {exc}") from exc
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=local_base.tzinfo)
    return nxt.astimezone(UTC)
