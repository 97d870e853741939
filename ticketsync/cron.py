"""
Cron expression helpers backed by APScheduler's CronTrigger.

Only the standard 5-field crontab syntax is accepted. All computations
run in UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from ticketsync.timeutils import utcnow

COMMON_EXPRESSIONS = {
    "Every minute": "* * * * *",
    "Every 5 minutes": "*/5 * * * *",
    "Every 15 minutes": "*/15 * * * *",
    "Every 30 minutes": "*/30 * * * *",
    "Every hour": "0 * * * *",
    "Every 2 hours": "0 */2 * * *",
    "Every 6 hours": "0 */6 * * *",
    "Every 12 hours": "0 */12 * * *",
    "Daily at midnight": "0 0 * * *",
    "Daily at 2 AM": "0 2 * * *",
    "Daily at 6 AM": "0 6 * * *",
    "Weekly (Sunday)": "0 0 * * 0",
    "Monthly (1st)": "0 0 1 * *",
}


def parse_cron(expression: str) -> CronTrigger:
    """
    Parse a 5-field cron expression.

    Raises:
        ValueError: If the expression is not a valid 5-field crontab entry
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ValueError("Cron expression must be a non-empty string")
    return CronTrigger.from_crontab(expression.strip(), timezone=timezone.utc)


def validate_cron(expression: str) -> str:
    """Return the normalized expression, raising ValueError when malformed."""
    parse_cron(expression)
    return " ".join(expression.split())


def is_valid_cron(expression: str) -> bool:
    try:
        parse_cron(expression)
    except ValueError:
        return False
    return True


def next_run_after(expression: str, after: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next fire time strictly after ``after`` (defaults to now).

    Crontab entries fire on whole minutes, so any instant inside the
    current minute resolves to a later slot.
    """
    now = after or utcnow()
    trigger = parse_cron(expression)
    candidate = trigger.get_next_fire_time(None, now)
    if candidate is not None and candidate <= now:
        candidate = trigger.get_next_fire_time(candidate, now + timedelta(seconds=1))
    return candidate


def common_expressions() -> dict[str, str]:
    """Named cron presets for job configuration UIs."""
    return dict(COMMON_EXPRESSIONS)
