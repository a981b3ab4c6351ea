from typing import Optional

# Offsets offered by the reminder picker, in minutes before the due time.
REMINDER_OPTIONS: tuple[Optional[int], ...] = (None, 0, 10, 30, 60, 120, 1440)

# Longest accepted offset: one leap year.
MAX_REMINDER_MINUTES = 366 * 24 * 60


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def format_reminder_label(minutes: Optional[int]) -> str:
    """Human-readable reminder offset, e.g. "1 hour 30 minutes before"."""
    if minutes is None:
        return "No reminder"
    if minutes == 0:
        return "At due time"
    if minutes < 60:
        return f"{_plural(minutes, 'minute')} before"
    hours, rest = divmod(minutes, 60)
    if rest == 0:
        return f"{_plural(hours, 'hour')} before"
    return f"{_plural(hours, 'hour')} {_plural(rest, 'minute')} before"
