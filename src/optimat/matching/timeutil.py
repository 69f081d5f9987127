"""Clock, weekday and date parsing shared by provider matching and data loading.

Times are minutes since midnight in ``[0, 1439]``. Weekdays are indexed from
Monday (0) to Sunday (6), and a day pattern is a 7-bit mask with bit ``i`` set
when weekday ``i`` is served.
"""

import re
from datetime import date, datetime

MINUTES_PER_DAY = 1440
LAST_MINUTE = MINUTES_PER_DAY - 1
ALL_DAYS = 0b1111111
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y")

_MERIDIEM_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([AP])\.?\s*M\.?$", re.IGNORECASE)
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_COMPACT_RE = re.compile(r"^(\d{1,2})(\d{2})$")
_DAY_PATTERN_RE = re.compile(r"^[01]{7}$")


class TimeParseError(ValueError):
    pass


def parse_time(text: str) -> int:
    """Parse ``H:MM AM/PM``, ``HH:MM`` or ``HHMM`` into minutes since midnight."""
    if not isinstance(text, str) or not text.strip():
        raise TimeParseError(f"Invalid time: {text!r}")
    value = text.strip()

    match = _MERIDIEM_RE.match(value)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            raise TimeParseError(f"Invalid time: {text!r}")
        hour %= 12
        if match.group(3).upper() == "P":
            hour += 12
        return hour * 60 + minute

    match = _CLOCK_RE.match(value) or _COMPACT_RE.match(value)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise TimeParseError(f"Invalid time: {text!r}")
        return hour * 60 + minute

    raise TimeParseError(f"Invalid time: {text!r}")


def parse_window_bound(value: int | str) -> int:
    # Stored hours use "2400" for end of day.
    if isinstance(value, bool):
        raise TimeParseError(f"Invalid window bound: {value!r}")
    if isinstance(value, int):
        if not 0 <= value <= MINUTES_PER_DAY:
            raise TimeParseError(f"Invalid window bound: {value!r}")
        return min(value, LAST_MINUTE)
    if isinstance(value, str) and value.strip() in ("2400", "24:00"):
        return LAST_MINUTE
    return parse_time(value)


def parse_day_pattern(value: int | str) -> int:
    if isinstance(value, bool):
        raise TimeParseError(f"Invalid day pattern: {value!r}")
    if isinstance(value, int):
        if not 0 <= value <= ALL_DAYS:
            raise TimeParseError(f"Invalid day pattern: {value!r}")
        return value
    if isinstance(value, str) and _DAY_PATTERN_RE.match(value.strip()):
        mask = 0
        for index, flag in enumerate(value.strip()):
            if flag == "1":
                mask |= 1 << index
        return mask
    raise TimeParseError(f"Invalid day pattern: {value!r}")


def format_day_pattern(mask: int) -> str:
    return "".join("1" if mask & (1 << index) else "0" for index in range(7))


def serves_day(mask: int, weekday: int) -> bool:
    return bool(mask & (1 << weekday))


def window_covers(start: int, end: int, minute: int) -> bool:
    """Inclusive containment; ``start > end`` wraps past midnight."""
    if start <= end:
        return start <= minute <= end
    return minute >= start or minute <= end


def parse_travel_date(text: str | None) -> date | None:
    if not text or not isinstance(text, str):
        return None
    value = text.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None
