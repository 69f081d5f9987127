from optimat.matching.geometry import contains
from optimat.matching.timeutil import (
    TimeParseError,
    parse_time,
    parse_travel_date,
    serves_day,
    window_covers,
)

__all__ = [
    "contains",
    "TimeParseError",
    "parse_time",
    "parse_travel_date",
    "serves_day",
    "window_covers",
]
