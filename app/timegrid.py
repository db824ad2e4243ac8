from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

WEEKDAY_TOKENS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7
SHIFT_WINDOWS_DEFAULT: Dict[str, Tuple[int, int]] = {
    "t1": (6, 14),
    "t2": (14, 22),
}


def shift_hours(shift_start: int) -> List[int]:
    """Return the 24 wall-clock hours of a day, rotated to begin at the shift start."""
    start = int(shift_start) % HOURS_PER_DAY
    return [(start + offset) % HOURS_PER_DAY for offset in range(HOURS_PER_DAY)]


def week_calendar(shift_starts: Sequence[int]) -> List[List[int]]:
    return [shift_hours(start) for start in shift_starts]


def slot_index(shift_start: int, hour: int) -> int:
    """Position of a wall-clock hour inside the rotated shift window."""
    return (int(hour) - int(shift_start)) % HOURS_PER_DAY


def receiving_window_hours(shift_start: int) -> int:
    return HOURS_PER_DAY - int(shift_start)


def in_receiving_window(shift_start: int, hour: int) -> bool:
    return slot_index(shift_start, hour) < receiving_window_hours(shift_start)


def shift_for_hour(hour: int, windows: Dict[str, Tuple[int, int]] | None = None) -> int:
    """Return 1, 2 or 3 for the staffing shift covering a wall-clock hour."""
    windows = windows or SHIFT_WINDOWS_DEFAULT
    t1_start, t1_end = windows.get("t1", SHIFT_WINDOWS_DEFAULT["t1"])
    t2_start, t2_end = windows.get("t2", SHIFT_WINDOWS_DEFAULT["t2"])
    if t1_start <= hour < t1_end:
        return 1
    if t2_start <= hour < t2_end:
        return 2
    return 3


def day_label(day_index: int) -> str:
    if 0 <= day_index < DAYS_PER_WEEK:
        return WEEKDAY_TOKENS[day_index]
    return f"Day {day_index}"
