from __future__ import annotations

import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from matrices import (  # noqa: E402
    CONSOLIDATION_MATRIX,
    RECEIVING_SHARE_MATRIX,
    consolidation_matrix,
    consolidation_pct,
    default_efficiency_map,
    efficiency_pct,
    receiving_share_pct,
)
from timegrid import (  # noqa: E402
    day_label,
    in_receiving_window,
    receiving_window_hours,
    shift_for_hour,
    shift_hours,
    slot_index,
    week_calendar,
)


def test_shift_hours_rotate_from_shift_start():
    hours = shift_hours(14)
    assert len(hours) == 24
    assert hours[0] == 14
    assert hours[9] == 23
    assert hours[10] == 0
    assert hours[-1] == 13
    assert sorted(hours) == list(range(24))


def test_midnight_start_is_plain_clock_order():
    assert shift_hours(0) == list(range(24))
    assert week_calendar([0, 6])[1][0] == 6


def test_receiving_window_covers_remaining_calendar_hours():
    assert receiving_window_hours(14) == 10
    assert slot_index(14, 23) == 9
    assert in_receiving_window(14, 14)
    assert in_receiving_window(14, 23)
    assert not in_receiving_window(14, 0)
    assert not in_receiving_window(14, 13)
    assert all(in_receiving_window(0, hour) for hour in range(24))


@pytest.mark.parametrize(
    "hour,expected",
    [(5, 3), (6, 1), (13, 1), (14, 2), (21, 2), (22, 3), (0, 3)],
)
def test_shift_for_hour_uses_wall_clock_windows(hour, expected):
    assert shift_for_hour(hour) == expected


def test_shift_for_hour_accepts_custom_windows():
    windows = {"t1": (7, 15), "t2": (15, 23)}
    assert shift_for_hour(6, windows) == 3
    assert shift_for_hour(7, windows) == 1
    assert shift_for_hour(22, windows) == 2


def test_day_label_for_week_and_overflow():
    assert day_label(0) == "Mon"
    assert day_label(6) == "Sun"
    assert day_label(9) == "Day 9"


def test_matrices_are_full_week_grids():
    for matrix in (CONSOLIDATION_MATRIX, RECEIVING_SHARE_MATRIX):
        assert len(matrix) == 7
        assert all(len(row) == 24 for row in matrix)


def test_consolidation_lookup_uses_wall_clock_hour_and_override():
    assert consolidation_pct(1, 10) == float(CONSOLIDATION_MATRIX[1][10])
    assert consolidation_pct(1, 10, {10: 42}) == 42.0
    assert consolidation_pct(1, 11, {10: 42}) == float(CONSOLIDATION_MATRIX[1][11])


def test_consolidation_matrix_returns_independent_copy():
    copy = consolidation_matrix()
    copy[0][0] = 999
    assert CONSOLIDATION_MATRIX[0][0] != 999


def test_default_efficiency_halves_break_hours():
    efficiency = default_efficiency_map()
    assert len(efficiency) == 24
    assert efficiency[0] == 50.0
    assert efficiency[12] == 50.0
    assert efficiency[9] == 100.0
    assert efficiency_pct(efficiency, 18) == 50.0


def test_efficiency_missing_hour_defaults_to_full():
    assert efficiency_pct({}, 5) == 100.0
    assert efficiency_pct(None, 5) == 100.0


def test_receiving_share_lookup():
    assert receiving_share_pct(0, 21) == float(RECEIVING_SHARE_MATRIX[0][21])
    assert receiving_share_pct(6, 12) == 0.0
