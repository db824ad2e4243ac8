from __future__ import annotations

import copy
from typing import Dict, List, Mapping, Optional

from timegrid import HOURS_PER_DAY

# Percent of picking-stage throughput that reaches the next stage, by [day][wall-clock hour].
CONSOLIDATION_MATRIX: List[List[int]] = [
    [0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 70, 70, 70, 70, 70, 70, 167, 115, 106, 94],
    [65, 76, 61, 56, 57, 58, 59, 69, 62, 63, 64, 64, 64, 65, 67, 68, 69, 70, 71, 72, 74, 77, 78, 115],
    [123, 119, 120, 116, 106, 99, 95, 92, 93, 93, 95, 95, 97, 98, 100, 102, 103, 105, 106, 107, 109, 112, 116, 120],
    [89, 93, 93, 94, 93, 94, 95, 96, 99, 102, 104, 108, 108, 109, 111, 113, 116, 118, 118, 120, 122, 123, 123, 121],
    [89, 92, 92, 94, 96, 97, 98, 101, 102, 102, 103, 103, 112, 104, 105, 107, 109, 111, 112, 113, 115, 116, 114, 112],
    [88, 91, 96, 96, 98, 95, 94, 98, 100, 101, 101, 102, 102, 103, 105, 108, 110, 111, 112, 113, 115, 115, 115, 181],
    [125, 126, 124, 127, 137, 138, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0],
]

# Share of the day's inbound volume arriving at each wall-clock hour (percent).
RECEIVING_SHARE_MATRIX: List[List[int]] = [
    [0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 6, 6, 9, 9, 7, 14, 20, 20, 9],
    [4, 3, 5, 4, 5, 4, 4, 4, 5, 8, 6, 3, 1, 5, 4, 3, 6, 5, 5, 3, 3, 3, 6, 4],
    [5, 3, 3, 5, 5, 5, 4, 5, 5, 3, 5, 3, 3, 5, 5, 5, 4, 4, 2, 3, 4, 4, 3, 3],
    [5, 2, 2, 5, 5, 4, 4, 4, 5, 5, 5, 5, 2, 2, 5, 7, 6, 5, 4, 2, 3, 5, 5, 4],
    [5, 2, 2, 5, 5, 4, 4, 4, 5, 5, 5, 5, 2, 2, 5, 7, 6, 5, 4, 2, 3, 5, 5, 4],
    [4, 2, 2, 4, 4, 3, 3, 4, 5, 5, 6, 3, 3, 6, 7, 5, 6, 4, 3, 4, 3, 6, 6, 2],
    [0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0],
]

# Meal and break hours run at reduced efficiency by default.
LOW_EFFICIENCY_HOURS = (0, 1, 11, 12, 18, 19)
LOW_EFFICIENCY_PCT = 50.0
FULL_EFFICIENCY_PCT = 100.0


def default_efficiency_map() -> Dict[int, float]:
    return {
        hour: (LOW_EFFICIENCY_PCT if hour in LOW_EFFICIENCY_HOURS else FULL_EFFICIENCY_PCT)
        for hour in range(HOURS_PER_DAY)
    }


def consolidation_matrix() -> List[List[int]]:
    """Return a deepcopy so callers can edit their own copy safely."""
    return copy.deepcopy(CONSOLIDATION_MATRIX)


def consolidation_pct(day_index: int, hour: int, override: Optional[Mapping[int, float]] = None) -> float:
    if override and hour in override:
        return float(override[hour])
    return float(CONSOLIDATION_MATRIX[day_index][hour])


def efficiency_pct(efficiency_map: Optional[Mapping[int, float]], hour: int) -> float:
    if efficiency_map is None:
        return FULL_EFFICIENCY_PCT
    value = efficiency_map.get(hour)
    if value is None:
        return FULL_EFFICIENCY_PCT
    return float(value)


def receiving_share_pct(day_index: int, hour: int) -> float:
    return float(RECEIVING_SHARE_MATRIX[day_index][hour])
