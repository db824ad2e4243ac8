from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from database import get_active_policy, upsert_policy
from validation import ConfigurationError


BASELINE_POLICY: Dict[str, Any] = {
    "name": "Baseline Planning Policy",
    "calendar": {
        # No work is planned from Sunday 14:00 until the week closes.
        "shutdown_day": 6,
        "shutdown_hour": 14,
        "min_viable_efficiency_pct": 10.0,
        "receiving_arrival": "uniform",
    },
    "shifts": {
        "t1": [6, 14],
        "t2": [14, 22],
    },
    "productivity": {
        "net_time_floor": 0.1,
    },
    "recovery": {
        "putaway_sla_hours": 4.0,
        "putaway_aggressive_divisor": 2.0,
        "outbound_assumed_throughput": 5000.0,
        "outbound_critical_hours": 10.0,
        "outbound_fast_clear_hours": 3.0,
        "outbound_normal_clear_hours": 6.0,
        "picking_tiers": [[30000.0, 4.0], [25000.0, 6.0]],
        "picking_default_clear_hours": 12.0,
    },
    "fusion": {
        "estimator_weight": 0.8,
        "deterministic_weight": 0.2,
        "floor_ratio": 0.5,
    },
    "throttle": {
        "picking_critical_backlog": 30000.0,
        "putaway_capacity_factor": 0.5,
    },
    "estimator": {
        "url": None,
        "timeout_seconds": 2.0,
        # Transport failures tolerated before the estimator is skipped for the run.
        "max_failures": 1,
    },
}

ARRIVAL_MODES = {"uniform", "share_curve"}

# Used as divisors or blend weights by the engine; zero is never valid.
_POSITIVE_KEYS = (
    ("productivity", "net_time_floor"),
    ("recovery", "putaway_sla_hours"),
    ("recovery", "putaway_aggressive_divisor"),
    ("recovery", "outbound_assumed_throughput"),
    ("recovery", "outbound_fast_clear_hours"),
    ("recovery", "outbound_normal_clear_hours"),
    ("recovery", "picking_default_clear_hours"),
    ("fusion", "estimator_weight"),
    ("fusion", "deterministic_weight"),
)
_NON_NEGATIVE_KEYS = (
    ("calendar", "min_viable_efficiency_pct"),
    ("recovery", "outbound_critical_hours"),
    ("fusion", "floor_ratio"),
    ("throttle", "picking_critical_backlog"),
    ("throttle", "putaway_capacity_factor"),
)


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _as_float(value: Any, fallback: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


def _as_int(value: Any, fallback: int) -> int:
    number = _as_float(value, fallback)
    return int(number) if math.isfinite(number) else fallback


def _normalize_policy(policy: Dict) -> Dict:
    """Merge a stored payload over the baseline so runtime matches code expectations."""
    if not isinstance(policy, dict):
        return build_default_policy()
    normalized = _deep_update(BASELINE_POLICY, policy)
    for section, defaults in BASELINE_POLICY.items():
        if isinstance(defaults, dict) and not isinstance(normalized.get(section), dict):
            normalized[section] = copy.deepcopy(defaults)
    for section in ("calendar", "productivity", "recovery", "fusion", "throttle"):
        defaults = BASELINE_POLICY[section]
        current = normalized[section]
        for key, default in defaults.items():
            if isinstance(default, float):
                current[key] = _as_float(current.get(key), default)
    calendar = normalized["calendar"]
    calendar["shutdown_day"] = _as_int(calendar.get("shutdown_day"), 6)
    calendar["shutdown_hour"] = _as_int(calendar.get("shutdown_hour"), 14)
    if calendar.get("receiving_arrival") not in ARRIVAL_MODES:
        calendar["receiving_arrival"] = BASELINE_POLICY["calendar"]["receiving_arrival"]
    tiers = normalized["recovery"].get("picking_tiers")
    if not isinstance(tiers, list):
        tiers = copy.deepcopy(BASELINE_POLICY["recovery"]["picking_tiers"])
    cleaned = []
    for entry in tiers:
        if isinstance(entry, (list, tuple)) and len(entry) == 2:
            cleaned.append([_as_float(entry[0], 0.0), _as_float(entry[1], 1.0)])
    # Highest threshold first so escalation checks run from the most severe tier down.
    normalized["recovery"]["picking_tiers"] = sorted(cleaned, key=lambda item: item[0], reverse=True)
    estimator_cfg = normalized["estimator"]
    estimator_cfg["timeout_seconds"] = max(0.01, _as_float(estimator_cfg.get("timeout_seconds"), 2.0))
    estimator_cfg["max_failures"] = max(1, _as_int(estimator_cfg.get("max_failures"), 1))
    return normalized


def _policy_issue(key: str, message: str) -> Dict[str, Any]:
    return {"type": "policy", "severity": "error", "message": f"policy {key}: {message}", "key": key}


def policy_issues(policy: Dict) -> List[Dict[str, Any]]:
    """Range-check a normalized policy; an empty list means it is safe to plan with."""
    issues: List[Dict[str, Any]] = []
    for section, key in _POSITIVE_KEYS:
        value = policy[section][key]
        if not math.isfinite(value) or value <= 0:
            issues.append(_policy_issue(f"{section}.{key}", f"must be a positive number, got {value!r}"))
    for section, key in _NON_NEGATIVE_KEYS:
        value = policy[section][key]
        if not math.isfinite(value) or value < 0:
            issues.append(_policy_issue(f"{section}.{key}", f"must be zero or positive, got {value!r}"))
    if policy["productivity"]["net_time_floor"] > 1:
        issues.append(_policy_issue("productivity.net_time_floor", "must not exceed 1"))
    calendar = policy["calendar"]
    if not 0 <= calendar["shutdown_day"] <= 6:
        issues.append(_policy_issue("calendar.shutdown_day", "must be a weekday index 0-6"))
    if not 0 <= calendar["shutdown_hour"] <= 24:
        issues.append(_policy_issue("calendar.shutdown_hour", "must be an hour 0-24"))
    for threshold, hours in policy["recovery"]["picking_tiers"]:
        if not math.isfinite(threshold) or threshold < 0:
            issues.append(_policy_issue("recovery.picking_tiers", f"threshold {threshold!r} must be zero or positive"))
        if not math.isfinite(hours) or hours <= 0:
            issues.append(_policy_issue("recovery.picking_tiers", f"clear hours {hours!r} must be positive"))
    for name in ("t1", "t2"):
        window = policy["shifts"].get(name)
        try:
            start, end = int(window[0]), int(window[1])
        except (IndexError, TypeError, ValueError):
            issues.append(_policy_issue(f"shifts.{name}", "must be a [start, end] pair of hours"))
            continue
        if not 0 <= start < end <= 24:
            issues.append(_policy_issue(f"shifts.{name}", f"window {start}-{end} must satisfy 0 <= start < end <= 24"))
    return issues


def validate_policy(policy: Optional[Dict]) -> Dict:
    """Return the normalized policy, or raise ConfigurationError listing every bad value."""
    normalized = _normalize_policy(policy or {})
    issues = policy_issues(normalized)
    if issues:
        raise ConfigurationError(issues)
    return normalized


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict, or the baseline when none is stored."""
    if conn is None:
        return build_default_policy()
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so planning can run end-to-end."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        defaults = build_default_policy()
        name = defaults.get("name", "Baseline Planning Policy")
        params = {key: value for key, value in defaults.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")


@dataclass(frozen=True)
class PlanningSettings:
    shutdown_day: int = 6
    shutdown_hour: int = 14
    min_viable_efficiency_pct: float = 10.0
    receiving_arrival: str = "uniform"
    shift_windows: Tuple[Tuple[str, Tuple[int, int]], ...] = (("t1", (6, 14)), ("t2", (14, 22)))
    net_time_floor: float = 0.1
    putaway_sla_hours: float = 4.0
    putaway_aggressive_divisor: float = 2.0
    outbound_assumed_throughput: float = 5000.0
    outbound_critical_hours: float = 10.0
    outbound_fast_clear_hours: float = 3.0
    outbound_normal_clear_hours: float = 6.0
    picking_tiers: Tuple[Tuple[float, float], ...] = ((30000.0, 4.0), (25000.0, 6.0))
    picking_default_clear_hours: float = 12.0
    estimator_weight: float = 0.8
    deterministic_weight: float = 0.2
    floor_ratio: float = 0.5
    picking_critical_backlog: float = 30000.0
    putaway_capacity_factor: float = 0.5

    @property
    def windows(self) -> Dict[str, Tuple[int, int]]:
        return dict(self.shift_windows)


def settings_from_policy(policy: Optional[Dict]) -> PlanningSettings:
    normalized = validate_policy(policy)
    calendar = normalized["calendar"]
    recovery = normalized["recovery"]
    fusion = normalized["fusion"]
    throttle = normalized["throttle"]
    windows = []
    for key in ("t1", "t2"):
        raw = normalized["shifts"][key]
        windows.append((key, (int(raw[0]), int(raw[1]))))
    return PlanningSettings(
        shutdown_day=calendar["shutdown_day"],
        shutdown_hour=calendar["shutdown_hour"],
        min_viable_efficiency_pct=calendar["min_viable_efficiency_pct"],
        receiving_arrival=calendar["receiving_arrival"],
        shift_windows=tuple(windows),
        net_time_floor=normalized["productivity"]["net_time_floor"],
        putaway_sla_hours=recovery["putaway_sla_hours"],
        putaway_aggressive_divisor=recovery["putaway_aggressive_divisor"],
        outbound_assumed_throughput=recovery["outbound_assumed_throughput"],
        outbound_critical_hours=recovery["outbound_critical_hours"],
        outbound_fast_clear_hours=recovery["outbound_fast_clear_hours"],
        outbound_normal_clear_hours=recovery["outbound_normal_clear_hours"],
        picking_tiers=tuple((float(limit), float(hours)) for limit, hours in recovery["picking_tiers"]),
        picking_default_clear_hours=recovery["picking_default_clear_hours"],
        estimator_weight=fusion["estimator_weight"],
        deterministic_weight=fusion["deterministic_weight"],
        floor_ratio=fusion["floor_ratio"],
        picking_critical_backlog=throttle["picking_critical_backlog"],
        putaway_capacity_factor=throttle["putaway_capacity_factor"],
    )
