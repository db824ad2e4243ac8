from __future__ import annotations

import math
from typing import Any, Dict, List, Sequence

from scenario import DayScenario
from stages import Stage
from timegrid import DAYS_PER_WEEK, HOURS_PER_DAY, day_label


class ConfigurationError(ValueError):
    """Raised before a run starts when stage or scenario inputs are out of range."""

    def __init__(self, issues: List[Dict[str, Any]]) -> None:
        self.issues = issues
        summary = "; ".join(issue["message"] for issue in issues[:5])
        if len(issues) > 5:
            summary += f" (+{len(issues) - 5} more)"
        super().__init__(f"Invalid planning configuration: {summary}")


def _finite(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def _issue(kind: str, message: str, **extra: Any) -> Dict[str, Any]:
    payload = {"type": kind, "severity": "error", "message": message}
    payload.update(extra)
    return payload


def _warning(kind: str, message: str, **extra: Any) -> Dict[str, Any]:
    payload = {"type": kind, "severity": "warning", "message": message}
    payload.update(extra)
    return payload


def _validate_stages(stages: Sequence[Stage], issues: List[Dict[str, Any]], warnings: List[Dict[str, Any]]) -> None:
    if not stages:
        issues.append(_issue("pipeline", "At least one stage is required."))
        return
    seen_ids = set()
    seen_sub_ids = set()
    for stage in stages:
        label = f"{stage.name} (#{stage.id})"
        if stage.id in seen_ids:
            issues.append(_issue("duplicate_stage", f"Stage id {stage.id} is used more than once.", stage_id=stage.id))
        seen_ids.add(stage.id)
        if not _finite(stage.standard_productivity):
            issues.append(_issue("productivity", f"{label}: productivity must be a number.", stage_id=stage.id))
        elif stage.standard_productivity <= 0:
            # Zero productivity is allowed; the stage simply never clears work.
            warnings.append(
                _warning("productivity", f"{label}: productivity is not positive; work will accumulate.", stage_id=stage.id)
            )
        if not _finite(stage.efficiency) or stage.efficiency < 0:
            issues.append(_issue("efficiency", f"{label}: efficiency must be between 0 and 1.", stage_id=stage.id))
        elif stage.efficiency > 1:
            warnings.append(_warning("efficiency", f"{label}: efficiency above 1.0.", stage_id=stage.id))
        if not _finite(stage.travel_minutes) or not 0 <= stage.travel_minutes <= 60:
            issues.append(_issue("travel_time", f"{label}: travel time must be 0-60 minutes.", stage_id=stage.id))
        if stage.role_inferred:
            warnings.append(
                _warning(
                    "role",
                    f"{label}: no role given; treated as {stage.role.value} from its name.",
                    stage_id=stage.id,
                )
            )
        for sub in stage.substages:
            if sub.id in seen_sub_ids:
                issues.append(
                    _issue("duplicate_substage", f"Subprocess id {sub.id} is used more than once.", substage_id=sub.id)
                )
            seen_sub_ids.add(sub.id)
            if not _finite(sub.standard_productivity):
                issues.append(
                    _issue("productivity", f"{label} / {sub.name}: productivity must be a number.", substage_id=sub.id)
                )
            if not _finite(sub.efficiency) or sub.efficiency < 0:
                issues.append(
                    _issue("efficiency", f"{label} / {sub.name}: efficiency must be between 0 and 1.", substage_id=sub.id)
                )
            if not _finite(sub.travel_minutes) or not 0 <= sub.travel_minutes <= 60:
                issues.append(
                    _issue("travel_time", f"{label} / {sub.name}: travel time must be 0-60 minutes.", substage_id=sub.id)
                )


def _validate_hour_map(
    day_index: int, name: str, mapping, issues: List[Dict[str, Any]]
) -> None:
    for hour, value in mapping.items():
        if not isinstance(hour, int) or not 0 <= hour < HOURS_PER_DAY:
            issues.append(_issue(name, f"{day_label(day_index)}: {name} hour {hour!r} is outside 0-23.", day=day_index))
            continue
        if not _finite(value) or value < 0:
            issues.append(
                _issue(name, f"{day_label(day_index)}: {name} at {hour:02d}:00 must be a non-negative number.", day=day_index)
            )


def _validate_day(
    day_index: int,
    day: DayScenario,
    stage_ids: set,
    issues: List[Dict[str, Any]],
    warnings: List[Dict[str, Any]],
) -> None:
    label = day_label(day_index)
    if not isinstance(day.shift_start, int) or not 0 <= day.shift_start < HOURS_PER_DAY:
        issues.append(_issue("shift_start", f"{label}: shift start {day.shift_start!r} is outside 0-23.", day=day_index))
    if not _finite(day.volume) or day.volume < 0:
        issues.append(_issue("volume", f"{label}: volume must be a non-negative number.", day=day_index))
    for field_name in ("max_hc_t1", "max_hc_t2", "max_hc_t3"):
        value = getattr(day, field_name)
        if not _finite(value) or value < 0:
            issues.append(_issue("shift_cap", f"{label}: {field_name} must be zero or positive.", day=day_index))
    for field_name in ("limit_inbound", "limit_outbound", "consolidation"):
        value = getattr(day, field_name)
        if not _finite(value) or value < 0:
            issues.append(_issue(field_name, f"{label}: {field_name} must be a non-negative number.", day=day_index))
    _validate_hour_map(day_index, "efficiency", day.efficiency, issues)
    missing = [hour for hour in range(HOURS_PER_DAY) if hour not in day.efficiency]
    if missing:
        warnings.append(
            _warning(
                "efficiency",
                f"{label}: no efficiency set for {len(missing)} hour(s); assuming 100%.",
                day=day_index,
            )
        )
    if day.consolidation_override:
        _validate_hour_map(day_index, "consolidation", day.consolidation_override, issues)
    for stage_id, value in day.splits.items():
        if not _finite(value) or not 0 <= value <= 100:
            issues.append(
                _issue("split", f"{label}: split for stage {stage_id} must be 0-100%.", day=day_index, stage_id=stage_id)
            )
        elif stage_id not in stage_ids:
            warnings.append(
                _warning("split", f"{label}: split set for unknown stage {stage_id}.", day=day_index, stage_id=stage_id)
            )


def validate_planning_inputs(stages: Sequence[Stage], week: Sequence[DayScenario]) -> Dict[str, Any]:
    """Return validation findings for a stage list and a week of scenarios."""
    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    _validate_stages(stages, issues, warnings)
    if len(week) != DAYS_PER_WEEK:
        issues.append(_issue("week", f"Expected {DAYS_PER_WEEK} day scenarios, got {len(week)}."))
    stage_ids = {stage.id for stage in stages}
    for day_index, day in enumerate(week):
        _validate_day(day_index, day, stage_ids, issues, warnings)
    return {"issues": issues, "warnings": warnings}


def ensure_valid(stages: Sequence[Stage], week: Sequence[DayScenario]) -> Dict[str, Any]:
    report = validate_planning_inputs(stages, week)
    if report["issues"]:
        raise ConfigurationError(report["issues"])
    return report
