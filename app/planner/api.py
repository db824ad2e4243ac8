from __future__ import annotations

import datetime
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .engine import SimulationResult, WeeklyPlanner
from database import get_week_forecast, load_pipeline, record_audit_log
from estimator import Estimator, estimator_from_policy
from policy import load_active_policy
from scenario import DayScenario, week_from_volumes
from stages import Pipeline, Stage
from timegrid import day_label
from validation import ensure_valid

DEFAULT_MAX_WORKERS = 4


def summarize_days(result: SimulationResult, week: Sequence[DayScenario], stages: Sequence[Stage]) -> List[Dict[str, Any]]:
    """Per-day peak headcount, headcount-hours and end-of-day backlog split by direction."""
    pipeline = Pipeline(stages)
    inbound_ids = set(pipeline.inbound_ids())
    summaries: List[Dict[str, Any]] = []
    for day_index, scenario in enumerate(week):
        hourly_totals: Dict[int, int] = {}
        for cell in result.cells:
            if cell.day != day_index:
                continue
            hourly_totals[cell.hour] = hourly_totals.get(cell.hour, 0) + cell.total_hc
        backlogs = result.day_end_backlogs[day_index] if day_index < len(result.day_end_backlogs) else {}
        backlog_in = sum(value for stage_id, value in backlogs.items() if stage_id in inbound_ids)
        backlog_out = sum(value for stage_id, value in backlogs.items() if stage_id not in inbound_ids)
        summaries.append(
            {
                "day": day_index,
                "label": day_label(day_index),
                "volume": scenario.volume,
                "peak_hc": max(hourly_totals.values()) if hourly_totals else 0,
                "hc_hours": sum(hourly_totals.values()),
                "backlog_inbound": round(backlog_in, 2),
                "backlog_outbound": round(backlog_out, 2),
                "inbound_over_limit": backlog_in > scenario.limit_inbound,
                "outbound_over_limit": backlog_out > scenario.limit_outbound,
            }
        )
    return summaries


def _cell_payload(cell) -> Dict[str, Any]:
    return {
        "stageId": cell.stage_id,
        "day": cell.day,
        "hour": cell.hour,
        "input": cell.input,
        "backlogIn": cell.backlog_in,
        "efficiency": cell.efficiency,
        "effectiveProductivity": cell.effective_productivity,
        "directHc": cell.direct_hc,
        "indirectHc": cell.indirect_hc,
        "totalHc": cell.total_hc,
        "capacity": cell.capacity,
        "output": cell.output,
        "backlog": cell.backlog,
        "throttled": cell.throttled,
        "estimatorUsed": cell.estimator_used,
    }


def result_payload(
    result: SimulationResult,
    week: Sequence[DayScenario],
    stages: Sequence[Stage],
    *,
    include_trace: bool = False,
    warnings: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "headcount": result.headcount_keys(),
        "days": summarize_days(result, week, stages),
        "finalBacklogs": {str(stage_id): value for stage_id, value in result.final_backlogs.items()},
        "warnings": warnings or [],
    }
    if include_trace:
        payload["trace"] = [_cell_payload(cell) for cell in result.cells]
    return payload


def plan_week(
    stages: Sequence[Stage],
    week: Sequence[DayScenario],
    *,
    policy: Optional[Dict] = None,
    estimator: Optional[Estimator] = None,
    initial_backlogs: Optional[Mapping[int, float]] = None,
) -> SimulationResult:
    """Validate the inputs, then recommend headcount for every stage and hour of the week."""
    ensure_valid(stages, week)
    planner = WeeklyPlanner(stages, policy=policy, estimator=estimator)
    return planner.run(week, initial_backlogs=initial_backlogs)


def evaluate_plan(
    stages: Sequence[Stage],
    week: Sequence[DayScenario],
    plans: Sequence[Mapping[str, int]],
    *,
    policy: Optional[Dict] = None,
    initial_backlogs: Optional[Mapping[int, float]] = None,
) -> SimulationResult:
    """Replay a manually entered headcount plan and report the resulting flow."""
    ensure_valid(stages, week)
    planner = WeeklyPlanner(stages, policy=policy)
    return planner.evaluate(week, plans, initial_backlogs=initial_backlogs)


def run_scenarios(
    stages: Sequence[Stage],
    scenarios: Mapping[str, Sequence[DayScenario]],
    *,
    policy: Optional[Dict] = None,
    estimator_factory: Optional[Callable[[], Estimator]] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> Dict[str, SimulationResult]:
    """Plan several what-if weeks concurrently; every run owns its own state."""
    for week in scenarios.values():
        ensure_valid(stages, week)

    def _run(week: Sequence[DayScenario]) -> SimulationResult:
        estimator = estimator_factory() if estimator_factory else None
        return WeeklyPlanner(stages, policy=policy, estimator=estimator).run(week)

    results: Dict[str, SimulationResult] = {}
    with ThreadPoolExecutor(max_workers=max(1, int(max_workers or 1))) as executor:
        futures = {name: executor.submit(_run, week) for name, week in scenarios.items()}
        for name, future in futures.items():
            results[name] = future.result()
    return results


def plan_week_from_catalog(
    session_factory: Callable,
    week_start: datetime.date,
    actor: str,
    *,
    warehouse: Optional[str] = None,
    scenario_overrides: Optional[Dict[str, Any]] = None,
    estimator: Optional[Estimator] = None,
) -> Dict[str, Any]:
    """Load the stored catalog, forecast and policy, plan the week and audit the run."""
    if week_start is None:
        raise ValueError("week_start is required.")
    with session_factory() as session:
        policy = load_active_policy(session)
        stages = load_pipeline(session, warehouse)
        forecast = get_week_forecast(session, week_start, warehouse or "All")
        volumes = [row.inbound_volume if row else 0.0 for row in forecast]
        week = week_from_volumes(volumes, stages, **(scenario_overrides or {}))
        report = ensure_valid(stages, week)
        active_estimator = estimator if estimator is not None else estimator_from_policy(policy)
        try:
            result = WeeklyPlanner(stages, policy=policy, estimator=active_estimator).run(week)
        finally:
            if estimator is None and hasattr(active_estimator, "close"):
                active_estimator.close()
        payload = result_payload(result, week, stages, warnings=report["warnings"])
        payload["week_start"] = week_start.isoformat()
        record_audit_log(
            session,
            user_id=actor or "system",
            action="PLAN_WEEK",
            payload={
                "week_start": week_start.isoformat(),
                "stages": len(stages),
                "peak_hc": max((day["peak_hc"] for day in payload["days"]), default=0),
            },
        )
    return payload
