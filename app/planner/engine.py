from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from estimator import EstimateQuery, Estimator, consult
from matrices import consolidation_pct, efficiency_pct, receiving_share_pct
from policy import PlanningSettings, settings_from_policy
from scenario import DayScenario
from stages import Pipeline, Stage, StageRole, default_split_pct, net_time_factor
from timegrid import in_receiving_window, receiving_window_hours, shift_for_hour, shift_hours

DEFAULT_SETTINGS = PlanningSettings()
OUTBOUND_PRESSURE_ROLES = {StageRole.PACKING, StageRole.HANDOVER}

HeadcountKey = Tuple[str, int, int, int]


@dataclass(frozen=True)
class SimulationCell:
    stage_id: int
    day: int
    hour: int
    input: float
    backlog_in: float
    efficiency: float
    effective_productivity: float
    direct_hc: int
    indirect_hc: int
    total_hc: int
    capacity: float
    output: float
    backlog: float
    throttled: bool = False
    estimator_used: bool = False
    substage_hc: Tuple[Tuple[int, int], ...] = ()

    @property
    def load(self) -> float:
        return self.input + self.backlog_in


@dataclass(frozen=True)
class Recommendation:
    math_hc: int
    recovery_hc: int
    estimate: Optional[float]
    headcount: int
    estimator_used: bool = False
    capped: bool = False
    blocked: bool = False


@dataclass(frozen=True)
class SimulationState:
    """Backlog carried per stage plus the outputs already realized in the current hour.

    ``opening_backlogs`` is the snapshot taken when the hour began; cross-stage
    reads (picking pressure, outbound totals) use it so that stage order inside
    an hour does not change what a stage observes about the others.
    """

    backlogs: Mapping[int, float] = field(default_factory=dict)
    opening_backlogs: Mapping[int, float] = field(default_factory=dict)
    hour_outputs: Mapping[int, float] = field(default_factory=dict)
    day: int = 0
    hour: int = 0

    @classmethod
    def initial(cls, stages: Iterable[Stage], backlogs: Optional[Mapping[int, float]] = None) -> "SimulationState":
        seeded = {stage.id: 0.0 for stage in stages}
        for stage_id, value in (backlogs or {}).items():
            seeded[int(stage_id)] = max(0.0, float(value))
        return cls(backlogs=seeded, opening_backlogs=dict(seeded))

    def begin_hour(self, day: int, hour: int) -> "SimulationState":
        return SimulationState(
            backlogs=dict(self.backlogs),
            opening_backlogs=dict(self.backlogs),
            hour_outputs={},
            day=day,
            hour=hour,
        )

    def backlog(self, stage_id: int) -> float:
        return self.backlogs.get(stage_id, 0.0)

    def opening_backlog(self, stage_id: int) -> float:
        return self.opening_backlogs.get(stage_id, 0.0)

    def output(self, stage_id: int) -> float:
        return self.hour_outputs.get(stage_id, 0.0)

    def with_result(self, stage_id: int, output: float, backlog: float) -> "SimulationState":
        backlogs = dict(self.backlogs)
        backlogs[stage_id] = backlog
        outputs = dict(self.hour_outputs)
        outputs[stage_id] = output
        return SimulationState(
            backlogs=backlogs,
            opening_backlogs=self.opening_backlogs,
            hour_outputs=outputs,
            day=self.day,
            hour=self.hour,
        )


def resolve_input(
    state: SimulationState,
    stage: Stage,
    day_index: int,
    hour: int,
    scenario: DayScenario,
    pipeline: Pipeline,
    settings: PlanningSettings = DEFAULT_SETTINGS,
) -> float:
    """Volume reaching a stage this hour, from the day forecast or upstream output."""
    if pipeline.is_entry(stage):
        if settings.receiving_arrival == "share_curve":
            return scenario.volume * receiving_share_pct(day_index, hour) / 100.0
        if in_receiving_window(scenario.shift_start, hour):
            return scenario.volume / receiving_window_hours(scenario.shift_start)
        return 0.0
    previous = pipeline.previous(stage)
    if stage.role is StageRole.PICKING:
        rate = consolidation_pct(day_index, hour, scenario.consolidation_override)
        return state.output(previous.id) * rate / 100.0
    if stage.role is StageRole.SORTING and pipeline.picking is not None:
        return state.output(pipeline.picking.id) * scenario.split_ratio(stage.id, default_split_pct(stage))
    if stage.role is StageRole.PACKING and pipeline.sorting:
        return sum(state.output(sorter.id) for sorter in pipeline.sorting)
    return state.output(previous.id) * scenario.split_ratio(stage.id, default_split_pct(stage))


def effective_productivity(
    stage: Stage, hourly_efficiency_pct: float, settings: PlanningSettings = DEFAULT_SETTINGS
) -> float:
    return (
        stage.standard_productivity
        * stage.efficiency
        * net_time_factor(stage.travel_minutes, settings.net_time_floor)
        * (hourly_efficiency_pct / 100.0)
    )


def outbound_backlog(state: SimulationState, pipeline: Pipeline) -> float:
    return sum(state.opening_backlog(stage_id) for stage_id in pipeline.outbound_ids())


def picking_backlog(state: SimulationState, pipeline: Pipeline) -> float:
    if pipeline.picking is None:
        return 0.0
    return state.opening_backlog(pipeline.picking.id)


def recovery_headcount(
    stage: Stage,
    backlog: float,
    eff_prod: float,
    system_outbound_backlog: float,
    settings: PlanningSettings = DEFAULT_SETTINGS,
) -> int:
    """Staff needed to work a stage's backlog down within its role's clear window."""
    if eff_prod <= 0 or backlog <= 0:
        return 0
    role = stage.role
    if role is StageRole.PUTAWAY:
        backlog_age = backlog / eff_prod
        if backlog_age > settings.putaway_sla_hours / 2.0:
            clear_hours = settings.putaway_aggressive_divisor
        else:
            clear_hours = settings.putaway_sla_hours
    elif role in OUTBOUND_PRESSURE_ROLES:
        system_hours = system_outbound_backlog / settings.outbound_assumed_throughput
        if system_hours > settings.outbound_critical_hours:
            clear_hours = settings.outbound_fast_clear_hours
        else:
            clear_hours = settings.outbound_normal_clear_hours
    elif role is StageRole.PICKING:
        clear_hours = settings.picking_default_clear_hours
        for threshold, hours in settings.picking_tiers:
            if backlog > threshold:
                clear_hours = hours
                break
    else:
        return 0
    return math.ceil(backlog / clear_hours / eff_prod)


def fuse_estimate(math_hc: int, estimate: Optional[float], settings: PlanningSettings = DEFAULT_SETTINGS) -> Tuple[int, bool]:
    """Blend an estimator suggestion with the deterministic headcount.

    Returns the fused headcount and whether the estimate survived the floor check.
    """
    if estimate is None:
        return math_hc, False
    fused = math.ceil(settings.estimator_weight * estimate + settings.deterministic_weight * math_hc)
    if fused < settings.floor_ratio * math_hc:
        return math_hc, False
    return fused, True


def is_blocked_hour(day_index: int, hour: int, hourly_efficiency_pct: float, settings: PlanningSettings = DEFAULT_SETTINGS) -> bool:
    if day_index == settings.shutdown_day and hour >= settings.shutdown_hour:
        return True
    return hourly_efficiency_pct < settings.min_viable_efficiency_pct


def recommend_headcount(
    state: SimulationState,
    stage: Stage,
    day_index: int,
    hour: int,
    scenario: DayScenario,
    stage_input: float,
    eff_prod: float,
    hourly_efficiency_pct: float,
    pipeline: Pipeline,
    settings: PlanningSettings = DEFAULT_SETTINGS,
    estimator: Optional[Estimator] = None,
) -> Recommendation:
    if is_blocked_hour(day_index, hour, hourly_efficiency_pct, settings):
        return Recommendation(0, 0, None, 0, blocked=True)
    if eff_prod <= 0:
        return Recommendation(0, 0, None, 0, blocked=True)
    backlog = state.backlog(stage.id)
    total_load = stage_input + backlog

    math_hc = math.ceil(stage_input / eff_prod)
    recovery_hc = recovery_headcount(stage, backlog, eff_prod, outbound_backlog(state, pipeline), settings)
    math_hc = max(math_hc, recovery_hc)

    query = EstimateQuery(
        stageId=stage.id,
        load=total_load,
        hour=hour,
        dayIndex=day_index,
        shiftStart=scenario.shift_start,
    )
    estimate = consult(estimator, query)
    suggested, estimator_used = fuse_estimate(math_hc, estimate, settings)

    # Never staff above what the available work can consume.
    if suggested * eff_prod > total_load:
        suggested = math.ceil(total_load / eff_prod)

    capped = False
    cap = scenario.shift_cap(shift_for_hour(hour, settings.windows))
    if cap > 0 and suggested > cap:
        suggested = cap
        capped = True
    return Recommendation(
        math_hc=math_hc,
        recovery_hc=recovery_hc,
        estimate=estimate,
        headcount=int(suggested),
        estimator_used=estimator_used,
        capped=capped,
    )


def throttle_factor(state: SimulationState, stage: Stage, pipeline: Pipeline, settings: PlanningSettings = DEFAULT_SETTINGS) -> float:
    if stage.role is StageRole.PUTAWAY and picking_backlog(state, pipeline) > settings.picking_critical_backlog:
        return settings.putaway_capacity_factor
    return 1.0


def realize_output(headcount: int, eff_prod: float, available: float, factor: float = 1.0) -> Tuple[float, float, float]:
    """Return (capacity, output, backlog) for a staffed hour."""
    capacity = max(0, headcount) * max(0.0, eff_prod) * factor
    output = min(available, capacity)
    backlog = max(0.0, available - output)
    return capacity, output, backlog


def size_substages(stage: Stage, output: float, settings: PlanningSettings = DEFAULT_SETTINGS) -> Tuple[Tuple[int, int], ...]:
    sized: List[Tuple[int, int]] = []
    for sub in stage.substages:
        sub_prod = sub.effective_productivity(settings.net_time_floor)
        headcount = 0
        if sub_prod > 0 and output > 0:
            headcount = math.ceil(output / sub_prod)
        sized.append((sub.id, headcount))
    return tuple(sized)


def step(
    state: SimulationState,
    stage: Stage,
    day_index: int,
    hour: int,
    scenario: DayScenario,
    *,
    pipeline: Pipeline,
    settings: PlanningSettings = DEFAULT_SETTINGS,
    estimator: Optional[Estimator] = None,
) -> Tuple[SimulationState, SimulationCell]:
    """Simulate one stage for one hour and recommend its headcount."""
    stage_input = resolve_input(state, stage, day_index, hour, scenario, pipeline, settings)
    hourly_pct = efficiency_pct(scenario.efficiency, hour)
    eff_prod = effective_productivity(stage, hourly_pct, settings)
    backlog_in = state.backlog(stage.id)

    recommendation = recommend_headcount(
        state, stage, day_index, hour, scenario, stage_input, eff_prod, hourly_pct, pipeline, settings, estimator
    )
    factor = throttle_factor(state, stage, pipeline, settings)
    capacity, output, backlog = realize_output(recommendation.headcount, eff_prod, stage_input + backlog_in, factor)
    substage_hc = size_substages(stage, output, settings)
    indirect = sum(hc for _, hc in substage_hc)

    cell = SimulationCell(
        stage_id=stage.id,
        day=day_index,
        hour=hour,
        input=stage_input,
        backlog_in=backlog_in,
        efficiency=hourly_pct,
        effective_productivity=eff_prod,
        direct_hc=recommendation.headcount,
        indirect_hc=indirect,
        total_hc=recommendation.headcount + indirect,
        capacity=capacity,
        output=output,
        backlog=backlog,
        throttled=factor < 1.0,
        estimator_used=recommendation.estimator_used,
        substage_hc=substage_hc,
    )
    return state.with_result(stage.id, output, backlog), cell


def evaluate_step(
    state: SimulationState,
    stage: Stage,
    day_index: int,
    hour: int,
    scenario: DayScenario,
    direct_hc: int,
    substage_hc: Mapping[int, int],
    *,
    pipeline: Pipeline,
    settings: PlanningSettings = DEFAULT_SETTINGS,
) -> Tuple[SimulationState, SimulationCell]:
    """Simulate one stage for one hour with a fixed, externally supplied headcount."""
    stage_input = resolve_input(state, stage, day_index, hour, scenario, pipeline, settings)
    hourly_pct = efficiency_pct(scenario.efficiency, hour)
    eff_prod = effective_productivity(stage, hourly_pct, settings)
    backlog_in = state.backlog(stage.id)
    capacity, output, backlog = realize_output(direct_hc, eff_prod, stage_input + backlog_in)
    sized = tuple((sub.id, int(substage_hc.get(sub.id, 0))) for sub in stage.substages)
    indirect = sum(hc for _, hc in sized)
    cell = SimulationCell(
        stage_id=stage.id,
        day=day_index,
        hour=hour,
        input=stage_input,
        backlog_in=backlog_in,
        efficiency=hourly_pct,
        effective_productivity=eff_prod,
        direct_hc=int(direct_hc),
        indirect_hc=indirect,
        total_hc=int(direct_hc) + indirect,
        capacity=capacity,
        output=output,
        backlog=backlog,
        substage_hc=sized,
    )
    return state.with_result(stage.id, output, backlog), cell


@dataclass
class SimulationResult:
    cells: List[SimulationCell]
    headcount: Dict[HeadcountKey, int]
    final_state: SimulationState
    day_end_backlogs: List[Dict[int, float]]
    _by_slot: Dict[Tuple[int, int, int], SimulationCell] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._by_slot = {(cell.stage_id, cell.day, cell.hour): cell for cell in self.cells}

    def cell(self, stage_id: int, day: int, hour: int) -> Optional[SimulationCell]:
        return self._by_slot.get((stage_id, day, hour))

    def cells_for(self, stage_id: int, day: Optional[int] = None) -> List[SimulationCell]:
        return [
            cell for cell in self.cells if cell.stage_id == stage_id and (day is None or cell.day == day)
        ]

    def headcount_keys(self) -> Dict[str, int]:
        """Headcount keyed as ``P-<stage>-<hour>-<day>`` / ``S-<substage>-<hour>-<day>``."""
        return {f"{kind}-{ident}-{hour}-{day}": value for (kind, ident, hour, day), value in self.headcount.items()}

    @property
    def final_backlogs(self) -> Dict[int, float]:
        return dict(self.final_state.backlogs)


def _record(headcount: Dict[HeadcountKey, int], cell: SimulationCell) -> None:
    headcount[("P", cell.stage_id, cell.hour, cell.day)] = cell.direct_hc
    for sub_id, value in cell.substage_hc:
        headcount[("S", sub_id, cell.hour, cell.day)] = value


class WeeklyPlanner:
    """Walks days 0..6 in shift order, carrying every stage's backlog across hours and days."""

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        policy: Optional[Dict] = None,
        settings: Optional[PlanningSettings] = None,
        estimator: Optional[Estimator] = None,
    ) -> None:
        self.pipeline = Pipeline(stages)
        self.settings = settings or settings_from_policy(policy)
        self.estimator = estimator

    def run(
        self,
        week: Sequence[DayScenario],
        *,
        initial_backlogs: Optional[Mapping[int, float]] = None,
    ) -> SimulationResult:
        state = SimulationState.initial(self.pipeline, initial_backlogs)
        cells: List[SimulationCell] = []
        headcount: Dict[HeadcountKey, int] = {}
        day_end: List[Dict[int, float]] = []
        for day_index, scenario in enumerate(week):
            for hour in shift_hours(scenario.shift_start):
                state = state.begin_hour(day_index, hour)
                for stage in self.pipeline:
                    state, cell = step(
                        state,
                        stage,
                        day_index,
                        hour,
                        scenario,
                        pipeline=self.pipeline,
                        settings=self.settings,
                        estimator=self.estimator,
                    )
                    cells.append(cell)
                    _record(headcount, cell)
            day_end.append(dict(state.backlogs))
        return SimulationResult(cells=cells, headcount=headcount, final_state=state, day_end_backlogs=day_end)

    def evaluate(
        self,
        week: Sequence[DayScenario],
        plans: Sequence[Mapping[str, int]],
        *,
        initial_backlogs: Optional[Mapping[int, float]] = None,
    ) -> SimulationResult:
        """Replay a fixed headcount plan (``P-<stage>-<hour>`` / ``S-<sub>-<hour>`` per day)."""
        state = SimulationState.initial(self.pipeline, initial_backlogs)
        cells: List[SimulationCell] = []
        headcount: Dict[HeadcountKey, int] = {}
        day_end: List[Dict[int, float]] = []
        for day_index, scenario in enumerate(week):
            plan = plans[day_index] if day_index < len(plans) else {}
            for hour in shift_hours(scenario.shift_start):
                state = state.begin_hour(day_index, hour)
                for stage in self.pipeline:
                    direct = _plan_value(plan, "P", stage.id, hour)
                    subs = {sub.id: _plan_value(plan, "S", sub.id, hour) for sub in stage.substages}
                    state, cell = evaluate_step(
                        state,
                        stage,
                        day_index,
                        hour,
                        scenario,
                        direct,
                        subs,
                        pipeline=self.pipeline,
                        settings=self.settings,
                    )
                    cells.append(cell)
                    _record(headcount, cell)
            day_end.append(dict(state.backlogs))
        return SimulationResult(cells=cells, headcount=headcount, final_state=state, day_end_backlogs=day_end)


def _plan_value(plan: Mapping[str, int], kind: str, ident: int, hour: int) -> int:
    raw = plan.get(f"{kind}-{ident}-{hour}", 0)
    try:
        return max(0, int(raw or 0))
    except (TypeError, ValueError):
        return 0
