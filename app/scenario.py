from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from matrices import default_efficiency_map
from stages import Stage, SubStage, default_split_settings
from timegrid import DAYS_PER_WEEK

DEFAULT_LIMIT_INBOUND = 50000.0
DEFAULT_LIMIT_OUTBOUND = 130000.0


@dataclass(frozen=True)
class DayScenario:
    volume: float = 0.0
    consolidation: float = 100.0
    shift_start: int = 0
    limit_inbound: float = DEFAULT_LIMIT_INBOUND
    limit_outbound: float = DEFAULT_LIMIT_OUTBOUND
    max_hc_t1: int = 0
    max_hc_t2: int = 0
    max_hc_t3: int = 0
    efficiency: Mapping[int, float] = field(default_factory=default_efficiency_map)
    splits: Mapping[int, float] = field(default_factory=dict)
    consolidation_override: Optional[Mapping[int, float]] = None

    def split_ratio(self, stage_id: int, default_pct: float = 100.0) -> float:
        """Fraction of upstream output routed to the stage.

        Stages without an explicit split fall back to ``default_pct``; the
        planner passes the role default, so sorting lanes get half either way.
        """
        value = self.splits.get(stage_id)
        if value is None:
            return default_pct / 100.0
        return float(value) / 100.0

    def shift_cap(self, shift: int) -> int:
        if shift == 1:
            return self.max_hc_t1
        if shift == 2:
            return self.max_hc_t2
        return self.max_hc_t3


def _number(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _int_keyed(mapping: Any) -> Dict[int, float]:
    if not isinstance(mapping, Mapping):
        return {}
    result: Dict[int, float] = {}
    for key, value in mapping.items():
        if isinstance(value, Mapping):
            # Legacy payloads store split settings as {"split": 50}.
            value = value.get("split")
        if value is None:
            continue
        result[int(key)] = float(value)
    return result


def day_from_payload(payload: Mapping[str, Any], stages: Sequence[Stage] = ()) -> DayScenario:
    """Build a DayScenario from a camelCase JSON payload."""
    efficiency = _int_keyed(payload.get("efficiencyMatrix"))
    if not efficiency:
        efficiency = default_efficiency_map()
    splits = default_split_settings(stages)
    splits.update(_int_keyed(payload.get("parentSettings") or payload.get("splits")))
    override = _int_keyed(payload.get("consolidationMatrix")) or None
    return DayScenario(
        volume=float(payload.get("volume") or 0.0),
        consolidation=_number(payload.get("consolidation"), 100.0),
        shift_start=int(payload.get("shiftStart") or 0),
        limit_inbound=float(payload.get("limitInbound") or DEFAULT_LIMIT_INBOUND),
        limit_outbound=float(payload.get("limitOutbound") or DEFAULT_LIMIT_OUTBOUND),
        max_hc_t1=int(payload.get("maxHcT1") or 0),
        max_hc_t2=int(payload.get("maxHcT2") or 0),
        max_hc_t3=int(payload.get("maxHcT3") or 0),
        efficiency=efficiency,
        splits=splits,
        consolidation_override=override,
    )


def day_to_payload(day: DayScenario) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "volume": day.volume,
        "consolidation": day.consolidation,
        "shiftStart": day.shift_start,
        "limitInbound": day.limit_inbound,
        "limitOutbound": day.limit_outbound,
        "maxHcT1": day.max_hc_t1,
        "maxHcT2": day.max_hc_t2,
        "maxHcT3": day.max_hc_t3,
        "efficiencyMatrix": {str(hour): value for hour, value in sorted(day.efficiency.items())},
        "parentSettings": {str(stage_id): {"split": value} for stage_id, value in sorted(day.splits.items())},
    }
    if day.consolidation_override:
        payload["consolidationMatrix"] = {
            str(hour): value for hour, value in sorted(day.consolidation_override.items())
        }
    return payload


def stage_from_payload(payload: Mapping[str, Any]) -> Stage:
    substages = [
        SubStage(
            id=int(entry["id"]),
            name=str(entry.get("name") or f"Subprocess {entry['id']}"),
            standard_productivity=float(entry.get("standardProductivity") or 0.0),
            efficiency=_number(entry.get("efficiency"), 1.0),
            travel_minutes=float(entry.get("travelTime") or 0.0),
        )
        for entry in payload.get("subprocesses") or []
    ]
    return Stage.build(
        payload["id"],
        str(payload.get("name") or f"Process {payload['id']}"),
        float(payload.get("standardProductivity") or 0.0),
        role=payload.get("role"),
        direction=payload.get("direction") or payload.get("type"),
        efficiency=_number(payload.get("efficiency"), 1.0),
        travel_minutes=float(payload.get("travelTime") or 0.0),
        substages=substages,
    )


def check_process_payload(payload: Mapping[str, Any]) -> Stage:
    """Parse a catalog save payload the way a planning run would read it.

    Catalog ids are assigned by the database, so placeholders stand in for
    missing process and subprocess ids. Raises ValueError or TypeError.
    """
    subprocesses = [
        {**entry, "id": index}
        for index, entry in enumerate(payload.get("subprocesses") or [], start=1)
        if isinstance(entry, Mapping)
    ]
    return stage_from_payload({**payload, "id": payload.get("id") or 0, "subprocesses": subprocesses})


def stage_from_process(process) -> Stage:
    """Convert a catalog ``Process`` row into an immutable Stage.

    Catalog rows must carry their stored role; the name is never consulted.
    """
    if not process.role:
        raise ValueError(f"Process {process.name!r} has no stored role")
    return Stage.build(
        process.id,
        process.name,
        process.standard_productivity,
        role=process.role,
        direction=process.direction or None,
        efficiency=process.efficiency,
        travel_minutes=process.travel_minutes,
        substages=[
            SubStage(
                id=sub.id,
                name=sub.name,
                standard_productivity=sub.standard_productivity,
                efficiency=sub.efficiency,
                travel_minutes=sub.travel_minutes,
            )
            for sub in process.subprocesses
        ],
    )


def blank_week(stages: Sequence[Stage] = ()) -> List[DayScenario]:
    splits = default_split_settings(stages)
    return [DayScenario(splits=dict(splits)) for _ in range(DAYS_PER_WEEK)]


def week_from_volumes(volumes: Iterable[float], stages: Sequence[Stage] = (), **overrides: Any) -> List[DayScenario]:
    splits = default_split_settings(stages)
    return [DayScenario(volume=float(volume), splits=dict(splits), **overrides) for volume in volumes]
