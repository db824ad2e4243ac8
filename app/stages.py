from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


class StageRole(str, Enum):
    RECEIVING = "receiving"
    PUTAWAY = "putaway"
    PICKING = "picking"
    SORTING = "sorting"
    PACKING = "packing"
    HANDOVER = "handover"
    GENERIC = "generic"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


INBOUND_ROLES = {StageRole.RECEIVING, StageRole.PUTAWAY}

# Ordered: the first keyword found in a normalized stage name wins.
_KEYWORD_RULES: List[Tuple[str, StageRole]] = [
    ("recebimento", StageRole.RECEIVING),
    ("receiving", StageRole.RECEIVING),
    ("putaway", StageRole.PUTAWAY),
    ("put-away", StageRole.PUTAWAY),
    ("put away", StageRole.PUTAWAY),
    ("putway", StageRole.PUTAWAY),
    ("armazenagem", StageRole.PUTAWAY),
    ("picking", StageRole.PICKING),
    ("separação", StageRole.PICKING),
    ("separacao", StageRole.PICKING),
    ("classificação", StageRole.SORTING),
    ("classificacao", StageRole.SORTING),
    ("sort", StageRole.SORTING),
    ("packing", StageRole.PACKING),
    ("embalagem", StageRole.PACKING),
    ("handover", StageRole.HANDOVER),
    ("expedição", StageRole.HANDOVER),
    ("expedicao", StageRole.HANDOVER),
    ("last mile", StageRole.HANDOVER),
]


def normalize_name(name: str) -> str:
    return (name or "").strip().lower()


def infer_role(name: str) -> StageRole:
    """Guess a role from a legacy display name.

    Only used when importing catalogs that predate the explicit role column.
    """
    label = normalize_name(name)
    if not label:
        return StageRole.GENERIC
    for keyword, role in _KEYWORD_RULES:
        if keyword in label:
            return role
    return StageRole.GENERIC


def coerce_role(value, name: str = "") -> StageRole:
    if isinstance(value, StageRole):
        return value
    label = normalize_name(str(value or ""))
    if not label:
        return infer_role(name)
    try:
        return StageRole(label)
    except ValueError:
        raise ValueError(f"Unknown stage role: {value!r}") from None


def default_direction(role: StageRole) -> Direction:
    return Direction.INBOUND if role in INBOUND_ROLES else Direction.OUTBOUND


def coerce_direction(value, role: StageRole) -> Direction:
    if isinstance(value, Direction):
        return value
    label = normalize_name(str(value or ""))
    if not label:
        return default_direction(role)
    try:
        return Direction(label)
    except ValueError:
        raise ValueError(f"Unknown stage direction: {value!r}") from None


def net_time_factor(travel_minutes: float, floor: float = 0.1) -> float:
    return max(floor, (60.0 - travel_minutes) / 60.0)


@dataclass(frozen=True)
class SubStage:
    id: int
    name: str
    standard_productivity: float
    efficiency: float = 1.0
    travel_minutes: float = 0.0

    def effective_productivity(self, net_time_floor: float = 0.1) -> float:
        return self.standard_productivity * self.efficiency * net_time_factor(self.travel_minutes, net_time_floor)


@dataclass(frozen=True)
class Stage:
    id: int
    name: str
    role: StageRole
    standard_productivity: float
    efficiency: float = 1.0
    travel_minutes: float = 0.0
    direction: Direction = Direction.OUTBOUND
    substages: Tuple[SubStage, ...] = field(default_factory=tuple)
    # Set when no role was given and it had to be guessed from the name.
    role_inferred: bool = field(default=False, compare=False)

    @classmethod
    def build(
        cls,
        id: int,
        name: str,
        standard_productivity: float,
        *,
        role=None,
        direction=None,
        efficiency: float = 1.0,
        travel_minutes: float = 0.0,
        substages: Iterable[SubStage] = (),
    ) -> "Stage":
        resolved_role = coerce_role(role, name)
        inferred = not isinstance(role, StageRole) and not normalize_name(str(role or ""))
        return cls(
            id=int(id),
            name=name,
            role=resolved_role,
            standard_productivity=float(standard_productivity),
            efficiency=float(efficiency),
            travel_minutes=float(travel_minutes),
            direction=coerce_direction(direction, resolved_role),
            substages=tuple(substages),
            role_inferred=inferred,
        )

    @property
    def is_inbound(self) -> bool:
        return self.direction is Direction.INBOUND


class Pipeline:
    """Ordered stage topology for one simulation run."""

    def __init__(self, stages: Sequence[Stage]) -> None:
        self.stages: Tuple[Stage, ...] = tuple(stages)
        self._index: Dict[int, int] = {stage.id: idx for idx, stage in enumerate(self.stages)}
        picking = [stage for stage in self.stages if stage.role is StageRole.PICKING]
        # The last picking stage in list order feeds the sorting lanes.
        self.picking: Optional[Stage] = picking[-1] if picking else None
        self.sorting: Tuple[Stage, ...] = tuple(stage for stage in self.stages if stage.role is StageRole.SORTING)

    def __iter__(self):
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def position(self, stage: Stage) -> int:
        return self._index[stage.id]

    def previous(self, stage: Stage) -> Optional[Stage]:
        idx = self.position(stage)
        if idx == 0:
            return None
        return self.stages[idx - 1]

    def is_entry(self, stage: Stage) -> bool:
        return self.position(stage) == 0 or stage.role is StageRole.RECEIVING

    def outbound_ids(self) -> List[int]:
        return [stage.id for stage in self.stages if not stage.is_inbound]

    def inbound_ids(self) -> List[int]:
        return [stage.id for stage in self.stages if stage.is_inbound]


def default_split_pct(stage: Stage) -> float:
    return 50.0 if stage.role is StageRole.SORTING else 100.0


def default_split_settings(stages: Iterable[Stage]) -> Dict[int, float]:
    return {stage.id: default_split_pct(stage) for stage in stages}
