from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload, sessionmaker

from scenario import stage_from_process
from stages import Stage, StageRole, coerce_direction, coerce_role, infer_role


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
PLANNER_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'planner.db').as_posix()}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _float_or(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


class Base(DeclarativeBase):
    """Metadata for catalog, forecast, policy and audit tables living in planner.db."""

    pass


class Process(Base):
    __tablename__ = "processes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    direction: Mapped[str] = mapped_column(String(12), nullable=False, default="")
    warehouse: Mapped[str] = mapped_column(String(40), nullable=False, default="All")
    standard_productivity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    efficiency: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    travel_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    subprocesses: Mapped[List["Subprocess"]] = relationship(
        back_populates="process", cascade="all, delete-orphan", order_by="Subprocess.id"
    )


class Subprocess(Base):
    __tablename__ = "subprocesses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    process_id: Mapped[int] = mapped_column(ForeignKey("processes.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    standard_productivity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    efficiency: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    travel_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    process: Mapped[Process] = relationship(back_populates="subprocesses")


class DailyForecast(Base):
    __tablename__ = "daily_forecasts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    forecast_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    warehouse: Mapped[str] = mapped_column(String(40), nullable=False, default="All")
    inbound_volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    outbound_volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("forecast_date", "warehouse", name="uq_daily_forecast_date_warehouse"),
    )


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Simulation")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


planner_engine = create_engine(
    PLANNER_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=planner_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(planner_engine)
    with SessionLocal() as session:
        backfill_process_roles(session)


# ---------------------------------------------------------------------------
# Process catalog


def list_processes(session, warehouse: Optional[str] = None) -> List[Process]:
    stmt = (
        select(Process)
        .options(selectinload(Process.subprocesses))
        .order_by(Process.sort_order.asc(), Process.id.asc())
    )
    processes = list(session.scalars(stmt))
    if warehouse:
        # Catalog rows tagged "All" (or left blank) belong to every warehouse.
        processes = [p for p in processes if not p.warehouse or p.warehouse in {warehouse, "All"}]
    return processes


def load_pipeline(session, warehouse: Optional[str] = None) -> List[Stage]:
    """Return the catalog as ordered, immutable stages ready for simulation."""
    return [stage_from_process(process) for process in list_processes(session, warehouse)]


def process_to_dict(process: Process) -> Dict[str, Any]:
    return {
        "id": process.id,
        "name": process.name,
        "role": process.role,
        "direction": process.direction,
        "warehouse": process.warehouse,
        "standardProductivity": process.standard_productivity,
        "efficiency": process.efficiency,
        "travelTime": process.travel_minutes,
        "sortOrder": process.sort_order,
        "subprocesses": [
            {
                "id": sub.id,
                "name": sub.name,
                "standardProductivity": sub.standard_productivity,
                "efficiency": sub.efficiency,
                "travelTime": sub.travel_minutes,
            }
            for sub in process.subprocesses
        ],
    }


def upsert_process(session, payload: Dict[str, Any]) -> Process:
    """Create or update a process and replace its subprocess rows."""
    process_id = payload.get("id")
    process: Optional[Process] = session.get(Process, int(process_id)) if process_id else None
    name = (payload.get("name") or (process.name if process else "") or "Process").strip()
    # The role is fixed when the process is saved; later renames keep the stored one.
    if payload.get("role") or process is None or not process.role:
        role = coerce_role(payload.get("role"), name)
    else:
        role = StageRole(process.role)
    direction = coerce_direction(payload.get("direction") or payload.get("type"), role)
    if process is None:
        process = Process(name=name)
        session.add(process)
    process.name = name
    process.role = role.value
    process.direction = direction.value
    process.warehouse = (payload.get("warehouse") or "All").strip() or "All"
    process.standard_productivity = float(payload.get("standardProductivity") or 0.0)
    process.efficiency = _float_or(payload.get("efficiency"), 1.0)
    process.travel_minutes = float(payload.get("travelTime") or 0.0)
    if payload.get("sortOrder") is not None:
        process.sort_order = int(payload["sortOrder"])
    session.flush()
    # Replace subprocess rows
    session.execute(delete(Subprocess).where(Subprocess.process_id == process.id))
    session.expire(process, ["subprocesses"])
    for entry in payload.get("subprocesses") or []:
        session.add(
            Subprocess(
                process_id=process.id,
                name=(entry.get("name") or "Subprocess").strip(),
                standard_productivity=float(entry.get("standardProductivity") or 0.0),
                efficiency=_float_or(entry.get("efficiency"), 1.0),
                travel_minutes=float(entry.get("travelTime") or 0.0),
            )
        )
    session.commit()
    session.refresh(process)
    return process


def backfill_process_roles(session) -> int:
    """Store a role for legacy rows saved before roles were explicit."""
    count = 0
    for process in list(session.scalars(select(Process).where(Process.role == ""))):
        role = infer_role(process.name)
        process.role = role.value
        if not process.direction:
            process.direction = coerce_direction(None, role).value
        count += 1
    if count:
        session.commit()
    return count


def delete_process(session, process_id: int) -> bool:
    process = session.get(Process, process_id)
    if not process:
        return False
    session.delete(process)
    session.commit()
    return True


def reorder_processes(session, ordered_ids: Iterable[int]) -> None:
    for position, process_id in enumerate(ordered_ids):
        process = session.get(Process, int(process_id))
        if process:
            process.sort_order = position
    session.commit()


# ---------------------------------------------------------------------------
# Forecasts


def save_daily_forecasts(session, values: Dict[datetime.date, Dict[str, float]], warehouse: str = "All") -> int:
    count = 0
    for forecast_date, entry in values.items():
        existing = session.execute(
            select(DailyForecast).where(
                DailyForecast.forecast_date == forecast_date,
                DailyForecast.warehouse == warehouse,
            )
        ).scalars().first()
        if not existing:
            existing = DailyForecast(forecast_date=forecast_date, warehouse=warehouse)
            session.add(existing)
        existing.inbound_volume = float(entry.get("inbound", 0.0) or 0.0)
        existing.outbound_volume = float(entry.get("outbound", 0.0) or 0.0)
        count += 1
    session.commit()
    return count


def get_week_forecast(session, week_start: datetime.date, warehouse: str = "All") -> List[Optional[DailyForecast]]:
    """Return seven entries (Mon..Sun), ``None`` for days without a stored forecast."""
    monday = _normalize_week_start(week_start)
    days = [monday + datetime.timedelta(days=offset) for offset in range(7)]
    rows = session.scalars(
        select(DailyForecast).where(
            DailyForecast.forecast_date >= days[0],
            DailyForecast.forecast_date <= days[-1],
            DailyForecast.warehouse == warehouse,
        )
    )
    by_date = {row.forecast_date: row for row in rows}
    return [by_date.get(day) for day in days]


# ---------------------------------------------------------------------------
# Policies


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    existing: Optional[Policy] = session.execute(
        select(Policy).where(Policy.name == name)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


# ---------------------------------------------------------------------------
# Audit


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Simulation",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}),
    )
    session.add(log)
    session.commit()
    return log
