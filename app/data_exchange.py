from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select

from database import (
    DATA_DIR,
    Policy,
    Process,
    get_active_policy,
    list_processes,
    process_to_dict,
    save_daily_forecasts,
    upsert_policy,
    upsert_process,
)
from planner.api import result_payload
from planner.engine import SimulationResult
from policy import validate_policy
from scenario import DayScenario, check_process_payload
from stages import Stage

logger = logging.getLogger(__name__)

EXPORT_DIR = DATA_DIR / "exports"
EXPORT_DIR.mkdir(parents=True, exist_ok=True)

# Monthly forecast files carry volumes in thousands of units.
FORECAST_UNIT = 1000.0


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def _utc_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Process catalog import/export


def export_processes(session, *, warehouse: Optional[str] = None, directory: Optional[Path] = None) -> Path:
    payload = [process_to_dict(process) for process in list_processes(session, warehouse)]
    target_dir = directory or EXPORT_DIR
    filename = target_dir / f"processes_{_timestamp()}.json"
    filename.write_text(
        json.dumps({"generated_at": _utc_iso(), "processes": payload}, indent=2),
        encoding="utf-8",
    )
    return filename


def import_processes(session, file_path: Path) -> Tuple[int, int]:
    """Upsert processes by name; returns (created, updated).

    Entries that would not load as a stage (unknown role, non-numeric
    productivity) are skipped and logged.
    """
    data = json.loads(file_path.read_text(encoding="utf-8"))
    entries = data.get("processes", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError("Process file must contain a list of processes.")
    created = 0
    updated = 0
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        name = (entry.get("name") or "").strip()
        if not name:
            continue
        try:
            check_process_payload(entry)
        except (TypeError, ValueError) as exc:
            logger.warning("skipping process %r from %s: %s", name, file_path.name, exc)
            continue
        existing = session.scalars(select(Process).where(Process.name == name)).first()
        payload = dict(entry)
        payload["id"] = existing.id if existing else None
        payload.setdefault("sortOrder", position)
        # Exported subprocess ids belong to the source database.
        payload["subprocesses"] = [
            {key: value for key, value in sub.items() if key != "id"}
            for sub in entry.get("subprocesses") or []
            if isinstance(sub, dict)
        ]
        upsert_process(session, payload)
        if existing:
            updated += 1
        else:
            created += 1
    return created, updated


# ---------------------------------------------------------------------------
# Forecasts


def parse_monthly_forecast(data: Any) -> Dict[datetime.date, Dict[str, float]]:
    """Read ``{"data": [{"date", "inbound", "outbound"}]}`` scaled from thousands to units."""
    rows = data.get("data", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ValueError("Forecast payload must contain a 'data' list.")
    values: Dict[datetime.date, Dict[str, float]] = {}
    for entry in rows:
        if not isinstance(entry, dict):
            continue
        try:
            day = datetime.date.fromisoformat(str(entry["date"])[:10])
        except (KeyError, ValueError):
            continue
        values[day] = {
            "inbound": float(entry.get("inbound") or 0.0) * FORECAST_UNIT,
            "outbound": float(entry.get("outbound") or 0.0) * FORECAST_UNIT,
        }
    return values


def import_monthly_forecast(session, file_path: Path, *, warehouse: str = "All") -> int:
    data = json.loads(file_path.read_text(encoding="utf-8"))
    return save_daily_forecasts(session, parse_monthly_forecast(data), warehouse)


def forecast_week_volumes(
    values: Dict[datetime.date, Dict[str, float]], week_start: datetime.date, *, stream: str = "inbound"
) -> List[float]:
    """Seven day volumes starting at ``week_start``; missing days are zero."""
    days = [week_start + datetime.timedelta(days=offset) for offset in range(7)]
    return [float(values.get(day, {}).get(stream, 0.0)) for day in days]


# ---------------------------------------------------------------------------
# Simulation results


def export_plan_result(
    result: SimulationResult,
    week: Sequence[DayScenario],
    stages: Sequence[Stage],
    *,
    include_trace: bool = False,
    directory: Optional[Path] = None,
) -> Path:
    payload = result_payload(result, week, stages, include_trace=include_trace)
    payload["generated_at"] = _utc_iso()
    target_dir = directory or EXPORT_DIR
    filename = target_dir / f"plan_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return filename


# ---------------------------------------------------------------------------
# Policy import/export


def export_policy_dataset(session, *, directory: Optional[Path] = None) -> Path:
    policy = get_active_policy(session)
    if not policy:
        raise ValueError("No active policy found to export.")
    payload = {
        "name": policy.name,
        "params": policy.params_dict(),
    }
    filename = (directory or EXPORT_DIR) / f"policy_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return filename


def import_policy_dataset(session, file_path: Path, *, edited_by: str = "import") -> Policy:
    data = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Policy file must be a JSON object.")
    params = data.get("params") if isinstance(data.get("params"), dict) else None
    if params is None:
        params = {k: v for k, v in data.items() if k != "name"}
    params = dict(params)
    params.pop("name", None)
    validate_policy(params)
    name = data.get("name") or "Imported Policy"
    return upsert_policy(session, name, params, edited_by=edited_by)
