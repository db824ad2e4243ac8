"""FastAPI surface over the planning engine and the process catalog.

Simulation endpoints are stateless: the caller posts stages and a week of day
scenarios and gets the headcount plan back. Only the catalog, the policy and
the audit trail live in the database.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import sys
from pathlib import Path
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

# Ensure absolute imports (e.g., "import database") resolve when served from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    SessionLocal,
    delete_process,
    get_active_policy,
    init_database,
    list_processes,
    process_to_dict,
    record_audit_log,
    upsert_policy,
    upsert_process,
)
from estimator import estimator_from_policy  # noqa: E402
from planner.api import evaluate_plan, plan_week, result_payload  # noqa: E402
from policy import ensure_default_policy, load_active_policy, validate_policy  # noqa: E402
from scenario import check_process_payload, day_from_payload, stage_from_payload  # noqa: E402
from validation import ConfigurationError, validate_planning_inputs  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(SessionLocal)
    yield


app = FastAPI(title="Headcount Planner API", version="0.1", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _audit(db: Session, actor: str, action: str, payload: Dict[str, Any] | None = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="API", target_id=None, payload=payload)


def _parse_planning_payload(payload: Dict[str, Any]):
    raw_stages = payload.get("processes") or payload.get("stages") or []
    raw_days = payload.get("weekData") or payload.get("days") or []
    if not isinstance(raw_stages, list) or not isinstance(raw_days, list):
        raise HTTPException(status_code=400, detail="processes and weekData must be lists")
    try:
        stages = [stage_from_payload(entry) for entry in raw_stages]
        week = [day_from_payload(entry, stages) for entry in raw_days]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"malformed planning payload: {exc}") from exc
    return stages, week


def _config_error(exc: ConfigurationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"message": str(exc), "issues": exc.issues})


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/simulation/smart-distribute")
def smart_distribute(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    """Recommend headcount for every stage and hour of the posted week.

    The body nests the ``P-<stage>-<hour>-<day>`` map under ``"headcount"`` next
    to the daily summary and warnings. Send ``"flatHeadcount": true`` to get
    the bare map instead, which is what the scheduling grid consumes.
    """
    stages, week = _parse_planning_payload(payload)
    actor = (payload.get("actor") or "api").strip() or "api"
    policy = load_active_policy(db)
    estimator = estimator_from_policy(policy)
    try:
        report = validate_planning_inputs(stages, week)
        result = plan_week(stages, week, policy=policy, estimator=estimator)
    except ConfigurationError as exc:
        raise _config_error(exc) from exc
    finally:
        if hasattr(estimator, "close"):
            estimator.close()
    body = result_payload(
        result, week, stages, include_trace=bool(payload.get("includeTrace")), warnings=report["warnings"]
    )
    _audit(
        db,
        actor=actor,
        action="SIMULATION_RECOMMEND",
        payload={"stages": len(stages), "peak_hc": max((day["peak_hc"] for day in body["days"]), default=0)},
    )
    if payload.get("flatHeadcount"):
        return JSONResponse(content=jsonable_encoder(body["headcount"]))
    return JSONResponse(content=jsonable_encoder(body))


@app.post("/api/v1/simulation/evaluate")
def evaluate(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    stages, week = _parse_planning_payload(payload)
    raw_days = payload.get("weekData") or payload.get("days") or []
    plans: List[Dict[str, int]] = [dict(day.get("hcMatrix") or {}) for day in raw_days]
    policy = load_active_policy(db)
    try:
        report = validate_planning_inputs(stages, week)
        result = evaluate_plan(stages, week, plans, policy=policy)
    except ConfigurationError as exc:
        raise _config_error(exc) from exc
    body = result_payload(
        result, week, stages, include_trace=bool(payload.get("includeTrace", True)), warnings=report["warnings"]
    )
    _audit(
        db,
        actor=(payload.get("actor") or "api").strip() or "api",
        action="SIMULATION_EVALUATE",
        payload={"stages": len(stages), "peak_hc": max((day["peak_hc"] for day in body["days"]), default=0)},
    )
    return JSONResponse(content=jsonable_encoder(body))


@app.get("/api/v1/processes")
def processes(warehouse: str | None = None, db=Depends(get_db)) -> JSONResponse:
    rows = [process_to_dict(process) for process in list_processes(db, warehouse)]
    return JSONResponse(content=jsonable_encoder(rows))


@app.post("/api/v1/processes")
def save_process(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    if not (payload.get("name") or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    try:
        check_process_payload(payload)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    process = upsert_process(db, payload)
    _audit(db, actor=payload.get("actor") or "api", action="PROCESS_SAVE", payload={"id": process.id})
    return JSONResponse(content=jsonable_encoder(process_to_dict(process)))


@app.delete("/api/v1/processes/{process_id}")
def remove_process(process_id: int, db=Depends(get_db)) -> JSONResponse:
    if not delete_process(db, process_id):
        raise HTTPException(status_code=404, detail="Process not found")
    _audit(db, actor="api", action="PROCESS_DELETE", payload={"id": process_id})
    return JSONResponse(content={"deleted": process_id})


@app.get("/api/v1/policy/active")
def active_policy(db=Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    payload = {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/policy/active")
def set_active_policy(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if not isinstance(params, dict):
        raise HTTPException(status_code=400, detail="params must be an object")
    try:
        validate_policy(params)
    except ConfigurationError as exc:
        raise _config_error(exc) from exc
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    _audit(db, actor=actor, action="POLICY_EDIT", payload={"name": policy.name})
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": policy.id,
                "name": policy.name,
                "params": policy.params_dict(),
                "lastEditedBy": policy.lastEditedBy,
                "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
            }
        )
    )
