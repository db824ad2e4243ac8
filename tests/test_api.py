from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import api  # noqa: E402
from database import AuditLog, Base  # noqa: E402


@pytest.fixture()
def client_and_sessions():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    def _get_db():
        db = Session()
        try:
            yield db
        finally:
            db.close()

    api.app.dependency_overrides[api.get_db] = _get_db
    # No lifespan: the in-memory database replaces the on-disk one.
    client = TestClient(api.app)
    yield client, Session
    api.app.dependency_overrides.clear()
    engine.dispose()


def _week(volume_monday: float, **extra):
    days = []
    for day in range(7):
        entry = {
            "volume": volume_monday if day == 0 else 0,
            "shiftStart": 14,
            "efficiencyMatrix": {str(hour): 100 for hour in range(24)},
        }
        entry.update(extra)
        days.append(entry)
    return days


def test_health(client_and_sessions):
    client, _ = client_and_sessions
    assert client.get("/health").json() == {"status": "ok"}


def test_smart_distribute_recommends_single_pulse(client_and_sessions):
    client, Session = client_and_sessions
    payload = {
        "actor": "planner",
        "processes": [{"id": 1, "name": "Recebimento", "role": "receiving", "standardProductivity": 3000}],
        "weekData": _week(240000),
        "includeTrace": True,
    }
    response = client.post("/api/v1/simulation/smart-distribute", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["headcount"]["P-1-14-0"] == 8
    assert body["headcount"]["P-1-0-0"] == 0
    assert body["days"][0]["peak_hc"] == 8
    assert len(body["trace"]) == 168
    assert body["warnings"] == []
    with Session() as session:
        log = session.scalars(select(AuditLog).where(AuditLog.action == "SIMULATION_RECOMMEND")).one()
    assert log.user_id == "planner"
    assert json.loads(log.payloadJSON)["peak_hc"] == 8


def test_smart_distribute_can_return_the_flat_grid_map(client_and_sessions):
    client, _ = client_and_sessions
    payload = {
        "processes": [{"id": 1, "name": "Recebimento", "role": "receiving", "standardProductivity": 3000}],
        "weekData": _week(240000),
    }
    nested = client.post("/api/v1/simulation/smart-distribute", json=payload).json()
    flat = client.post("/api/v1/simulation/smart-distribute", json={**payload, "flatHeadcount": True})
    assert flat.status_code == 200
    assert flat.json() == nested["headcount"]
    assert flat.json()["P-1-14-0"] == 8


def test_smart_distribute_reports_roles_guessed_from_names(client_and_sessions):
    client, _ = client_and_sessions
    payload = {
        "processes": [{"id": 1, "name": "Recebimento", "standardProductivity": 3000}],
        "weekData": _week(240000),
    }
    body = client.post("/api/v1/simulation/smart-distribute", json=payload).json()
    assert [(w["type"], w["stage_id"]) for w in body["warnings"]] == [("role", 1)]


def test_smart_distribute_rejects_out_of_range_inputs(client_and_sessions):
    client, _ = client_and_sessions
    payload = {
        "processes": [{"id": 1, "name": "Recebimento", "standardProductivity": 3000}],
        "weekData": _week(1000, shiftStart=30),
    }
    response = client.post("/api/v1/simulation/smart-distribute", json=payload)
    assert response.status_code == 422
    issues = response.json()["detail"]["issues"]
    assert {issue["type"] for issue in issues} == {"shift_start"}
    assert len(issues) == 7


def test_smart_distribute_rejects_malformed_payload(client_and_sessions):
    client, _ = client_and_sessions
    payload = {
        "processes": [{"id": 1, "name": "Recebimento", "role": "teleport", "standardProductivity": 3000}],
        "weekData": _week(1000),
    }
    assert client.post("/api/v1/simulation/smart-distribute", json=payload).status_code == 400
    assert client.post("/api/v1/simulation/smart-distribute", json={"processes": "x"}).status_code == 400


def test_evaluate_replays_manual_plan(client_and_sessions):
    client, _ = client_and_sessions
    week = _week(2400)
    for day in week:
        day["shiftStart"] = 0
    week[0]["hcMatrix"] = {f"P-1-{hour}": 1 for hour in range(24)}
    payload = {
        "processes": [{"id": 1, "name": "Recebimento", "standardProductivity": 100}],
        "weekData": week,
    }
    response = client.post("/api/v1/simulation/evaluate", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["days"][0]["hc_hours"] == 24
    assert body["days"][0]["backlog_inbound"] == 0
    assert body["finalBacklogs"]["1"] == 0
    assert len(body["trace"]) == 168


def test_process_crud_endpoints(client_and_sessions):
    client, _ = client_and_sessions
    created = client.post(
        "/api/v1/processes",
        json={
            "name": "Picking",
            "standardProductivity": 300,
            "subprocesses": [{"name": "Reabastecimento", "standardProductivity": 900}],
        },
    )
    assert created.status_code == 200
    process_id = created.json()["id"]
    assert created.json()["subprocesses"][0]["name"] == "Reabastecimento"

    listing = client.get("/api/v1/processes").json()
    assert [row["name"] for row in listing] == ["Picking"]

    assert client.post("/api/v1/processes", json={"name": ""}).status_code == 400
    assert client.post("/api/v1/processes", json={"name": "X", "role": "nope"}).status_code == 400

    assert client.delete(f"/api/v1/processes/{process_id}").json() == {"deleted": process_id}
    assert client.delete(f"/api/v1/processes/{process_id}").status_code == 404


def test_policy_endpoints(client_and_sessions):
    client, _ = client_and_sessions
    assert client.get("/api/v1/policy/active").status_code == 404
    response = client.put(
        "/api/v1/policy/active",
        json={"name": "Peak", "params": {"fusion": {"estimator_weight": 0.7}}, "actor": "ops"},
    )
    assert response.status_code == 200
    body = client.get("/api/v1/policy/active").json()
    assert body["name"] == "Peak"
    assert body["lastEditedBy"] == "ops"
    assert body["params"]["fusion"]["estimator_weight"] == 0.7
    assert client.put("/api/v1/policy/active", json={"params": {}}).status_code == 400


def test_policy_put_rejects_values_the_engine_cannot_use(client_and_sessions):
    client, _ = client_and_sessions
    response = client.put(
        "/api/v1/policy/active",
        json={
            "name": "Broken",
            "params": {
                "recovery": {"picking_default_clear_hours": 0, "outbound_assumed_throughput": -1},
                "fusion": {"estimator_weight": "nan"},
            },
        },
    )
    assert response.status_code == 422
    keys = {issue["key"] for issue in response.json()["detail"]["issues"]}
    assert keys == {
        "recovery.picking_default_clear_hours",
        "recovery.outbound_assumed_throughput",
        "fusion.estimator_weight",
    }
    assert client.get("/api/v1/policy/active").status_code == 404


def test_saved_process_keeps_its_role_after_rename(client_and_sessions):
    client, _ = client_and_sessions
    created = client.post("/api/v1/processes", json={"name": "Picking", "standardProductivity": 300}).json()
    assert created["role"] == "picking"
    renamed = client.post(
        "/api/v1/processes",
        json={"id": created["id"], "name": "Zona A", "standardProductivity": 300},
    ).json()
    assert renamed["name"] == "Zona A"
    assert renamed["role"] == "picking"
