from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    Base,
    get_active_policy,
    get_week_forecast,
    list_processes,
    load_pipeline,
    upsert_policy,
    upsert_process,
)
from data_exchange import (  # noqa: E402
    export_plan_result,
    export_policy_dataset,
    export_processes,
    forecast_week_volumes,
    import_monthly_forecast,
    import_policy_dataset,
    import_processes,
    parse_monthly_forecast,
)
from planner.api import plan_week  # noqa: E402
from policy import build_default_policy  # noqa: E402
from scenario import week_from_volumes  # noqa: E402
from stages import Stage, StageRole  # noqa: E402
from validation import ConfigurationError  # noqa: E402


def _memory_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@pytest.fixture()
def source_session():
    factory = _memory_factory()
    with factory() as session:
        yield session


@pytest.fixture()
def target_session():
    factory = _memory_factory()
    with factory() as session:
        yield session


def test_process_catalog_round_trips_between_databases(source_session, target_session, tmp_path):
    upsert_process(source_session, {"name": "Recebimento", "standardProductivity": 1000, "sortOrder": 0})
    upsert_process(
        source_session,
        {
            "name": "Packing",
            "role": "packing",
            "standardProductivity": 250,
            "travelTime": 5,
            "sortOrder": 1,
            "subprocesses": [{"name": "Etiquetagem", "standardProductivity": 600}],
        },
    )
    path = export_processes(source_session, directory=tmp_path)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert [entry["name"] for entry in data["processes"]] == ["Recebimento", "Packing"]

    upsert_process(target_session, {"name": "Packing", "standardProductivity": 10})
    created, updated = import_processes(target_session, path)
    assert (created, updated) == (1, 1)
    imported = {process.name: process for process in list_processes(target_session)}
    assert imported["Packing"].standard_productivity == 250
    assert imported["Packing"].role == "packing"
    assert [sub.name for sub in imported["Packing"].subprocesses] == ["Etiquetagem"]


def test_import_processes_rejects_non_list(target_session, tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"processes": "nope"}), encoding="utf-8")
    with pytest.raises(ValueError):
        import_processes(target_session, path)


def test_import_processes_skips_entries_that_would_not_load(target_session, tmp_path, caplog):
    path = tmp_path / "mixed.json"
    path.write_text(
        json.dumps(
            {
                "processes": [
                    {"name": "Recebimento", "standardProductivity": 1000},
                    {"name": "Teletransporte", "role": "foo", "standardProductivity": 50},
                    {"name": "Picking", "standardProductivity": "muitos"},
                ]
            }
        ),
        encoding="utf-8",
    )
    with caplog.at_level("WARNING", logger="data_exchange"):
        assert import_processes(target_session, path) == (1, 0)
    assert [process.name for process in list_processes(target_session)] == ["Recebimento"]
    assert [stage.role for stage in load_pipeline(target_session)] == [StageRole.RECEIVING]
    assert "Teletransporte" in caplog.text
    assert "Picking" in caplog.text


def test_monthly_forecast_is_scaled_from_thousands():
    values = parse_monthly_forecast(
        {
            "data": [
                {"date": "2025-03-03", "inbound": 42.5, "outbound": 38},
                {"date": "2025-03-04T00:00:00", "inbound": 40},
                {"date": "not-a-date", "inbound": 1},
                {"inbound": 2},
            ]
        }
    )
    assert values == {
        datetime.date(2025, 3, 3): {"inbound": 42500.0, "outbound": 38000.0},
        datetime.date(2025, 3, 4): {"inbound": 40000.0, "outbound": 0.0},
    }
    volumes = forecast_week_volumes(values, datetime.date(2025, 3, 3))
    assert volumes == [42500.0, 40000.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    assert forecast_week_volumes(values, datetime.date(2025, 3, 3), stream="outbound")[0] == 38000.0


def test_import_monthly_forecast_persists_rows(target_session, tmp_path):
    path = tmp_path / "march.json"
    path.write_text(
        json.dumps({"data": [{"date": f"2025-03-{day:02d}", "inbound": day, "outbound": 1} for day in range(1, 32)]}),
        encoding="utf-8",
    )
    assert import_monthly_forecast(target_session, path, warehouse="CD1") == 31
    week = get_week_forecast(target_session, datetime.date(2025, 3, 10), "CD1")
    assert [row.inbound_volume for row in week] == [day * 1000.0 for day in range(10, 17)]
    assert get_week_forecast(target_session, datetime.date(2025, 3, 10))[0] is None


def test_export_plan_result_writes_headcount_and_days(tmp_path):
    stages = [Stage.build(1, "Recebimento", 100)]
    week = week_from_volumes([2400] * 7, stages)
    result = plan_week(stages, week)
    path = export_plan_result(result, week, stages, include_trace=True, directory=tmp_path)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["headcount"]["P-1-5-0"] == 1
    assert len(data["days"]) == 7
    assert len(data["trace"]) == 168
    assert "generated_at" in data


def test_policy_dataset_round_trip(source_session, target_session, tmp_path):
    params = build_default_policy()
    params.pop("name")
    params["fusion"]["estimator_weight"] = 0.6
    upsert_policy(source_session, "Peak Season", params, edited_by="tests")
    path = export_policy_dataset(source_session, directory=tmp_path)
    policy = import_policy_dataset(target_session, path)
    assert policy.name == "Peak Season"
    assert policy.params_dict()["fusion"]["estimator_weight"] == 0.6


def test_export_policy_without_policy_fails(target_session, tmp_path):
    with pytest.raises(ValueError):
        export_policy_dataset(target_session, directory=tmp_path)


def test_import_policy_rejects_unusable_values(target_session, tmp_path):
    path = tmp_path / "policy.json"
    path.write_text(
        json.dumps({"name": "Broken", "params": {"recovery": {"putaway_sla_hours": 0}}}),
        encoding="utf-8",
    )
    with pytest.raises(ConfigurationError) as excinfo:
        import_policy_dataset(target_session, path)
    assert excinfo.value.issues[0]["key"] == "recovery.putaway_sla_hours"
    assert get_active_policy(target_session) is None
