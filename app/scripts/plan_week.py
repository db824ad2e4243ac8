from __future__ import annotations

import argparse
import datetime
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import SessionLocal, init_database  # noqa: E402
from data_exchange import export_plan_result  # noqa: E402
from estimator import FixedEstimator, estimator_from_policy  # noqa: E402
from planner.api import evaluate_plan, plan_week, plan_week_from_catalog, summarize_days  # noqa: E402
from policy import build_default_policy, ensure_default_policy  # noqa: E402
from scenario import day_from_payload, stage_from_payload  # noqa: E402
from validation import ConfigurationError, ensure_valid  # noqa: E402


def _load_payload(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SystemExit(f"Could not read payload {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SystemExit("Payload must be a JSON object with 'processes' and 'weekData'.")
    return data


def _print_summary(days: List[Dict[str, Any]]) -> None:
    for day in days:
        flags = []
        if day["inbound_over_limit"]:
            flags.append("inbound over limit")
        if day["outbound_over_limit"]:
            flags.append("outbound over limit")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(
            f"[plan] {day['label']}: peak {day['peak_hc']} HC, {day['hc_hours']} HC-hours, "
            f"backlog in {day['backlog_inbound']:.0f} / out {day['backlog_outbound']:.0f}{suffix}"
        )


def run_payload(args: argparse.Namespace) -> None:
    data = _load_payload(Path(args.payload))
    stages = [stage_from_payload(entry) for entry in data.get("processes") or []]
    raw_days = data.get("weekData") or []
    week = [day_from_payload(entry, stages) for entry in raw_days]
    report = ensure_valid(stages, week)
    policy = build_default_policy()
    if args.evaluate:
        plans = [dict(entry.get("hcMatrix") or {}) for entry in raw_days]
        result = evaluate_plan(stages, week, plans, policy=policy)
    else:
        if args.fixed_estimate is not None:
            estimator = FixedEstimator(args.fixed_estimate)
        else:
            estimator = estimator_from_policy(policy)
        try:
            result = plan_week(stages, week, policy=policy, estimator=estimator)
        finally:
            if hasattr(estimator, "close"):
                estimator.close()
    _print_summary(summarize_days(result, week, stages))
    for warning in report["warnings"]:
        print(f"[plan][warning] {warning['message']}")
    if args.export:
        path = export_plan_result(result, week, stages, include_trace=args.trace)
        print(f"[plan] Exported result -> {path}")


def run_catalog(args: argparse.Namespace) -> None:
    init_database()
    ensure_default_policy(SessionLocal)
    try:
        week_start = datetime.date.fromisoformat(args.week_start)
    except ValueError as exc:
        raise SystemExit(f"Invalid --week-start value: {exc}") from exc
    payload = plan_week_from_catalog(SessionLocal, week_start, args.actor, warehouse=args.warehouse)
    _print_summary(payload["days"])
    for warning in payload["warnings"]:
        print(f"[plan][warning] {warning['message']}")


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recommend (or evaluate) hourly headcount for a week of warehouse flow."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--payload", help="JSON file with 'processes' and seven 'weekData' entries.")
    source.add_argument("--week-start", help="Plan the stored catalog and forecast for this ISO date.")
    parser.add_argument("--evaluate", action="store_true", help="Replay each day's 'hcMatrix' instead of recommending.")
    parser.add_argument("--fixed-estimate", type=float, help="Use a constant estimator value for every query.")
    parser.add_argument("--warehouse", help="Restrict the stored catalog to one warehouse.")
    parser.add_argument("--export", action="store_true", help="Write the result JSON to the export directory.")
    parser.add_argument("--trace", action="store_true", help="Include per-hour cells in the export.")
    parser.add_argument("--actor", default="plan_week", help="Audit trail actor name.")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        if args.payload:
            run_payload(args)
        else:
            run_catalog(args)
    except ConfigurationError as exc:
        for issue in exc.issues:
            print(f"[plan][error] {issue['message']}")
        raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
