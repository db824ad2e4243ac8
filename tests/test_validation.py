from __future__ import annotations

import sys
import unittest
from dataclasses import replace
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from scenario import DayScenario, blank_week  # noqa: E402
from stages import Stage, StageRole, SubStage  # noqa: E402
from validation import ConfigurationError, ensure_valid, validate_planning_inputs  # noqa: E402


class PlanningInputValidationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stages = [
            Stage.build(1, "Recebimento", 1000, role="receiving"),
            Stage.build(2, "Picking", 500, role="picking"),
            Stage.build(3, "Sorter", 800, role="sorting"),
        ]
        self.week = blank_week(self.stages)

    def _error_types(self, stages, week):
        report = validate_planning_inputs(stages, week)
        return {issue["type"] for issue in report["issues"]}

    def test_clean_inputs_have_no_issues(self) -> None:
        report = ensure_valid(self.stages, self.week)
        self.assertEqual(report["issues"], [])

    def test_shift_start_out_of_range_is_rejected(self) -> None:
        week = list(self.week)
        week[2] = replace(week[2], shift_start=24)
        with self.assertRaises(ConfigurationError) as ctx:
            ensure_valid(self.stages, week)
        self.assertEqual(ctx.exception.issues[0]["type"], "shift_start")
        self.assertEqual(ctx.exception.issues[0]["day"], 2)
        self.assertIn("Wed", str(ctx.exception))

    def test_split_outside_percentage_range_is_rejected(self) -> None:
        week = list(self.week)
        week[0] = replace(week[0], splits={3: 120.0})
        self.assertIn("split", self._error_types(self.stages, week))

    def test_split_for_unknown_stage_is_only_a_warning(self) -> None:
        week = list(self.week)
        week[0] = replace(week[0], splits={99: 40.0})
        report = validate_planning_inputs(self.stages, week)
        self.assertEqual(report["issues"], [])
        self.assertEqual(report["warnings"][0]["type"], "split")

    def test_week_must_have_seven_days(self) -> None:
        self.assertIn("week", self._error_types(self.stages, self.week[:6]))

    def test_negative_volume_and_caps_are_rejected(self) -> None:
        week = list(self.week)
        week[1] = replace(week[1], volume=-5.0, max_hc_t2=-1)
        types = self._error_types(self.stages, week)
        self.assertIn("volume", types)
        self.assertIn("shift_cap", types)

    def test_malformed_efficiency_matrix_is_rejected(self) -> None:
        week = list(self.week)
        week[4] = replace(week[4], efficiency={25: 100.0, 3: float("nan")})
        report = validate_planning_inputs(self.stages, week)
        self.assertEqual(len([i for i in report["issues"] if i["type"] == "efficiency"]), 2)
        self.assertTrue(any(w["type"] == "efficiency" for w in report["warnings"]))

    def test_duplicate_stage_ids_are_rejected(self) -> None:
        stages = self.stages + [Stage.build(2, "Packing", 300)]
        self.assertIn("duplicate_stage", self._error_types(stages, self.week))

    def test_travel_time_beyond_an_hour_is_rejected(self) -> None:
        stages = [Stage.build(1, "Recebimento", 1000, travel_minutes=75)]
        self.assertIn("travel_time", self._error_types(stages, blank_week(stages)))

    def test_substage_ranges_are_checked(self) -> None:
        sub = SubStage(id=11, name="Abastecimento", standard_productivity=100, efficiency=-0.5)
        stages = [Stage.build(1, "Recebimento", 1000, substages=[sub])]
        self.assertIn("efficiency", self._error_types(stages, blank_week(stages)))

    def test_non_positive_productivity_is_a_warning(self) -> None:
        stages = [Stage.build(1, "Recebimento", 0, role=StageRole.RECEIVING)]
        report = validate_planning_inputs(stages, blank_week(stages))
        self.assertEqual(report["issues"], [])
        self.assertEqual(report["warnings"][0]["type"], "productivity")

    def test_roles_guessed_from_names_are_reported(self) -> None:
        stages = [Stage.build(1, "Recebimento", 1000), Stage.build(2, "Doca 3", 500, role="handover")]
        report = validate_planning_inputs(stages, blank_week(stages))
        self.assertEqual(report["issues"], [])
        role_warnings = [w for w in report["warnings"] if w["type"] == "role"]
        self.assertEqual([w["stage_id"] for w in role_warnings], [1])
        self.assertIn("receiving", role_warnings[0]["message"])

    def test_empty_pipeline_is_rejected(self) -> None:
        self.assertIn("pipeline", self._error_types([], [DayScenario() for _ in range(7)]))


if __name__ == "__main__":
    unittest.main()
