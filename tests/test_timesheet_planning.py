import unittest
from datetime import date

from agents.timesheet_agent import planning
from agents.timesheet_agent.models import AccountMapping, CsvRow, RunConfig, TimeSlot


def _slots(*pairs):
    return [TimeSlot(id=str(i + 1), start_time=s, end_time=e) for i, (s, e) in enumerate(pairs)]


MAPPINGS = {"ACC": AccountMapping(account="Account A", project="Project A")}


class ValidateTests(unittest.TestCase):
    def test_clean_input_is_valid(self) -> None:
        rows = [CsvRow(account="ACC", project="P", work_date=date(2024, 3, d)) for d in (4, 5)]
        report = planning.validate(rows, MAPPINGS, _slots(("08:00", "12:00"), ("13:00", "17:00")))
        self.assertEqual(report, {"isValid": True, "errors": [], "warnings": [], "suggestions": []})

    def test_empty_inputs_are_errors(self) -> None:
        report = planning.validate([], MAPPINGS, [])
        self.assertFalse(report["isValid"])
        self.assertEqual(len(report["errors"]), 2)

    def test_missing_keys_and_bad_times(self) -> None:
        rows = [CsvRow(account="", project="")]
        report = planning.validate(rows, MAPPINGS, _slots(("8am", "12:00"), ("14:00", "13:00")))
        self.assertFalse(report["isValid"])
        joined = "\n".join(report["errors"])
        self.assertIn("Row 1: missing account key", joined)
        self.assertIn("Row 1: missing project key", joined)
        self.assertIn("invalid start time '8am'", joined)
        self.assertIn("must be after start time 14:00", joined)

    def test_unmapped_account_warns_and_suggests_once(self) -> None:
        rows = [CsvRow(account="GHOST", project="P"), CsvRow(account="GHOST", project="P")]
        report = planning.validate(rows, MAPPINGS, _slots(("08:00", "12:00")))
        self.assertTrue(report["isValid"])
        self.assertEqual(len(report["warnings"]), 2)
        self.assertIn("Add a mapping for 'GHOST'", report["suggestions"])

    def test_overlapping_slots_warn(self) -> None:
        rows = [CsvRow(account="ACC", project="P", work_date=date(2024, 3, 4))]
        report = planning.validate(rows, MAPPINGS, _slots(("08:00", "12:00"), ("11:00", "13:00")))
        self.assertEqual(report["warnings"], ["Time slot 2 overlaps Time slot 1"])

    def test_friday_variants_do_not_overlap(self) -> None:
        rows = [CsvRow(account="ACC", project="P", work_date=date(2024, 3, 4))]
        slots = [
            TimeSlot(id="week", start_time="13:00", end_time="17:00", skip_fridays=True),
            TimeSlot(id="fri", start_time="13:00", end_time="15:00", fridays_only=True),
        ]
        self.assertEqual(planning.validate(rows, MAPPINGS, slots)["warnings"], [])

    def test_duplicate_dates_warn(self) -> None:
        rows = [CsvRow(account="ACC", project="P", work_date=date(2024, 3, 4))] * 2
        report = planning.validate(rows, MAPPINGS, _slots(("08:00", "12:00")))
        self.assertEqual(report["warnings"], ["Row 2: date 2024-03-04 already used by row 1"])

    def test_undated_rows_get_a_hint(self) -> None:
        report = planning.validate([CsvRow(account="ACC", project="P")], MAPPINGS, _slots(("08:00", "12:00")))
        self.assertEqual(len(report["suggestions"]), 1)
        self.assertIn("day N", report["suggestions"][0])


class DryRunTests(unittest.TestCase):
    def test_plans_entries_and_skips(self) -> None:
        rows = [
            CsvRow(account="ACC", project="P"),
            CsvRow(account="GHOST", project="P"),
            CsvRow(account="ACC", project="P"),
        ]
        plan = planning.dry_run(
            rows,
            MAPPINGS,
            _slots(("08:00", "12:00"), ("13:00", "17:00")),
            RunConfig(login_url="https://login.example.invalid"),
        )
        actions = [step["action"] for step in plan["plannedSteps"]]
        self.assertEqual(actions[:3], ["open_login", "authenticate", "open_timesheet"])
        self.assertEqual(actions.count("add_entry"), 4)
        self.assertEqual(actions.count("skip_unmapped"), 1)
        entry = plan["plannedSteps"][3]
        self.assertEqual((entry["day"], entry["project"], entry["account"]), (1, "Project A", "Account A"))
        self.assertEqual(plan["estimatedDuration"], 20 + 10 + 3 * 1 + 4 * 8)
        self.assertEqual(len(plan["warnings"]), 1)

    def test_friday_only_slot_follows_row_date(self) -> None:
        friday = date(2024, 3, 8)
        monday = date(2024, 3, 4)
        rows = [CsvRow(account="ACC", project="P", work_date=d) for d in (monday, friday)]
        slots = [
            TimeSlot(id="am", start_time="08:00", end_time="12:00"),
            TimeSlot(id="fri", start_time="13:00", end_time="15:00", fridays_only=True),
        ]
        plan = planning.dry_run(rows, MAPPINGS, slots, RunConfig(login_url="https://x.invalid"))
        entries = [(s["day"], s["start_time"]) for s in plan["plannedSteps"] if s["action"] == "add_entry"]
        self.assertEqual(entries, [(4, "08:00"), (8, "08:00"), (8, "13:00")])

    def test_missing_login_url_is_a_warning(self) -> None:
        plan = planning.dry_run([CsvRow(account="ACC", project="P")], MAPPINGS, _slots(("08:00", "12:00")))
        self.assertIn("Login URL is not configured", plan["warnings"])


if __name__ == "__main__":
    unittest.main()
