"""Static pre-flight checks and simulated walk-throughs of a run.

Nothing here touches a browser; both functions only look at the rows, the
account mappings and the time slots the run would use.
"""
import re
from typing import Any, Dict, List, Optional, Sequence

from agents.timesheet_agent.models import AccountMapping, CsvRow, RunConfig, TimeSlot


TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

LOGIN_SECONDS = 20
NAVIGATION_SECONDS = 10
ENTRY_SECONDS = 8
ROW_SECONDS = 1


def _minutes(value: str) -> Optional[int]:
    match = TIME_PATTERN.match(str(value or "").strip())
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def validate(
    rows: Sequence[CsvRow],
    mappings: Dict[str, AccountMapping],
    time_slots: Sequence[TimeSlot],
) -> Dict[str, Any]:
    errors: List[str] = []
    warnings: List[str] = []
    suggestions: List[str] = []

    if not rows:
        errors.append("There are no rows to process")
    if not time_slots:
        errors.append("There are no time slots configured")

    unmapped: List[str] = []
    seen_dates: Dict[str, int] = {}
    for index, row in enumerate(rows):
        label = f"Row {index + 1}"
        if not row.account.strip():
            errors.append(f"{label}: missing account key")
        if not row.project.strip():
            errors.append(f"{label}: missing project key")
        account = row.account.strip()
        if account and account not in mappings:
            warnings.append(f"{label}: account '{account}' has no mapping and will be skipped")
            if account not in unmapped:
                unmapped.append(account)
        if row.work_date is not None:
            key = row.work_date.isoformat()
            if key in seen_dates:
                warnings.append(f"{label}: date {key} already used by row {seen_dates[key] + 1}")
            else:
                seen_dates[key] = index

    ranges = []
    for index, slot in enumerate(time_slots):
        label = f"Time slot {slot.id or index + 1}"
        start = _minutes(slot.start_time)
        end = _minutes(slot.end_time)
        if start is None:
            errors.append(f"{label}: invalid start time '{slot.start_time}' (expected HH:MM)")
        if end is None:
            errors.append(f"{label}: invalid end time '{slot.end_time}' (expected HH:MM)")
        if start is None or end is None:
            continue
        if end <= start:
            errors.append(f"{label}: end time {slot.end_time} must be after start time {slot.start_time}")
            continue
        ranges.append((start, end, label, slot))

    ranges.sort(key=lambda item: item[0])
    for (_, prev_end, prev_label, prev_slot), (start, _, label, slot) in zip(ranges, ranges[1:]):
        if start >= prev_end:
            continue
        # A Friday-only slot never runs on the same day as a skip-Friday one.
        if (prev_slot.fridays_only and slot.skip_fridays) or (prev_slot.skip_fridays and slot.fridays_only):
            continue
        warnings.append(f"{label} overlaps {prev_label}")

    for account in unmapped:
        suggestions.append(f"Add a mapping for '{account}'")
    if rows and all(row.work_date is None for row in rows):
        suggestions.append("Rows have no dates; row N will be entered on day N of the timesheet")

    return {
        "isValid": not errors,
        "errors": errors,
        "warnings": warnings,
        "suggestions": suggestions,
    }


def dry_run(
    rows: Sequence[CsvRow],
    mappings: Dict[str, AccountMapping],
    time_slots: Sequence[TimeSlot],
    config: Optional[RunConfig] = None,
) -> Dict[str, Any]:
    config = config or RunConfig()
    report = validate(rows, mappings, time_slots)
    steps: List[Dict[str, Any]] = [
        {"action": "open_login", "detail": config.login_url or "(login URL not configured)"},
        {"action": "authenticate", "detail": "email, password, optional push verification"},
        {"action": "open_timesheet", "detail": "application link, timesheet card, day grid"},
    ]
    seconds = LOGIN_SECONDS + NAVIGATION_SECONDS

    for index, row in enumerate(rows):
        seconds += ROW_SECONDS
        day = row.day_number(index)
        mapping = mappings.get(row.account.strip())
        if mapping is None:
            steps.append({"action": "skip_unmapped", "row": index, "day": day, "account": row.account})
            continue
        for slot in time_slots:
            if not slot.applies_to(row.work_date):
                continue
            steps.append(
                {
                    "action": "add_entry",
                    "row": index,
                    "day": day,
                    "start_time": slot.start_time,
                    "end_time": slot.end_time,
                    "project": mapping.project or row.project,
                    "account": mapping.account,
                }
            )
            seconds += ENTRY_SECONDS

    warnings = [*report["errors"], *report["warnings"]]
    if not config.login_url:
        warnings.append("Login URL is not configured")

    return {
        "plannedSteps": steps,
        "estimatedDuration": seconds,
        "warnings": warnings,
    }
