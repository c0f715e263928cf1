class TimesheetAgentError(RuntimeError):
    """Base error for the timesheet agent."""


class RunAlreadyActiveError(TimesheetAgentError):
    def __init__(self, run_id: str = "") -> None:
        detail = f" (run_id={run_id})" if run_id else ""
        super().__init__(f"An automation run is already active{detail}")
        self.run_id = run_id


class WorkerStartError(TimesheetAgentError):
    """The isolated worker process could not be created or started."""


class RunFatalError(TimesheetAgentError):
    """Authentication, navigation or a required element failed; the run cannot continue."""


class MappingMissingError(TimesheetAgentError):
    def __init__(self, account_key: str, row_index: int) -> None:
        super().__init__(
            f"Row {row_index + 1}: account '{account_key}' has no mapping; row skipped"
        )
        self.account_key = account_key
        self.row_index = row_index


class SlotEntryError(TimesheetAgentError):
    """A single time-slot entry failed; the slot is skipped."""


class RunStopped(Exception):
    """Raised inside a row when a stop request is honored before the row finished."""
