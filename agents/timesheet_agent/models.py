from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


LogLevel = Literal["debug", "info", "warn", "error", "success"]


class RunStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


class Credentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    password: str
    remember_me: bool = False


class CsvRow(BaseModel):
    """One data-entry unit: the account/project pair booked on one day."""

    model_config = ConfigDict(frozen=True)

    account: str = ""
    project: str = ""
    extras: str = ""
    work_date: Optional[date] = None

    def day_number(self, index: int) -> int:
        if self.work_date is not None:
            return self.work_date.day
        return index + 1


class TimeSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    start_time: str
    end_time: str
    fridays_only: bool = False
    skip_fridays: bool = False

    def applies_to(self, work_date: Optional[date]) -> bool:
        # Day-type flags need a calendar date; undated rows take every slot.
        if work_date is None:
            return True
        is_friday = work_date.weekday() == 4
        if self.fridays_only and not is_friday:
            return False
        if self.skip_fridays and is_friday:
            return False
        return True


class AccountMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: str
    project: str = ""


def normalize_mappings(raw: Any) -> Dict[str, Any]:
    """Accept ``{"KEY": "Account name"}`` as shorthand for ``{"KEY": {"account": ...}}``."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("mappings must be an object keyed by account key")
    normalized: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, str):
            normalized[str(key)] = {"account": value}
        else:
            normalized[str(key)] = value
    return normalized


class RunConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    login_url: str = ""
    timeout: int = Field(default=45_000, ge=1_000)
    headless: bool = False
    auto_save: bool = True


class RunRequest(BaseModel):
    """Everything one run needs. Immutable once handed to the supervisor."""

    model_config = ConfigDict(frozen=True)

    credentials: Optional[Credentials] = None
    rows: List[CsvRow] = Field(default_factory=list)
    time_slots: List[TimeSlot] = Field(default_factory=list)
    mappings: Dict[str, AccountMapping] = Field(default_factory=dict)
    config: RunConfig = Field(default_factory=RunConfig)
    run_id: Optional[str] = None
    discard_checkpoint: bool = False

    @field_validator("mappings", mode="before")
    @classmethod
    def _coerce_mappings(cls, value: Any) -> Dict[str, Any]:
        return normalize_mappings(value)


class LogEntry(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    level: LogLevel = "info"
    message: str


class RunProgress(BaseModel):
    status: RunStatus = RunStatus.IDLE
    current_row: int = 0
    total_rows: int = 0
    current_entry: int = 0
    total_entries: int = 0
    message: str = ""
    logs: List[LogEntry] = Field(default_factory=list)


class Checkpoint(BaseModel):
    run_id: str
    current_row_index: int = 0
    processed_rows: List[int] = Field(default_factory=list)
    total_rows: int = Field(default=0, ge=0)
    state: Dict[str, Any] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    @field_validator("processed_rows")
    @classmethod
    def _unique_sorted(cls, value: List[int]) -> List[int]:
        return sorted(set(int(item) for item in value))

    @model_validator(mode="after")
    def _rows_in_range(self) -> "Checkpoint":
        outside = [index for index in self.processed_rows if index < 0 or index >= self.total_rows]
        if outside:
            raise ValueError(f"processed_rows {outside} are outside [0, {self.total_rows})")
        return self

    @property
    def is_pending(self) -> bool:
        return self.next_unprocessed() < self.total_rows

    def next_unprocessed(self) -> int:
        done = set(self.processed_rows)
        for index in range(self.total_rows):
            if index not in done:
                return index
        return self.total_rows

    def mark_processed(self, index: int) -> None:
        if index < 0 or index >= self.total_rows:
            raise ValueError(f"Row index {index} is outside [0, {self.total_rows})")
        if index not in self.processed_rows:
            self.processed_rows = sorted([*self.processed_rows, index])
        self.updated_at = datetime.now().isoformat()
