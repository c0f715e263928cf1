import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, ContextManager, Dict, NamedTuple, Optional

from agents.timesheet_agent.checkpoints import CheckpointStore
from agents.timesheet_agent.errors import MappingMissingError, RunFatalError, RunStopped, SlotEntryError
from agents.timesheet_agent.models import (
    AccountMapping,
    Checkpoint,
    CsvRow,
    LogEntry,
    RunConfig,
    RunProgress,
    RunRequest,
    RunStatus,
)


logger = logging.getLogger("agent_runner.timesheet_runner")

LOG_TAIL_SIZE = 50
PAUSE_POLL_SECONDS = 1.0

_STDLIB_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

Emit = Callable[[str, Dict[str, Any]], None]


class LogSink(ABC):
    """Destination for run log entries."""

    @abstractmethod
    def write(self, entry: LogEntry) -> None:
        ...


class EmitterSink(LogSink):
    """Sends each entry as a ``log`` message and mirrors it to stdlib logging."""

    def __init__(self, emit: Emit, mirror: Optional[logging.Logger] = None) -> None:
        self.emit = emit
        self.mirror = mirror or logger

    def write(self, entry: LogEntry) -> None:
        self.mirror.log(_STDLIB_LEVELS.get(entry.level, logging.INFO), entry.message)
        self.emit("log", entry.model_dump(mode="json"))


class ControlChannel(ABC):
    """Inbound control messages (``pause``/``resume``/``stop``) for a running machine."""

    @abstractmethod
    def poll(self) -> Optional[str]:
        """Return the next pending signal without blocking, or None."""

    @abstractmethod
    def wait(self, timeout: float) -> Optional[str]:
        """Block up to ``timeout`` seconds for the next signal."""


class PageSession(NamedTuple):
    auth: Any
    timesheet: Any
    snapshot: Callable[[str], None]


SessionOpener = Callable[[RunConfig, str], ContextManager[PageSession]]


class RunStateMachine:
    """Drives one automation run from sign-in to the last row.

    Control signals are only acted on at row boundaries (pause and stop) and
    between time-slot entries (stop), never in the middle of a page action. A
    row is marked processed, and the checkpoint saved, only once all of its
    slots have been attempted.
    """

    def __init__(
        self,
        request: RunRequest,
        open_session: SessionOpener,
        checkpoints: CheckpointStore,
        control: ControlChannel,
        emit: Emit,
        sink: Optional[LogSink] = None,
    ) -> None:
        self.request = request
        self.run_id = request.run_id or time.strftime("%Y%m%d-%H%M%S")
        self.open_session = open_session
        self.checkpoints = checkpoints
        self.control = control
        self.emit = emit
        self.sink = sink or EmitterSink(emit)
        self.status = RunStatus.IDLE
        self.checkpoint = Checkpoint(run_id=self.run_id, total_rows=len(request.rows))
        self._logs: deque = deque(maxlen=LOG_TAIL_SIZE)
        self._current_row = 0
        self._current_entry = 0
        self._total_entries = 0
        self._message = ""
        self._stop_requested = False
        self._pause_requested = False
        self._finished = False

    # -- events -----------------------------------------------------------

    def log(self, level: str, message: str) -> None:
        entry = LogEntry(level=level, message=message)
        self._logs.append(entry)
        self.sink.write(entry)

    def progress(self) -> RunProgress:
        return RunProgress(
            status=self.status,
            current_row=self._current_row,
            total_rows=len(self.request.rows),
            current_entry=self._current_entry,
            total_entries=self._total_entries,
            message=self._message,
            logs=list(self._logs),
        )

    def _emit_progress(self, message: str = "") -> None:
        if message:
            self._message = message
        self.emit("progress", self.progress().model_dump(mode="json"))

    def _set_status(self, status: RunStatus, message: str) -> None:
        self.status = status
        self._emit_progress(message)

    def _finish(self, kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if self._finished:
            return data
        self._finished = True
        self.emit(kind, data)
        return data

    # -- control ------------------------------------------------------------

    def _apply_signal(self, signal: Optional[str]) -> None:
        if signal == "stop":
            self._stop_requested = True
        elif signal == "pause":
            self._pause_requested = True
        elif signal == "resume":
            self._pause_requested = False
        elif signal:
            logger.warning("Ignoring unknown control signal: %s", signal)

    def _drain_signals(self) -> None:
        while True:
            signal = self.control.poll()
            if signal is None:
                return
            self._apply_signal(signal)

    def _at_row_boundary(self) -> bool:
        """Honor pending pause/stop. Returns True when the run must stop."""
        self._drain_signals()
        if self._pause_requested and not self._stop_requested:
            self._set_status(RunStatus.PAUSED, f"Paused before row {self._current_row + 1}")
            self.log("info", "Automation paused")
            while self._pause_requested and not self._stop_requested:
                self._apply_signal(self.control.wait(PAUSE_POLL_SECONDS))
            if not self._stop_requested:
                self.log("info", "Automation resumed")
                self._set_status(RunStatus.RUNNING, f"Resumed at row {self._current_row + 1}")
        return self._stop_requested

    # -- phases ---------------------------------------------------------------

    def _resolve_checkpoint(self) -> None:
        total = len(self.request.rows)
        if self.request.discard_checkpoint:
            if self.checkpoints.clear(self.run_id):
                self.log("info", f"Discarded previous checkpoint for run {self.run_id}")
            return
        stored = self.checkpoints.load(self.run_id)
        if stored is None:
            return
        if stored.total_rows != total:
            self.log(
                "warn",
                f"Checkpoint for run {self.run_id} covers {stored.total_rows} rows but this run has {total}; starting over",
            )
            return
        self.checkpoint = stored
        self.checkpoint.current_row_index = stored.next_unprocessed()
        self.log(
            "info",
            f"Resuming run {self.run_id}: {len(stored.processed_rows)}/{total} rows already processed",
        )

    def _authenticate(self, auth) -> None:
        credentials = self.request.credentials
        if credentials is None:
            raise RunFatalError("No credentials provided for sign-in")
        config = self.request.config
        self.log("info", "Opening login page")
        auth.open(config.login_url)
        auth.fill_email(credentials.email)
        auth.submit()
        auth.wait_for_password(config.timeout)
        auth.fill_password(credentials.password)
        auth.submit()
        if auth.try_push_verification():
            self.log("info", "Push verification requested; approve it on your device")
        auth.wait_for_app_link()
        self.log("success", "Signed in")

    def _open_timesheet(self, timesheet, auth) -> None:
        auth.open_app()
        timesheet.wait_for_welcome()
        timesheet.open_timesheet()
        timesheet.wait_for_day_cells()
        self.log("info", "Timesheet opened")

    def _mapping_for(self, index: int, row: CsvRow) -> AccountMapping:
        mapping = self.request.mappings.get(row.account.strip())
        if mapping is None:
            raise MappingMissingError(row.account, index)
        return mapping

    def _process_row(self, timesheet, index: int, row: CsvRow) -> None:
        day = row.day_number(index)
        self._current_entry = 0
        self._total_entries = 0
        if timesheet.is_non_workable_day(day):
            self.log("info", f"Row {index + 1}: day {day} is a vacation or holiday; skipped")
            return
        mapping = self._mapping_for(index, row)
        slots = [slot for slot in self.request.time_slots if slot.applies_to(row.work_date)]
        self._total_entries = len(slots)
        timesheet.select_day(day)
        project = mapping.project or row.project
        for entry_index, slot in enumerate(slots):
            self._drain_signals()
            if self._stop_requested:
                raise RunStopped()
            self._current_entry = entry_index
            self._emit_progress(
                f"Row {index + 1}/{len(self.request.rows)}: entry {slot.start_time}-{slot.end_time}"
            )
            try:
                timesheet.add_time_entry(slot.start_time, slot.end_time, project, mapping.account)
            except SlotEntryError as err:
                self.log("warn", f"Row {index + 1}: {err}")
                continue
            self.log("info", f"Row {index + 1}: added {slot.start_time}-{slot.end_time} ({mapping.account})")
        self._current_entry = len(slots)

    def _process_rows(self, timesheet) -> bool:
        """Process every unprocessed row. Returns True when stopped early."""
        rows = self.request.rows
        total = len(rows)
        processed = set(self.checkpoint.processed_rows)
        for index, row in enumerate(rows):
            if index in processed:
                continue
            self._current_row = index
            if self._at_row_boundary():
                return True
            self.checkpoint.current_row_index = index
            self._emit_progress(f"Processing row {index + 1}/{total}")
            try:
                self._process_row(timesheet, index, row)
            except RunStopped:
                self.log("warn", f"Stop requested during row {index + 1}; the row will be redone on resume")
                return True
            except MappingMissingError as err:
                self.log("warn", str(err))
            self.checkpoint.mark_processed(index)
            if self.request.config.auto_save:
                self.checkpoints.save(self.checkpoint)
            self._emit_progress(f"Row {index + 1}/{total} done")
        self._current_row = total
        return False

    # -- entry point --------------------------------------------------------------

    def run(self) -> Dict[str, Any]:
        self._set_status(RunStatus.STARTING, "Starting")
        self.log("info", f"Run {self.run_id} started with {len(self.request.rows)} rows")
        try:
            with self.open_session(self.request.config, self.run_id) as session:
                try:
                    self._authenticate(session.auth)
                    self._open_timesheet(session.timesheet, session.auth)
                    self._resolve_checkpoint()
                    self._set_status(RunStatus.RUNNING, "Running")
                    stopped = self._process_rows(session.timesheet)
                except Exception:
                    self._snapshot(session, "failed")
                    raise
                if stopped:
                    self._set_status(RunStatus.STOPPING, "Stopping")
        except RunFatalError as err:
            return self._fail(str(err))
        except Exception as err:
            logger.exception("Unexpected error in run_id=%s", self.run_id)
            return self._fail(f"Unexpected error: {err}")

        return self._complete(stopped)

    def _snapshot(self, session: PageSession, tag: str) -> None:
        try:
            session.snapshot(tag)
        except Exception:
            logger.exception("Could not save %s snapshot for run_id=%s", tag, self.run_id)

    def _complete(self, stopped: bool) -> Dict[str, Any]:
        processed = len(self.checkpoint.processed_rows)
        total = len(self.request.rows)
        if stopped:
            message = f"Stopped after {processed}/{total} rows"
            self.log("warn", message)
        else:
            self.checkpoints.clear(self.run_id)
            message = f"Completed {total} rows"
            self.log("success", message)
        self._set_status(RunStatus.COMPLETED, message)
        return self._finish(
            "complete",
            {
                "success": True,
                "stopped": stopped,
                "run_id": self.run_id,
                "processed_rows": processed,
                "total_rows": total,
            },
        )

    def _fail(self, reason: str) -> Dict[str, Any]:
        self.log("error", reason)
        self._set_status(RunStatus.FAILED, reason)
        return self._finish("error", {"error": reason, "run_id": self.run_id})
