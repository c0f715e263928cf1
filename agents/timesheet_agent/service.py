import multiprocessing
import queue
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from agents.timesheet_agent import planning
from agents.timesheet_agent.checkpoints import CheckpointStore
from agents.timesheet_agent.credentials import CredentialStore
from agents.timesheet_agent.errors import RunAlreadyActiveError, TimesheetAgentError, WorkerStartError
from agents.timesheet_agent.models import (
    AccountMapping,
    Checkpoint,
    Credentials,
    CsvRow,
    LogEntry,
    RunConfig,
    RunProgress,
    RunRequest,
    RunStatus,
    TimeSlot,
)
from agents.timesheet_agent.worker import run_worker


AGENT_NAME = "timesheet_agent"
TERMINAL_EVENTS = {"complete", "error"}
EVENT_BUFFER_SIZE = 1000
LOG_TAIL_SIZE = 500
PUMP_POLL_SECONDS = 0.5


class WorkerHandle:
    """A worker process plus its inbound and outbound queues."""

    def __init__(self, data_dir: Path, log_level: str = "INFO") -> None:
        ctx = multiprocessing.get_context("spawn")
        self.inbox = ctx.Queue()
        self.outbox = ctx.Queue()
        self.process = ctx.Process(
            target=run_worker,
            args=(self.inbox, self.outbox, str(data_dir), log_level),
            name="timesheet-worker",
            daemon=True,
        )

    def start(self) -> None:
        self.process.start()

    def send(self, message: Dict[str, Any]) -> None:
        self.inbox.put(message)

    def receive(self, timeout: float) -> Optional[Dict[str, Any]]:
        try:
            return self.outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def is_alive(self) -> bool:
        return self.process.is_alive()

    @property
    def exitcode(self) -> Optional[int]:
        return self.process.exitcode

    def terminate(self) -> None:
        if self.process.is_alive():
            self.process.terminate()

    def join(self, timeout: Optional[float] = None) -> None:
        self.process.join(timeout)


class TimesheetAgentService:
    """Supervisor for timesheet automation runs.

    Owns at most one worker process at a time, relays its events in emission
    order to subscribers and to a polling buffer, and exposes the checkpoint,
    credential and pre-flight surfaces used before a run starts.
    """

    def __init__(
        self,
        data_dir: Path,
        defaults: RunConfig,
        logger,
        webhook_final_url: str = "",
        stop_grace_seconds: float = 10.0,
        worker_factory: Optional[Callable[[], Any]] = None,
        checkpoints: Optional[CheckpointStore] = None,
        credentials: Optional[CredentialStore] = None,
        log_level: str = "INFO",
    ) -> None:
        self.data_dir = data_dir
        self.defaults = defaults
        self.logger = logger
        self.webhook_final_url = webhook_final_url
        self.stop_grace_seconds = stop_grace_seconds
        self.worker_factory = worker_factory or (lambda: WorkerHandle(self.data_dir, log_level))
        self.checkpoints = checkpoints or CheckpointStore(data_dir)
        self.credentials = credentials or CredentialStore(data_dir)

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._worker = None
        self._pump: Optional[threading.Thread] = None
        self._stop_timer: Optional[threading.Timer] = None
        self._idle = threading.Event()
        self._idle.set()
        self._run_id = ""
        self._paused = False
        self._pause_requested = False
        self._stop_requested = False
        self._terminal_seen = False
        self._progress = RunProgress()
        self._logs: deque = deque(maxlen=LOG_TAIL_SIZE)
        self._events: deque = deque(maxlen=EVENT_BUFFER_SIZE)
        self._seq = 0
        self._last_result: Optional[Dict[str, Any]] = None
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []
        self._debug("Service initialized", data_dir=str(data_dir))

    @staticmethod
    def _now_text() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug(f"[DEBUG][{AGENT_NAME}] {message} | at={self._now_text()}{suffix}")

    @staticmethod
    def now_id() -> str:
        return time.strftime("%Y%m%d-%H%M%S")

    # -- run control ------------------------------------------------------------

    def is_running(self) -> bool:
        with self._run_lock:
            return self._worker is not None

    def build_request(self, request: RunRequest) -> RunRequest:
        """Fill run id, stored credentials and configured defaults into a start request."""
        updates: Dict[str, Any] = {}
        if not request.run_id:
            updates["run_id"] = self.now_id()
        if request.credentials is None:
            stored = self.credentials.load()
            if stored is None:
                raise TimesheetAgentError("No credentials provided and none are stored")
            updates["credentials"] = stored
        # Fields the caller set win; the rest come from the configured defaults.
        overrides = request.config.model_dump(exclude_unset=True)
        if not overrides.get("login_url"):
            overrides.pop("login_url", None)
        config = self.defaults.model_copy(update=overrides)
        if config != request.config:
            updates["config"] = config
        return request.model_copy(update=updates) if updates else request

    def start(self, request: RunRequest) -> Dict[str, Any]:
        with self._run_lock:
            if self._worker is not None:
                self.logger.warning("Start rejected: run %s is still active", self._run_id)
                raise RunAlreadyActiveError(self._run_id)

            request = self.build_request(request)
            if not request.config.login_url:
                raise TimesheetAgentError("Missing login URL in configuration")

            try:
                worker = self.worker_factory()
                worker.start()
            except Exception as err:
                self.logger.exception("Failed to start automation worker")
                raise WorkerStartError(f"Failed to start automation worker: {err}") from err

            with self._state_lock:
                self._worker = worker
                self._run_id = str(request.run_id)
                self._paused = False
                self._pause_requested = False
                self._stop_requested = False
                self._terminal_seen = False
                self._last_result = None
                self._logs.clear()
                self._progress = RunProgress(
                    status=RunStatus.STARTING,
                    total_rows=len(request.rows),
                    message="Starting",
                )
            self._idle.clear()
            worker.send({"type": "start", "data": request.model_dump(mode="json")})
            self._pump = threading.Thread(
                target=self._pump_events,
                args=(worker,),
                name="timesheet-event-pump",
                daemon=True,
            )
            self._pump.start()

        self.logger.info("Automation worker started run_id=%s rows=%s", request.run_id, len(request.rows))
        return {"ok": True, "run_id": request.run_id}

    def _send(self, message_type: str) -> bool:
        with self._run_lock:
            worker = self._worker
        if worker is None:
            return False
        worker.send({"type": message_type})
        return True

    def pause(self) -> Dict[str, Any]:
        """Request a pause; the worker parks at the next row boundary."""
        sent = self._send("pause")
        if sent:
            self._pause_requested = True
        return {"ok": True, "running": sent, "paused": self._pause_requested}

    def resume(self) -> Dict[str, Any]:
        sent = self._send("resume")
        if sent:
            self._pause_requested = False
        return {"ok": True, "running": sent, "paused": self._pause_requested}

    def toggle_pause(self) -> Dict[str, Any]:
        # Follows what was requested, not the last status the worker reported.
        return self.resume() if self._pause_requested else self.pause()

    def stop(self) -> Dict[str, Any]:
        """Ask the worker to stop and arm forced termination after the grace period."""
        with self._run_lock:
            worker = self._worker
            if worker is None:
                return {"ok": True, "running": False}
            self._stop_requested = True
            worker.send({"type": "stop"})
            if self._stop_timer is None:
                self._stop_timer = threading.Timer(self.stop_grace_seconds, self._force_terminate, args=(worker,))
                self._stop_timer.daemon = True
                self._stop_timer.start()
        self.logger.info("Stop requested run_id=%s grace=%ss", self._run_id, self.stop_grace_seconds)
        return {"ok": True, "running": True, "stopping": True}

    def _force_terminate(self, worker) -> None:
        with self._run_lock:
            if worker is not self._worker:
                return
        if worker.is_alive():
            self.logger.warning(
                "Worker did not stop within %ss; terminating run_id=%s",
                self.stop_grace_seconds,
                self._run_id,
            )
            worker.terminate()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop the active run before the host exits. Returns True when idle."""
        if not self.is_running():
            return True
        self.stop()
        wait_for = self.stop_grace_seconds if timeout is None else timeout
        if self._idle.wait(wait_for):
            return True
        with self._run_lock:
            worker = self._worker
        if worker is not None:
            self.logger.warning("Forcing worker termination during shutdown run_id=%s", self._run_id)
            worker.terminate()
        return self._idle.wait(PUMP_POLL_SECONDS * 4)

    # -- event pump -----------------------------------------------------------------

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        with self._state_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._state_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        with self._state_lock:
            self._seq += 1
            event = {
                "seq": self._seq,
                "type": event_type,
                "run_id": self._run_id,
                "ts": datetime.now().isoformat(),
                "data": data,
            }
            self._events.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                self.logger.exception("Event subscriber failed for %s", event_type)

    def _handle_message(self, message: Dict[str, Any]) -> None:
        kind = str(message.get("type", ""))
        data = message.get("data") or {}
        if kind == "ready":
            self.logger.info("Worker is ready pid=%s", data.get("pid"))
            return
        if kind == "progress":
            progress = RunProgress.model_validate(data)
            with self._state_lock:
                self._progress = progress
                self._paused = progress.status == RunStatus.PAUSED
        elif kind == "log":
            entry = LogEntry.model_validate(data)
            with self._state_lock:
                self._logs.append(entry)
        elif kind in TERMINAL_EVENTS:
            with self._state_lock:
                self._terminal_seen = True
                self._last_result = {"type": kind, **data}
        else:
            self.logger.warning("Unknown worker message type: %s", kind)
            return
        self._publish(kind, data)

    def _pump_events(self, worker) -> None:
        while True:
            message = worker.receive(PUMP_POLL_SECONDS)
            if message is not None:
                self._handle_message(message)
                if message.get("type") in TERMINAL_EVENTS:
                    break
                continue
            if worker.is_alive():
                continue
            # Drain anything emitted right before exit, then report the exit.
            message = worker.receive(0.1)
            while message is not None:
                self._handle_message(message)
                if message.get("type") in TERMINAL_EVENTS:
                    break
                message = worker.receive(0.1)
            break

        if not self._terminal_seen:
            self._report_unexpected_exit(worker)
        self._cleanup(worker)

    def _report_unexpected_exit(self, worker) -> None:
        if self._stop_requested:
            data = {
                "success": True,
                "stopped": True,
                "forced": True,
                "run_id": self._run_id,
            }
            with self._state_lock:
                self._progress = self._progress.model_copy(
                    update={"status": RunStatus.COMPLETED, "message": "Stopped (worker terminated)"}
                )
            self._handle_message({"type": "complete", "data": data})
            return
        reason = f"Worker exited unexpectedly (exitcode={worker.exitcode})"
        self.logger.error("%s run_id=%s", reason, self._run_id)
        with self._state_lock:
            self._progress = self._progress.model_copy(update={"status": RunStatus.FAILED, "message": reason})
        self._handle_message({"type": "error", "data": {"error": reason, "run_id": self._run_id}})

    def _cleanup(self, worker) -> None:
        worker.join(self.stop_grace_seconds)
        if worker.is_alive():
            worker.terminate()
            worker.join(1.0)
        # A new run may start as soon as the slot is released.
        with self._state_lock:
            run_id = self._run_id
            result = dict(self._last_result) if self._last_result else {}
        with self._run_lock:
            if self._stop_timer is not None:
                self._stop_timer.cancel()
                self._stop_timer = None
            if self._worker is worker:
                self._worker = None
                self._paused = False
                self._pause_requested = False
        self._idle.set()
        self.send_final(run_id, result)
        self.logger.info("Automation worker finished run_id=%s", run_id)

    def send_final(self, run_id: str, result: Dict[str, Any]) -> None:
        ok = result.get("type") == "complete" and bool(result.get("success"))
        log_fn = self.logger.info if ok else self.logger.error
        log_fn("Final result run_id=%s ok=%s", run_id, ok)
        if not self.webhook_final_url:
            self.logger.info("Webhook skipped: URL not configured")
            return
        payload = {
            "ok": ok,
            "job": AGENT_NAME,
            "run_id": run_id,
            "message": f"[{AGENT_NAME}] {'OK' if ok else 'ERROR'}",
            "meta": result,
        }
        try:
            httpx.post(self.webhook_final_url, json=payload, timeout=15)
        except Exception:
            self.logger.exception("Webhook send failed")

    # -- read side ---------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            progress = self._progress.model_copy(update={"logs": list(self._logs)[-50:]})
            result = dict(self._last_result) if self._last_result else None
            run_id = self._run_id
        return {
            "ok": True,
            "running": self.is_running(),
            "paused": self._paused,
            "pause_requested": self._pause_requested,
            "run_id": run_id,
            "progress": progress.model_dump(mode="json"),
            "last_result": result,
        }

    def get_events(self, after: int = 0, limit: int = 200) -> Dict[str, Any]:
        limit = max(1, min(int(limit), EVENT_BUFFER_SIZE))
        with self._state_lock:
            items = [event for event in self._events if event["seq"] > after][:limit]
            last_seq = self._seq
        return {"events": items, "last_seq": last_seq}

    def get_logs(self) -> List[Dict[str, Any]]:
        with self._state_lock:
            return [entry.model_dump(mode="json") for entry in self._logs]

    # -- pre-flight ---------------------------------------------------------------------

    def validate(
        self,
        rows: Sequence[CsvRow],
        mappings: Dict[str, AccountMapping],
        time_slots: Sequence[TimeSlot],
    ) -> Dict[str, Any]:
        return planning.validate(rows, mappings, time_slots)

    def dry_run(
        self,
        rows: Sequence[CsvRow],
        mappings: Dict[str, AccountMapping],
        time_slots: Sequence[TimeSlot],
        config: Optional[RunConfig] = None,
    ) -> Dict[str, Any]:
        return planning.dry_run(rows, mappings, time_slots, config or self.defaults)

    # -- checkpoints -----------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        with self._run_lock:
            if self._worker is not None:
                raise RunAlreadyActiveError(self._run_id)

    def save_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        self._ensure_idle()
        return self.checkpoints.save(checkpoint)

    def load_checkpoint(self, run_id: str) -> Optional[Checkpoint]:
        return self.checkpoints.load(run_id)

    def has_pending_recovery(self) -> bool:
        return self.checkpoints.has_pending_recovery()

    def list_pending_checkpoints(self) -> List[Checkpoint]:
        return self.checkpoints.list_pending()

    def clear_checkpoint(self, run_id: str) -> bool:
        self._ensure_idle()
        return self.checkpoints.clear(run_id)

    # -- credentials ---------------------------------------------------------------------------

    def save_credentials(self, credentials: Credentials) -> bool:
        return self.credentials.save(credentials)

    def load_credentials(self) -> Optional[Credentials]:
        return self.credentials.load()

    def clear_credentials(self) -> bool:
        return self.credentials.clear()

    def is_encryption_available(self) -> bool:
        return self.credentials.is_encryption_available()
