import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from agents.timesheet_agent.models import Checkpoint


logger = logging.getLogger("agent_runner.timesheet_checkpoints")


class CheckpointStore:
    """Durable run progress keyed by run id, kept in one JSON document.

    Writers are the worker process during a run and the supervisor between
    runs; the single-active-run rule keeps them from overlapping. Writes go
    through a temp file and ``os.replace`` so a killed writer leaves either the
    previous document or the new one.
    """

    def __init__(self, data_dir: Path, filename: str = "timesheet_checkpoints.json") -> None:
        self.path = Path(data_dir) / filename
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception:
            logger.exception("Failed to read checkpoints from %s", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed checkpoint document at %s", self.path)
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    @staticmethod
    def _parse(run_id: str, raw: Any) -> Optional[Checkpoint]:
        try:
            return Checkpoint.model_validate(raw)
        except Exception:
            logger.warning("Discarding unreadable checkpoint run_id=%s", run_id)
            return None

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        stored = checkpoint.model_copy(update={"updated_at": datetime.now().isoformat()})
        with self._lock:
            data = self._read()
            data[stored.run_id] = stored.model_dump(mode="json")
            self._write(data)
        logger.debug(
            "Checkpoint saved run_id=%s processed=%s/%s",
            stored.run_id,
            len(stored.processed_rows),
            stored.total_rows,
        )
        return stored

    def load(self, run_id: str) -> Optional[Checkpoint]:
        with self._lock:
            raw = self._read().get(run_id)
        if raw is None:
            return None
        return self._parse(run_id, raw)

    def list_pending(self) -> List[Checkpoint]:
        with self._lock:
            data = self._read()
        pending = []
        for run_id, raw in data.items():
            checkpoint = self._parse(run_id, raw)
            if checkpoint is not None and checkpoint.is_pending:
                pending.append(checkpoint)
        pending.sort(key=lambda item: item.updated_at, reverse=True)
        return pending

    def has_pending_recovery(self) -> bool:
        return bool(self.list_pending())

    def clear(self, run_id: str) -> bool:
        with self._lock:
            data = self._read()
            if run_id not in data:
                return False
            del data[run_id]
            self._write(data)
        logger.info("Checkpoint cleared run_id=%s", run_id)
        return True
