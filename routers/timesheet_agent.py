import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from agents.timesheet_agent.errors import RunAlreadyActiveError, TimesheetAgentError, WorkerStartError
from agents.timesheet_agent.models import (
    AccountMapping,
    Checkpoint,
    Credentials,
    CsvRow,
    RunConfig,
    RunRequest,
    TimeSlot,
    normalize_mappings,
)
from agents.timesheet_agent.service import TimesheetAgentService
from routers.auth import make_auth_guard

logger = logging.getLogger("agent_runner.timesheet_router")


class PlanRequest(BaseModel):
    rows: List[CsvRow] = Field(default_factory=list)
    mappings: Dict[str, AccountMapping] = Field(default_factory=dict)
    time_slots: List[TimeSlot] = Field(default_factory=list)

    @field_validator("mappings", mode="before")
    @classmethod
    def _coerce_mappings(cls, value: Any) -> Dict[str, Any]:
        return normalize_mappings(value)


class DryRunRequest(PlanRequest):
    config: Optional[RunConfig] = None


def create_timesheet_router(
    service: TimesheetAgentService,
    job_secret: str,
    missing_config_fn: Callable[[], List[str]],
) -> APIRouter:
    """Create HTTP router for timesheet automation runs."""
    router = APIRouter(prefix="/timesheet-agent", tags=["timesheet-agent"])

    ensure_auth = make_auth_guard(job_secret, logger)

    @router.post("/start")
    def start(req: RunRequest, request: Request):
        """Start a run; rejected while another run is active."""
        ensure_auth(request)
        missing = missing_config_fn()
        if missing and not req.config.login_url:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid timesheet config. Missing: {', '.join(sorted(missing))}",
            )
        try:
            return service.start(req)
        except RunAlreadyActiveError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        except WorkerStartError as err:
            raise HTTPException(status_code=503, detail=str(err)) from err
        except TimesheetAgentError as err:
            logger.warning("Start rejected: %s", err)
            raise HTTPException(status_code=400, detail=str(err)) from err

    @router.post("/stop")
    def stop(request: Request):
        ensure_auth(request)
        return service.stop()

    @router.post("/pause")
    def pause(request: Request):
        ensure_auth(request)
        return service.pause()

    @router.post("/resume")
    def resume(request: Request):
        ensure_auth(request)
        return service.resume()

    @router.post("/toggle-pause")
    def toggle_pause(request: Request):
        ensure_auth(request)
        return service.toggle_pause()

    @router.post("/validate")
    def validate(req: PlanRequest, request: Request):
        """Static pre-flight check of rows, mappings and time slots."""
        ensure_auth(request)
        return {"ok": True, "result": service.validate(req.rows, req.mappings, req.time_slots)}

    @router.post("/dry-run")
    def dry_run(req: DryRunRequest, request: Request):
        """Walk the run without a browser and estimate its duration."""
        ensure_auth(request)
        result = service.dry_run(req.rows, req.mappings, req.time_slots, req.config)
        return {"ok": True, "result": result}

    @router.get("/status")
    def status(request: Request):
        ensure_auth(request)
        return service.get_status()

    @router.get("/events")
    def events(request: Request, after: int = 0, limit: int = 200):
        """Events (progress, log, complete, error) with seq greater than ``after``."""
        ensure_auth(request)
        return service.get_events(after=after, limit=limit)

    @router.get("/logs")
    def logs(request: Request):
        ensure_auth(request)
        return {"logs": service.get_logs()}

    @router.post("/checkpoints")
    def save_checkpoint(checkpoint: Checkpoint, request: Request):
        ensure_auth(request)
        try:
            saved = service.save_checkpoint(checkpoint)
        except RunAlreadyActiveError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        return {"ok": True, "checkpoint": saved.model_dump(mode="json")}

    @router.get("/checkpoints")
    def list_pending_checkpoints(request: Request):
        ensure_auth(request)
        items = service.list_pending_checkpoints()
        return {"ok": True, "checkpoints": [item.model_dump(mode="json") for item in items]}

    @router.get("/checkpoints/pending")
    def has_pending_recovery(request: Request):
        ensure_auth(request)
        return {"ok": True, "has_pending": service.has_pending_recovery()}

    @router.get("/checkpoints/{run_id}")
    def load_checkpoint(run_id: str, request: Request):
        ensure_auth(request)
        checkpoint = service.load_checkpoint(run_id)
        if checkpoint is None:
            raise HTTPException(status_code=404, detail=f"Checkpoint not found: {run_id}")
        return {"ok": True, "checkpoint": checkpoint.model_dump(mode="json")}

    @router.delete("/checkpoints/{run_id}")
    def clear_checkpoint(run_id: str, request: Request):
        ensure_auth(request)
        try:
            removed = service.clear_checkpoint(run_id)
        except RunAlreadyActiveError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        return {"ok": True, "removed": removed}

    @router.post("/credentials")
    def save_credentials(credentials: Credentials, request: Request):
        ensure_auth(request)
        return {"ok": service.save_credentials(credentials)}

    @router.get("/credentials")
    def load_credentials(request: Request):
        """Report stored credentials without returning the password."""
        ensure_auth(request)
        stored = service.load_credentials()
        if stored is None:
            return {"ok": True, "stored": False}
        return {"ok": True, "stored": True, "email": stored.email, "remember_me": stored.remember_me}

    @router.delete("/credentials")
    def clear_credentials(request: Request):
        ensure_auth(request)
        return {"ok": True, "removed": service.clear_credentials()}

    @router.get("/encryption")
    def encryption(request: Request):
        ensure_auth(request)
        return {"ok": True, "available": service.is_encryption_available()}

    return router
