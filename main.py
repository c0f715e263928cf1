import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI

from agents.timesheet_agent.models import RunConfig
from agents.timesheet_agent.service import TimesheetAgentService
from routers.timesheet_agent import create_timesheet_router


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Add-on style deployments mount /data for persistence.
DATA_DIR = Path(os.getenv("DATA_DIR", "/data")).resolve()
DATA_DIR.mkdir(parents=True, exist_ok=True)


def _load_options(data_dir: Path) -> Dict[str, Any]:
    """Load persisted options from <data_dir>/options.json."""
    options_path = data_dir / "options.json"
    if not options_path.exists():
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
        return options if isinstance(options, dict) else {}
    except Exception:
        logging.getLogger("agent_runner").exception("Could not parse %s; using defaults", options_path)
        return {}


OPTIONS = _load_options(DATA_DIR)


def _setting(name: str, default: str = "") -> str:
    """Read a setting from ENV first, then options.json."""
    env_name = name.upper()
    if env_name in os.environ:
        return os.getenv(env_name, default)
    return str(OPTIONS.get(name.lower(), default))


def _flag(name: str, default: bool) -> bool:
    raw = _setting(name, "true" if default else "false").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _configure_logging(level: str, log_dir: str) -> logging.Logger:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(path / f"timesheet-{date.today().isoformat()}.log", encoding="utf-8")
        )
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)
    return logging.getLogger("agent_runner")


LOG_LEVEL = _setting("log_level", "INFO")
logger = _configure_logging(LOG_LEVEL, _setting("log_dir", ""))

JOB_SECRET = _setting("job_secret", "")
WEBHOOK_FINAL_URL = _setting("webhook_final_url", "")
STOP_GRACE_SECONDS = float(_setting("stop_grace_seconds", "10") or 10)

DEFAULT_CONFIG = RunConfig(
    login_url=_setting("replicon_login_url", ""),
    timeout=int(_setting("replicon_timeout", "45000") or 45000),
    headless=_flag("replicon_headless", False),
    auto_save=_flag("replicon_autosave", True),
)


def missing_config() -> List[str]:
    missing = []
    if not DEFAULT_CONFIG.login_url:
        missing.append("replicon_login_url")
    return missing


def create_app(service: Optional[TimesheetAgentService] = None) -> FastAPI:
    service = service or TimesheetAgentService(
        data_dir=DATA_DIR,
        defaults=DEFAULT_CONFIG,
        logger=logging.getLogger("agent_runner.timesheet_agent"),
        webhook_final_url=WEBHOOK_FINAL_URL,
        stop_grace_seconds=STOP_GRACE_SECONDS,
        log_level=LOG_LEVEL,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if not service.shutdown():
            logger.warning("Worker did not exit cleanly during shutdown")

    app = FastAPI(title="Timesheet Runner", lifespan=lifespan)
    app.state.timesheet_service = service
    app.include_router(
        create_timesheet_router(
            service=service,
            job_secret=JOB_SECRET,
            missing_config_fn=missing_config,
        )
    )

    @app.get("/health")
    def health():
        """Liveness plus effective, non-secret configuration."""
        return {
            "ok": True,
            "data_dir": str(DATA_DIR),
            "has_job_secret": bool(JOB_SECRET),
            "has_webhook_final": bool(WEBHOOK_FINAL_URL),
            "has_login_url": bool(DEFAULT_CONFIG.login_url),
            "headless": DEFAULT_CONFIG.headless,
            "running": service.is_running(),
            "missing_config": missing_config(),
        }

    return app


APP = create_app()
