"""Entry point of the isolated worker process that owns the browser.

The supervisor starts :func:`run_worker` in a separate process and talks to it
only through two queues of plain dicts. The Playwright browser, context and
page never leave this process.
"""
import logging
import os
import queue
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from playwright.sync_api import sync_playwright

from agents.timesheet_agent.checkpoints import CheckpointStore
from agents.timesheet_agent.models import RunConfig, RunRequest
from agents.timesheet_agent.pages import AuthenticationPage, TimesheetPage
from agents.timesheet_agent.runner import ControlChannel, EmitterSink, PageSession, RunStateMachine


logger = logging.getLogger("agent_runner.timesheet_worker")

START_TIMEOUT_SECONDS = 60


class QueueControl(ControlChannel):
    def __init__(self, inbox) -> None:
        self.inbox = inbox

    @staticmethod
    def _signal(message: Any) -> Optional[str]:
        if isinstance(message, dict):
            return str(message.get("type") or "") or None
        return None

    def poll(self) -> Optional[str]:
        try:
            return self._signal(self.inbox.get_nowait())
        except queue.Empty:
            return None

    def wait(self, timeout: float) -> Optional[str]:
        try:
            return self._signal(self.inbox.get(timeout=timeout))
        except queue.Empty:
            return None


def _ensure_playwright_browsers() -> bool:
    command = [sys.executable, "-m", "playwright", "install", "chromium"]
    logger.warning("Chromium not found; attempting automatic install")
    try:
        subprocess.run(command, check=True, timeout=900, text=True, capture_output=True)
        logger.info("Automatic Chromium install completed")
        return True
    except Exception:
        logger.exception("Could not install Chromium at runtime")
        return False


def launch_browser(playwright, *, headless: bool):
    try:
        return playwright.chromium.launch(headless=headless)
    except Exception as err:
        if "Executable doesn't exist" not in str(err):
            raise
        if not _ensure_playwright_browsers():
            raise
        return playwright.chromium.launch(headless=headless)


def make_session_opener(data_dir: Path):
    @contextmanager
    def open_playwright_session(config: RunConfig, run_id: str) -> Iterator[PageSession]:
        run_dir = data_dir / "runs" / run_id

        with sync_playwright() as p:
            browser = launch_browser(p, headless=config.headless)
            context = browser.new_context()
            page = context.new_page()
            page.set_default_timeout(config.timeout)

            def snap(tag: str) -> None:
                run_dir.mkdir(parents=True, exist_ok=True)
                page.screenshot(path=str(run_dir / f"{tag}.png"), full_page=True)
                (run_dir / f"{tag}.html").write_text(page.content(), encoding="utf-8")
                logger.info("Snapshot saved: %s", run_dir / tag)

            try:
                yield PageSession(
                    auth=AuthenticationPage(page, timeout_ms=config.timeout),
                    timesheet=TimesheetPage(page, timeout_ms=config.timeout),
                    snapshot=snap,
                )
            finally:
                try:
                    context.close()
                finally:
                    browser.close()
                logger.info("Playwright resources closed run_id=%s", run_id)

    return open_playwright_session


def run_worker(inbox, outbox, data_dir: str, log_level: str = "INFO") -> None:
    logging.basicConfig(
        level=str(log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )

    def emit(kind: str, data: Dict[str, Any]) -> None:
        outbox.put({"type": kind, "data": data})

    emit("ready", {"pid": os.getpid()})
    try:
        message = inbox.get(timeout=START_TIMEOUT_SECONDS)
    except queue.Empty:
        emit("error", {"error": "Worker did not receive a start message"})
        return
    if not isinstance(message, dict) or message.get("type") != "start":
        emit("error", {"error": f"Unexpected first message: {message!r}"})
        return

    try:
        request = RunRequest.model_validate(message.get("data") or {})
        machine = RunStateMachine(
            request,
            open_session=make_session_opener(Path(data_dir)),
            checkpoints=CheckpointStore(Path(data_dir)),
            control=QueueControl(inbox),
            emit=emit,
            sink=EmitterSink(emit, logger),
        )
    except Exception as err:
        logger.exception("Invalid run request")
        emit("error", {"error": f"Invalid run request: {err}"})
        return

    machine.run()
