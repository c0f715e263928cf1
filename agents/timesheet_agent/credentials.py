import json
import logging
import os
from pathlib import Path
from typing import Optional

from agents.timesheet_agent.models import Credentials


logger = logging.getLogger("agent_runner.timesheet_credentials")


class CredentialStore:
    """Remembered sign-in credentials stored as an owner-only JSON file.

    This backend does not encrypt at rest, which ``is_encryption_available``
    reports so callers can avoid offering sensitive resume data.
    """

    def __init__(self, data_dir: Path) -> None:
        self.path = Path(data_dir) / "credentials.json"

    def is_encryption_available(self) -> bool:
        return False

    def save(self, credentials: Credentials) -> bool:
        if not credentials.remember_me:
            self.clear()
            return False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(credentials.model_dump(), ensure_ascii=False),
                encoding="utf-8",
            )
            os.chmod(self.path, 0o600)
            return True
        except Exception:
            logger.exception("Failed to store credentials")
            return False

    def load(self) -> Optional[Credentials]:
        if not self.path.exists():
            return None
        try:
            return Credentials.model_validate_json(self.path.read_text(encoding="utf-8"))
        except Exception:
            logger.exception("Failed to read stored credentials")
            return None

    def clear(self) -> bool:
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
