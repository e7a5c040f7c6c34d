# Persistence of interactive import sessions between requests
import json
import re
import time
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from household_ledger.models import ImportSession

logger = structlog.get_logger(__name__)

_SESSION_ID = re.compile(r"^[0-9a-f]{32}$")


class ImportSessionStore:
    """One JSON progress file per import session."""

    def __init__(self, progress_dir: Path):
        self.progress_dir = Path(progress_dir)

    def _path(self, session_id: str) -> Optional[Path]:
        if not _SESSION_ID.match(session_id):
            return None
        return self.progress_dir / f"{session_id}.json"

    def load(self, session_id: str) -> Optional[ImportSession]:
        """Load a session; None if missing or unreadable."""
        path = self._path(session_id)
        if path is None or not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return ImportSession.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("session_unreadable", session_id=session_id, error=str(e))
            return None

    def save(self, session: ImportSession) -> None:
        self.progress_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(session.id)
        if path is None:
            raise ValueError(f"invalid session id {session.id!r}")
        with open(path, "w", encoding="utf-8") as f:
            f.write(session.model_dump_json(indent=2))

    def delete(self, session_id: str) -> None:
        path = self._path(session_id)
        if path is not None and path.exists():
            path.unlink()

    def purge_expired(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """Delete sessions whose file was last written more than ``max_age_seconds`` ago."""
        if not self.progress_dir.exists():
            return 0
        cutoff = (time.time() if now is None else now) - max_age_seconds
        removed = 0
        for path in self.progress_dir.glob("*.json"):
            if _SESSION_ID.match(path.stem) and path.stat().st_mtime < cutoff:
                self.delete(path.stem)
                removed += 1
        if removed:
            logger.info("import_sessions_purged", count=removed)
        return removed
