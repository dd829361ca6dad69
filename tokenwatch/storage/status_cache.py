"""
Status line cache storage.

Persists the last computed status line per session so that many short-lived
processes can share one result. One JSON file per session; every write
replaces the whole file atomically. There is no locking: concurrent writers
race and the last one wins.
"""

import json
import os
import re
import tempfile
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()

CACHE_DIR_NAME = "tokenwatch-status"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class StatusCacheRecord:
    """Last computed status output for one session."""
    last_output: str
    last_update_time: float
    source_file_mod_time: Optional[float] = None
    is_updating: bool = False
    updating_pid: Optional[int] = None


def default_cache_dir() -> Path:
    return Path(tempfile.gettempdir()) / CACHE_DIR_NAME


def _record_from_dict(data: dict) -> StatusCacheRecord:
    """Validate a decoded record.

    Raises:
        ValueError: If a field is missing or has the wrong type
    """
    if not isinstance(data, dict):
        raise ValueError("Record must be a JSON object")

    output = data.get("last_output")
    if not isinstance(output, str):
        raise ValueError("'last_output' must be a string")

    updated = data.get("last_update_time")
    if isinstance(updated, bool) or not isinstance(updated, (int, float)):
        raise ValueError("'last_update_time' must be a number")

    mod_time = data.get("source_file_mod_time")
    if mod_time is not None and (isinstance(mod_time, bool) or not isinstance(mod_time, (int, float))):
        raise ValueError("'source_file_mod_time' must be a number")

    is_updating = data.get("is_updating", False)
    if not isinstance(is_updating, bool):
        raise ValueError("'is_updating' must be a boolean")

    pid = data.get("updating_pid")
    if pid is not None and (isinstance(pid, bool) or not isinstance(pid, int)):
        raise ValueError("'updating_pid' must be an integer")

    return StatusCacheRecord(
        last_output=output,
        last_update_time=float(updated),
        source_file_mod_time=float(mod_time) if mod_time is not None else None,
        is_updating=is_updating,
        updating_pid=pid,
    )


class StatusCacheStore:
    """File-backed store of StatusCacheRecords keyed by session id."""

    def __init__(self, cache_dir: Optional[Path] = None):
        """Initialize the store.

        Args:
            cache_dir: Directory holding the record files; defaults to a
                directory under the system temp dir
        """
        self.cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()

    def record_path(self, session_id: str) -> Path:
        safe_id = _UNSAFE_CHARS.sub("_", session_id) or "_"
        return self.cache_dir / f"{safe_id}.json"

    def read_record(self, session_id: str) -> Optional[StatusCacheRecord]:
        """Read the record for a session.

        Returns:
            The record, or None if it is missing, unreadable or corrupt
        """
        path = self.record_path(session_id)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return _record_from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.debug("Ignoring unreadable status cache record", path=str(path), error=str(e))
            return None

    def write_record(self, session_id: str, record: StatusCacheRecord) -> None:
        """Replace the record for a session.

        Raises:
            OSError: If the record cannot be written
        """
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.record_path(session_id)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.cache_dir), prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(asdict(record), f)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def begin_update(self, session_id: str, pid: Optional[int] = None) -> None:
        """Mark a session as being recomputed by ``pid``, keeping the previous output."""
        pid = os.getpid() if pid is None else pid
        current = self.read_record(session_id)
        if current is None:
            current = StatusCacheRecord(last_output="", last_update_time=0.0)
        self.write_record(session_id, replace(current, is_updating=True, updating_pid=pid))

    def commit_update(
        self,
        session_id: str,
        output: str,
        file_mod_time: Optional[float],
        now: Optional[float] = None,
    ) -> StatusCacheRecord:
        """Store a freshly computed output and clear the updating flag."""
        record = StatusCacheRecord(
            last_output=output,
            last_update_time=time.time() if now is None else now,
            source_file_mod_time=file_mod_time,
            is_updating=False,
            updating_pid=None,
        )
        self.write_record(session_id, record)
        return record

    def clear_updating(self, session_id: str) -> None:
        """Clear the updating flag after a failed recompute. Best-effort."""
        current = self.read_record(session_id)
        if current is None or not current.is_updating:
            return
        try:
            self.write_record(session_id, replace(current, is_updating=False, updating_pid=None))
        except OSError as e:
            logger.warning("Failed to clear status cache updating flag", session_id=session_id, error=str(e))
