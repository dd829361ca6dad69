"""
Usage log discovery and file access.

Finds usage log roots and JSONL files, orders files by their earliest
embedded timestamp and reads them through a bounded thread pool.
"""

import json
import os
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

import structlog

from tokenwatch.config.loader import ConfigurationError
from tokenwatch.core.parser import parse_timestamp
from tokenwatch.storage.models import UsageFile

logger = structlog.get_logger()

CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"
PROJECTS_DIR_NAME = "projects"
USAGE_FILE_PATTERN = "*.jsonl"
DEFAULT_FILE_CONCURRENCY = 5
UNKNOWN_PROJECT = "unknown"

PathLike = Union[str, Path]
T = TypeVar("T")


class ResourceAccessError(Exception):
    """Raised when a log file or cache file cannot be read.

    Callers treat the unit as having no data.
    """


def _valid_root(candidate: Path) -> bool:
    return candidate.is_dir() and (candidate / PROJECTS_DIR_NAME).is_dir()


def get_data_paths(env: Optional[Mapping[str, str]] = None) -> List[Path]:
    """Resolve the usage log roots.

    Roots come from CLAUDE_CONFIG_DIR (comma-separated) when it is set,
    otherwise from $XDG_CONFIG_HOME/claude and ~/.claude. A root is valid
    only if it contains a ``projects`` directory.

    Raises:
        ConfigurationError: If no valid root is found
    """
    env = os.environ if env is None else env
    roots: List[Path] = []
    seen = set()

    def add(candidate: str) -> None:
        resolved = Path(candidate).expanduser().resolve()
        if resolved in seen or not _valid_root(resolved):
            return
        seen.add(resolved)
        roots.append(resolved)

    env_paths = env.get(CONFIG_DIR_ENV, "").strip()
    if env_paths:
        for entry in env_paths.split(","):
            if entry.strip():
                add(entry.strip())
        if not roots:
            raise ConfigurationError(
                f"No valid usage log directories found in {CONFIG_DIR_ENV}. "
                f"Please ensure '{PROJECTS_DIR_NAME}' exists under: {env_paths}"
            )
        return roots

    home = env.get("HOME") or os.path.expanduser("~")
    config_home = env.get("XDG_CONFIG_HOME", "").strip() or os.path.join(home, ".config")
    defaults = [os.path.join(config_home, "claude"), os.path.join(home, ".claude")]
    for candidate in defaults:
        add(candidate)

    if not roots:
        raise ConfigurationError(
            "No valid usage log directories found. Please ensure one of the following exists:\n"
            + "\n".join(f"- {os.path.join(d, PROJECTS_DIR_NAME)}" for d in defaults)
            + f"\nor set {CONFIG_DIR_ENV} to directories containing '{PROJECTS_DIR_NAME}'"
        )
    return roots


def glob_usage_files(roots: Sequence[PathLike]) -> List[UsageFile]:
    """Find all JSONL usage files under each root's projects directory.

    Unreadable roots are logged and skipped.
    """
    files: List[UsageFile] = []
    for root in roots:
        base_dir = Path(root) / PROJECTS_DIR_NAME
        try:
            found = sorted(p for p in base_dir.rglob(USAGE_FILE_PATTERN) if p.is_file())
        except OSError as e:
            logger.warning("Skipping unreadable usage root", root=str(root), error=str(e))
            continue
        files.extend(UsageFile(path=path, base_dir=base_dir) for path in found)
    return files


def extract_project_from_path(path: PathLike) -> str:
    """Return the directory name following ``projects`` in a log path."""
    segments = re.split(r"[/\\]", str(path))
    try:
        index = segments.index(PROJECTS_DIR_NAME)
    except ValueError:
        return UNKNOWN_PROJECT
    if index + 1 >= len(segments):
        return UNKNOWN_PROJECT
    project = segments[index + 1]
    return project if project.strip() else UNKNOWN_PROJECT


def read_text(path: PathLike) -> str:
    """Read a whole log file.

    Raises:
        ResourceAccessError: If the file cannot be read or decoded
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ResourceAccessError(f"Failed to read {path}: {e}") from e


def read_from_offset(path: PathLike, offset: int = 0) -> Tuple[str, int]:
    """Read the complete lines appended to a file after ``offset``.

    A trailing partial line is left for the next read. A file shorter than
    ``offset`` was rewritten and is read from the start.

    Returns:
        Tuple of (text of complete lines, new offset)

    Raises:
        ResourceAccessError: If the file cannot be read or decoded
    """
    try:
        with open(path, 'rb') as f:
            size = os.fstat(f.fileno()).st_size
            if size < offset:
                offset = 0
            f.seek(offset)
            data = f.read()
    except OSError as e:
        raise ResourceAccessError(f"Failed to read {path}: {e}") from e

    end = data.rfind(b"\n")
    if end < 0:
        return "", offset
    chunk = data[:end + 1]
    try:
        return chunk.decode("utf-8"), offset + len(chunk)
    except UnicodeDecodeError as e:
        raise ResourceAccessError(f"Failed to decode {path}: {e}") from e


def get_earliest_timestamp(path: PathLike) -> Optional[datetime]:
    """Return the earliest ``timestamp`` found in a log file.

    Unreadable files and files without timestamps yield None.
    """
    try:
        content = read_text(path)
    except ResourceAccessError as e:
        logger.debug("Failed to get earliest timestamp", file=str(path), error=str(e))
        return None

    earliest: Optional[datetime] = None
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except (ValueError, RecursionError):
            continue
        if not isinstance(record, dict):
            continue
        ts = parse_timestamp(record.get("timestamp"))
        if ts is not None and (earliest is None or ts < earliest):
            earliest = ts
    return earliest


def get_earliest_timestamps(
    paths: Sequence[PathLike],
    max_workers: int = DEFAULT_FILE_CONCURRENCY,
) -> List[Optional[datetime]]:
    """Earliest timestamps for many files, in input order."""
    if not paths:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(get_earliest_timestamp, paths))


def order_by_timestamp(items: Sequence[T], timestamps: Sequence[Optional[datetime]]) -> List[T]:
    """Order items by their timestamps ascending; missing timestamps go last.

    The sort is stable, so ties keep input order.
    """
    indexed = list(zip(items, timestamps))
    indexed.sort(key=lambda pair: (pair[1] is None, pair[1].timestamp() if pair[1] else 0.0))
    return [item for item, _ in indexed]


def sort_files_by_timestamp(
    files: Sequence[T],
    max_workers: int = DEFAULT_FILE_CONCURRENCY,
) -> List[T]:
    """Sort paths or UsageFiles by their earliest embedded timestamp."""
    paths = [f.path if isinstance(f, UsageFile) else f for f in files]
    return order_by_timestamp(files, get_earliest_timestamps(paths, max_workers))


def _read_or_none(path: PathLike) -> Optional[str]:
    try:
        return read_text(path)
    except ResourceAccessError as e:
        logger.debug("Skipping unreadable usage file", file=str(path), error=str(e))
        return None


def read_files(paths: Sequence[PathLike], max_workers: int = DEFAULT_FILE_CONCURRENCY) -> List[Optional[str]]:
    """Read files on a bounded pool.

    Results come back in input order whatever the completion order;
    unreadable files yield None.
    """
    if not paths:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(_read_or_none, paths))
