"""
Status line computation and cross-process reuse.

A status line is requested by many short-lived processes in quick
succession. The last result is shared through the status cache store; a
process recomputes only when the cached output is stale and no live process
is already recomputing it.
"""

import os
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import structlog

from tokenwatch.core.aggregation import event_session, to_local
from tokenwatch.core.blocks import (
    BurnRateLevel,
    SessionBlock,
    calculate_burn_rate,
    find_active_block,
    identify_session_blocks,
)
from tokenwatch.core.loader import LoadOptions, load_usage_events
from tokenwatch.storage.status_cache import StatusCacheRecord, StatusCacheStore

logger = structlog.get_logger()

STATUS_UNAVAILABLE = "⚠️ usage unavailable"
NO_ACTIVE_BLOCK = "No active block"

_RESET = "\033[0m"
_BURN_RATE_COLORS = {
    BurnRateLevel.MODERATE: "\033[33m",  # yellow
    BurnRateLevel.HIGH: "\033[31m",  # red
}


class CacheDecision(Enum):
    """What a process should do with the cached status record."""
    REUSE = "reuse"
    SERVE_STALE = "serve_stale"
    RECOMPUTE = "recompute"


def try_use_cache(
    record: Optional[StatusCacheRecord],
    now_file_mod_time: Optional[float],
    refresh_interval_seconds: float,
    now: Optional[float] = None,
) -> CacheDecision:
    """Decide whether a cached record is still fresh.

    A change of the source file modification time always forces a
    recompute, however recent the record is.
    """
    if record is None:
        return CacheDecision.RECOMPUTE
    if record.source_file_mod_time != now_file_mod_time:
        return CacheDecision.RECOMPUTE
    now = time.time() if now is None else now
    if now - record.last_update_time < refresh_interval_seconds:
        return CacheDecision.REUSE
    return CacheDecision.RECOMPUTE


def is_process_alive(pid: Optional[int]) -> bool:
    """Check whether a process exists using signal 0."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


def decide(
    record: Optional[StatusCacheRecord],
    now_file_mod_time: Optional[float],
    refresh_interval_seconds: float,
    now: Optional[float] = None,
    is_alive: Callable[[Optional[int]], bool] = is_process_alive,
) -> CacheDecision:
    """Full cache decision including the in-progress update check.

    Returns:
        REUSE if the record is fresh, SERVE_STALE if it is stale but a live
        process is already recomputing it, RECOMPUTE otherwise
    """
    decision = try_use_cache(record, now_file_mod_time, refresh_interval_seconds, now)
    if decision is CacheDecision.REUSE:
        return decision
    if record is not None and record.is_updating and is_alive(record.updating_pid):
        return CacheDecision.SERVE_STALE
    return CacheDecision.RECOMPUTE


def file_mod_time(path: Optional[str]) -> Optional[float]:
    if path is None:
        return None
    try:
        return os.stat(path).st_mtime
    except OSError:
        return None


def _fallback_output(record: Optional[StatusCacheRecord]) -> str:
    if record is not None and record.last_output:
        return record.last_output
    return STATUS_UNAVAILABLE


def resolve_status_output(
    session_id: str,
    compute_fn: Callable[[], str],
    source_file: Optional[str] = None,
    refresh_interval_seconds: float = 1,
    store: Optional[StatusCacheStore] = None,
    now: Optional[float] = None,
) -> str:
    """Return the status output for a session, recomputing only when needed.

    Never raises for compute or cache failures: the last good output, or
    STATUS_UNAVAILABLE, is returned instead.

    Args:
        session_id: Session the status line belongs to
        compute_fn: Produces a fresh status output
        source_file: Log file whose modification time invalidates the cache
        refresh_interval_seconds: Maximum age of a reusable output
        store: Cache store (defaults to the shared temp-dir store)
        now: Current epoch seconds

    Returns:
        Status line text
    """
    store = store or StatusCacheStore()
    mod_time = file_mod_time(source_file)
    record = store.read_record(session_id)

    decision = decide(record, mod_time, refresh_interval_seconds, now)
    if decision is CacheDecision.REUSE:
        return record.last_output
    if decision is CacheDecision.SERVE_STALE:
        logger.debug("Serving stale status output", session_id=session_id, updating_pid=record.updating_pid)
        return _fallback_output(record)

    try:
        store.begin_update(session_id)
    except OSError as e:
        logger.warning("Failed to mark status cache as updating", session_id=session_id, error=str(e))

    try:
        output = compute_fn()
    except Exception as e:
        logger.warning("Status computation failed", session_id=session_id, error=str(e))
        store.clear_updating(session_id)
        return _fallback_output(record)

    try:
        store.commit_update(session_id, output, mod_time, now)
    except OSError as e:
        logger.warning("Failed to write status cache", session_id=session_id, error=str(e))
        store.clear_updating(session_id)
    return output


def format_currency(amount: float) -> str:
    return f"${amount:.2f}"


def color_burn_rate(level: BurnRateLevel, text: str) -> str:
    """Wrap text in the ANSI color for a burn rate level; normal stays plain."""
    color = _BURN_RATE_COLORS.get(level)
    if color is None:
        return text
    return f"{color}{text}{_RESET}"


def format_remaining_time(minutes: int) -> str:
    hours, mins = divmod(max(0, minutes), 60)
    if hours > 0:
        return f"{hours}h {mins}m left"
    return f"{mins}m left"


def build_status_line(
    model_name: str,
    session_cost: float,
    today_cost: float,
    active_block: Optional[SessionBlock],
    now: Optional[datetime] = None,
) -> str:
    """Format the one-line status summary.

    Example: ``🤖 Opus | 💰 $1.20 session / $4.50 today / $3.10 block (2h 5m left) | 🔥 $1.40/hr``
    The hourly cost turns yellow at a moderate burn rate and red at a high one.
    """
    block_info = NO_ACTIVE_BLOCK
    burn_info = ""
    if active_block is not None:
        now = now or datetime.now(timezone.utc)
        remaining = round((active_block.end_time - now).total_seconds() / 60)
        block_info = f"{format_currency(active_block.cost_usd)} block ({format_remaining_time(remaining)})"
        rate = calculate_burn_rate(active_block)
        if rate is not None:
            cost_rate = f"{format_currency(rate.cost_per_hour)}/hr"
            burn_info = f" | 🔥 {color_burn_rate(rate.level, cost_rate)}"

    return (
        f"🤖 {model_name} | 💰 {format_currency(session_cost)} session / "
        f"{format_currency(today_cost)} today / {block_info}{burn_info}"
    )


def compute_status_line(
    session_id: str,
    model_name: str,
    options: LoadOptions,
    now: Optional[datetime] = None,
) -> str:
    """Load usage once and build the status line for a session."""
    now = now or datetime.now(timezone.utc)
    events = load_usage_events(options)

    today = to_local(now, options.timezone).date()
    session_cost = sum(e.cost_usd for e in events if event_session(e) == session_id)
    today_cost = sum(e.cost_usd for e in events if to_local(e.timestamp, options.timezone).date() == today)

    blocks = identify_session_blocks(events, options.session_duration_hours, now=now)
    return build_status_line(model_name, session_cost, today_cost, find_active_block(blocks), now=now)


def session_id_from_transcript(transcript_path: str) -> str:
    """Fallback session id: the transcript file name without extension."""
    return Path(transcript_path).stem
