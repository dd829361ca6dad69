"""
Incremental live monitoring of the active session block.

Keeps per-file read state between refresh ticks so that each tick only
reads new or changed log data, retains a bounded window of recent events
and re-runs block segmentation over that window.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

import structlog

from tokenwatch.core.blocks import SessionBlock, find_active_block, identify_session_blocks
from tokenwatch.core.dedup import DedupIndex
from tokenwatch.core.parser import compute_identity_key, iter_events
from tokenwatch.core.pricing import CostMode, PricingFetcher, calculate_cost_for_event
from tokenwatch.storage.files import (
    ResourceAccessError,
    extract_project_from_path,
    get_earliest_timestamps,
    glob_usage_files,
    order_by_timestamp,
    read_from_offset,
)
from tokenwatch.storage.models import UsageEvent

logger = structlog.get_logger()

RETENTION_HOURS = 24
FILE_CONCURRENCY = 5
HASH_CLEAR_THRESHOLD = 100


class MonitorCancelled(Exception):
    """Raised when a refresh tick is cancelled before its changes are committed."""


@dataclass(frozen=True)
class LiveMonitorConfig:
    """Settings for one monitoring session."""
    data_paths: Sequence[str]
    session_duration_hours: float = 5
    cost_mode: CostMode = CostMode.AUTO
    order: str = "desc"
    retention_hours: float = RETENTION_HOURS
    file_concurrency: int = FILE_CONCURRENCY
    offline: bool = False
    pricing_cache_path: Optional[Path] = None

    def __post_init__(self):
        """Validate limits."""
        if self.retention_hours <= 0:
            raise ValueError("retention_hours must be > 0")
        if self.file_concurrency < 1:
            raise ValueError("file_concurrency must be >= 1")


class LiveMonitorState:
    """Cache carried across refresh ticks of one monitoring session.

    Mutated only by refresh_live_block, one tick at a time. Close it (or use
    it as a context manager) to release the owned pricing handle.
    """

    def __init__(self, pricing: Optional[PricingFetcher] = None):
        self.pricing = pricing
        self.file_timestamps: Dict[str, datetime] = {}
        self.file_offsets: Dict[str, int] = {}
        self.processed_hashes = DedupIndex()
        self.retained_entries: List[UsageEvent] = []

    def close(self) -> None:
        if self.pricing is not None:
            self.pricing.close()

    def __enter__(self) -> "LiveMonitorState":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class _ReadPlan(NamedTuple):
    path: str
    earliest: datetime
    offset: int
    full: bool


def create_live_monitor_state(config: LiveMonitorConfig) -> LiveMonitorState:
    """Create monitoring state; a pricing handle is allocated unless costs are display-only."""
    pricing = None
    if config.cost_mode is not CostMode.DISPLAY:
        pricing = PricingFetcher(offline=config.offline, cache_path=config.pricing_cache_path)
    return LiveMonitorState(pricing=pricing)


def clear_live_monitor_cache(state: LiveMonitorState) -> None:
    """Drop all cached data so the next tick recomputes from scratch. The pricing handle is kept."""
    state.file_timestamps.clear()
    state.file_offsets.clear()
    state.processed_hashes.clear()
    state.retained_entries = []


def cleanup_old_entries(state: LiveMonitorState, cutoff: datetime) -> int:
    """Evict retained entries older than ``cutoff``.

    The dedup index is cleared when more than HASH_CLEAR_THRESHOLD entries
    were evicted in one pass.

    Returns:
        Number of evicted entries
    """
    before = len(state.retained_entries)
    state.retained_entries = [e for e in state.retained_entries if e.timestamp >= cutoff]
    evicted = before - len(state.retained_entries)
    if evicted > HASH_CLEAR_THRESHOLD:
        state.processed_hashes.clear()
    return evicted


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise MonitorCancelled("Refresh cancelled")


def _recent_files(paths: Sequence[str], cutoff: datetime) -> Tuple[List[str], Dict[str, int]]:
    """Filter files by modification time; also return their sizes."""
    recent: List[str] = []
    sizes: Dict[str, int] = {}
    cutoff_ts = cutoff.timestamp()
    for path in paths:
        try:
            stat = os.stat(path)
        except OSError:
            continue
        if stat.st_mtime >= cutoff_ts:
            recent.append(path)
            sizes[path] = stat.st_size
    return recent, sizes


def _plan_reads(
    state: LiveMonitorState,
    candidates: Sequence[str],
    earliest: Sequence[Optional[datetime]],
    sizes: Dict[str, int],
) -> List[_ReadPlan]:
    plans: List[_ReadPlan] = []
    for path, ts in zip(candidates, earliest):
        if ts is None:
            continue
        last = state.file_timestamps.get(path)
        if last is None or ts > last:
            plans.append(_ReadPlan(path, ts, 0, True))
            continue
        offset = state.file_offsets.get(path, 0)
        if sizes.get(path, 0) != offset:
            plans.append(_ReadPlan(path, ts, offset, False))
    return order_by_timestamp(plans, [p.earliest for p in plans])


def _read_plan(plan: _ReadPlan) -> Optional[Tuple[str, int]]:
    try:
        return read_from_offset(plan.path, plan.offset)
    except ResourceAccessError as e:
        logger.debug("Skipping unreadable usage file", file=plan.path, error=str(e))
        return None


def _read_all(
    plans: Sequence[_ReadPlan],
    max_workers: int,
    cancel_event: Optional[threading.Event],
) -> List[Optional[Tuple[str, int]]]:
    """Read planned files in parallel; results come back in plan order."""
    if not plans:
        return []
    executor = ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures = [executor.submit(_read_plan, plan) for plan in plans]
        results = []
        for future in futures:
            _check_cancelled(cancel_event)
            results.append(future.result())
        return results
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def refresh_live_block(
    state: LiveMonitorState,
    config: LiveMonitorConfig,
    now: Optional[datetime] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[SessionBlock]:
    """Run one refresh tick and return the active block.

    Only files modified within the retention window are considered. A file
    is read in full when it is new or its earliest timestamp advanced;
    otherwise only complete lines appended since the last tick are read.
    All state changes of the tick are applied together at the end.

    Args:
        state: Monitoring state carried between ticks
        config: Monitoring settings
        now: Reference time (defaults to current UTC time)
        cancel_event: When set, the tick stops before committing

    Returns:
        The active SessionBlock, or None if there is none

    Raises:
        MonitorCancelled: If cancel_event was set during the tick
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=config.retention_hours)

    paths = [str(f.path) for f in glob_usage_files(config.data_paths)]
    candidates, sizes = _recent_files(paths, cutoff)
    _check_cancelled(cancel_event)

    earliest = get_earliest_timestamps(candidates, config.file_concurrency)
    plans = _plan_reads(state, candidates, earliest, sizes)
    _check_cancelled(cancel_event)

    results = _read_all(plans, config.file_concurrency, cancel_event)

    # A full re-read replaces everything previously retained from that file
    reread = {plan.path for plan, result in zip(plans, results) if plan.full and result is not None}
    replaced_keys = {
        key for key in (compute_identity_key(e) for e in state.retained_entries if e.source_file in reread)
        if key is not None
    }

    staged_timestamps: Dict[str, datetime] = {}
    staged_offsets: Dict[str, int] = {}
    staged_hashes: Set[str] = set()
    staged_entries: List[UsageEvent] = []

    for plan, result in zip(plans, results):
        if result is None:
            continue
        text, new_offset = result
        staged_offsets[plan.path] = new_offset
        if plan.full:
            staged_timestamps[plan.path] = plan.earliest

        project = extract_project_from_path(plan.path)
        for event in iter_events(text.splitlines(), source_file=plan.path, source_project=project):
            if event.timestamp < cutoff:
                continue
            key = compute_identity_key(event)
            if key is not None:
                seen = key in state.processed_hashes and key not in replaced_keys
                if seen or key in staged_hashes:
                    continue
                staged_hashes.add(key)
            cost = calculate_cost_for_event(event, config.cost_mode, state.pricing)
            staged_entries.append(replace(event, cost_usd=cost))

    _check_cancelled(cancel_event)

    state.file_timestamps.update(staged_timestamps)
    state.file_offsets.update(staged_offsets)
    state.processed_hashes.update(staged_hashes)
    if reread:
        state.retained_entries = [e for e in state.retained_entries if e.source_file not in reread]
    state.retained_entries.extend(staged_entries)
    evicted = cleanup_old_entries(state, cutoff)

    logger.debug(
        "Live refresh",
        files_read=len(staged_offsets),
        new_entries=len(staged_entries),
        evicted=evicted,
        retained=len(state.retained_entries),
    )

    blocks = identify_session_blocks(state.retained_entries, config.session_duration_hours, now=now)
    return find_active_block(blocks)


def run_live_monitor(
    config: LiveMonitorConfig,
    on_block: Callable[[Optional[SessionBlock]], None],
    refresh_interval: float = 1.0,
    stop_event: Optional[threading.Event] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> None:
    """Refresh the active block until ``stop_event`` is set.

    Ticks run strictly one after another. A failing tick is logged and
    reported to ``on_error``; the loop keeps going. Waiting between ticks
    ends immediately when ``stop_event`` is set.
    """
    stop_event = stop_event or threading.Event()
    with create_live_monitor_state(config) as state:
        while not stop_event.is_set():
            try:
                block = refresh_live_block(state, config, cancel_event=stop_event)
            except MonitorCancelled:
                break
            except Exception as e:
                logger.error("Live refresh failed", error=str(e))
                if on_error is not None:
                    on_error(e)
            else:
                on_block(block)
            stop_event.wait(refresh_interval)
    logger.debug("Live monitor stopped")
