"""
Batch usage loading.

Discovers usage logs, reads them in earliest-timestamp order, deduplicates
events across files and produces the report rows and session blocks.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from tokenwatch.core.aggregation import (
    UsageAggregate,
    aggregate,
    daily_key,
    daily_project_key,
    filter_by_date_range,
    filter_events_by_date_range,
    monthly_key,
    monthly_project_key,
    normalize_date_bound,
    session_key,
    sort_aggregates,
    to_local,
    weekly_key,
)
from tokenwatch.core.blocks import (
    DEFAULT_RECENT_DAYS,
    SessionBlock,
    filter_recent_blocks,
    identify_session_blocks,
)
from tokenwatch.core.dedup import DedupIndex
from tokenwatch.core.parser import compute_identity_key, iter_events
from tokenwatch.core.pricing import CostMode, PricingFetcher, calculate_cost_for_event
from tokenwatch.storage.files import (
    CONFIG_DIR_ENV,
    DEFAULT_FILE_CONCURRENCY,
    extract_project_from_path,
    get_data_paths,
    glob_usage_files,
    read_files,
    sort_files_by_timestamp,
)
from tokenwatch.storage.models import UsageEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class LoadOptions:
    """Knobs shared by all batch loaders."""
    data_paths: Sequence[str] = ()
    since: Optional[str] = None
    until: Optional[str] = None
    project: Optional[str] = None
    group_by_project: bool = False
    order: str = "asc"
    timezone: Optional[str] = None
    start_of_week: str = "sunday"
    cost_mode: CostMode = CostMode.AUTO
    offline: bool = False
    pricing_cache_path: Optional[Path] = None
    session_duration_hours: float = 5
    recent_days: Optional[int] = None
    active_only: bool = False
    file_concurrency: int = DEFAULT_FILE_CONCURRENCY

    def __post_init__(self):
        """Validate date bounds and order early."""
        normalize_date_bound(self.since)
        normalize_date_bound(self.until)
        if self.order not in ("asc", "desc"):
            raise ValueError(f"Invalid sort order: {self.order}. Must be 'asc' or 'desc'")
        if self.file_concurrency < 1:
            raise ValueError("file_concurrency must be >= 1")


def resolve_roots(data_paths: Sequence[str]) -> List[Path]:
    """Validate explicit roots, or discover the default ones.

    Raises:
        ConfigurationError: If no valid root is found
    """
    if data_paths:
        return get_data_paths(env={CONFIG_DIR_ENV: ",".join(str(p) for p in data_paths)})
    return get_data_paths()


def load_usage_events(options: Optional[LoadOptions] = None) -> List[UsageEvent]:
    """Load all deduplicated usage events with resolved costs.

    Files are processed in ascending order of their earliest timestamp, so
    when the same request appears in two files the earlier file's copy wins.

    Raises:
        ConfigurationError: If no valid usage log root exists
    """
    options = options or LoadOptions()
    roots = resolve_roots(options.data_paths)
    files = glob_usage_files(roots)

    if options.project is not None:
        files = [f for f in files if extract_project_from_path(f.path) == options.project]
    if not files:
        return []

    sorted_files = sort_files_by_timestamp(files, options.file_concurrency)
    contents = read_files([f.path for f in sorted_files], options.file_concurrency)

    dedup = DedupIndex()
    events: List[UsageEvent] = []
    duplicates = 0
    fetcher = None
    if options.cost_mode is not CostMode.DISPLAY:
        fetcher = PricingFetcher(offline=options.offline, cache_path=options.pricing_cache_path)

    try:
        for usage_file, content in zip(sorted_files, contents):
            if content is None:
                continue
            project = extract_project_from_path(usage_file.path)
            for event in iter_events(content.splitlines(), source_file=str(usage_file.path), source_project=project):
                if not dedup.check_and_mark(compute_identity_key(event)):
                    duplicates += 1
                    continue
                cost = calculate_cost_for_event(event, options.cost_mode, fetcher)
                events.append(replace(event, cost_usd=cost))
    finally:
        if fetcher is not None:
            fetcher.close()

    logger.debug("Loaded usage events", files=len(sorted_files), events=len(events), duplicates_skipped=duplicates)
    return events


def _report(options: LoadOptions, key_fn) -> List[UsageAggregate]:
    events = load_usage_events(options)
    events = filter_events_by_date_range(events, options.since, options.until, options.timezone)
    rows = aggregate(events, key_fn).values()
    return sort_aggregates(rows, options.order)


def load_daily_usage(options: Optional[LoadOptions] = None) -> List[UsageAggregate]:
    """Daily report rows, optionally split per project."""
    options = options or LoadOptions()
    key_fn = daily_project_key(options.timezone) if options.group_by_project else daily_key(options.timezone)
    return _report(options, key_fn)


def load_weekly_usage(options: Optional[LoadOptions] = None) -> List[UsageAggregate]:
    """Weekly report rows keyed by the first day of each week."""
    options = options or LoadOptions()
    return _report(options, weekly_key(options.start_of_week, options.timezone))


def load_monthly_usage(options: Optional[LoadOptions] = None) -> List[UsageAggregate]:
    """Monthly report rows, optionally split per project."""
    options = options or LoadOptions()
    key_fn = monthly_project_key(options.timezone) if options.group_by_project else monthly_key(options.timezone)
    return _report(options, key_fn)


def load_session_usage(options: Optional[LoadOptions] = None) -> List[UsageAggregate]:
    """Per-session report rows ordered by last activity."""
    options = options or LoadOptions()
    events = load_usage_events(options)
    rows = aggregate(events, session_key).values()
    rows = filter_by_date_range(rows, options.since, options.until, options.timezone)
    return sort_aggregates(rows, options.order, by_last_activity=True)


def group_rows_by_project(rows: Sequence[UsageAggregate]) -> Dict[str, List[UsageAggregate]]:
    """Split report rows into per-project lists, keeping row order."""
    projects: Dict[str, List[UsageAggregate]] = {}
    for row in rows:
        projects.setdefault(row.project or "unknown", []).append(row)
    return projects


def load_session_blocks(
    options: Optional[LoadOptions] = None,
    now: Optional[datetime] = None,
) -> List[SessionBlock]:
    """Session blocks over all loaded events.

    Date bounds compare against each block's start date in the report
    timezone. ``recent_days`` keeps recent and active blocks only;
    ``active_only`` keeps the active block only.
    """
    options = options or LoadOptions()
    events = load_usage_events(options)
    blocks = identify_session_blocks(events, options.session_duration_hours, now=now)

    since = normalize_date_bound(options.since)
    until = normalize_date_bound(options.until)
    if since is not None or until is not None:
        filtered = []
        for block in blocks:
            day = to_local(block.start_time, options.timezone).strftime("%Y%m%d")
            if since is not None and day < since:
                continue
            if until is not None and day > until:
                continue
            filtered.append(block)
        blocks = filtered

    if options.recent_days is not None:
        blocks = filter_recent_blocks(blocks, options.recent_days or DEFAULT_RECENT_DAYS, now=now)
    if options.active_only:
        blocks = [block for block in blocks if block.is_active]

    return sorted(blocks, key=lambda b: b.start_time, reverse=options.order == "desc")
