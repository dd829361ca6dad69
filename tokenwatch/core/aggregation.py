"""
Usage aggregation.

Groups deduplicated usage events into report rows by a caller-supplied key
function. Pure functions only; callers load and deduplicate the events.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from tokenwatch.core.token_counter import TokenCounts
from tokenwatch.storage.models import SYNTHETIC_MODEL, UsageEvent

UNKNOWN_PROJECT = "unknown"

WEEKDAYS = {
    "sunday": 6,
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
}

_DATE_BOUND_RE = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")


@dataclass(frozen=True, order=True)
class GroupKey:
    """Key of one report row. Unused label fields are empty strings."""
    period: str = ""
    project: str = ""
    session_id: str = ""


KeyFunction = Callable[[UsageEvent], GroupKey]


@dataclass(frozen=True)
class ModelBreakdown:
    """Token and cost totals for one model inside a report row."""
    model_name: str
    tokens: TokenCounts
    cost: float


@dataclass(frozen=True)
class UsageAggregate:
    """One report row: totals for all events sharing a group key."""
    key: GroupKey
    tokens: TokenCounts
    total_cost: float
    models_used: Tuple[str, ...]
    model_breakdowns: Tuple[ModelBreakdown, ...]
    event_count: int
    last_activity: datetime
    versions: Tuple[str, ...] = ()

    @property
    def period(self) -> str:
        return self.key.period

    @property
    def project(self) -> str:
        return self.key.project

    @property
    def session_id(self) -> str:
        return self.key.session_id

    @property
    def total_tokens(self) -> int:
        return self.tokens.total_tokens


@dataclass(frozen=True)
class UsageTotals:
    """Overall totals across report rows."""
    tokens: TokenCounts
    total_cost: float

    @property
    def total_tokens(self) -> int:
        return self.tokens.total_tokens


@dataclass
class _GroupAccumulator:
    tokens: TokenCounts = field(default_factory=TokenCounts.zero)
    cost: float = 0.0
    models: Dict[str, Tuple[TokenCounts, float]] = field(default_factory=dict)
    count: int = 0
    last_activity: Optional[datetime] = None
    versions: set = field(default_factory=set)

    def add(self, event: UsageEvent) -> None:
        self.tokens = self.tokens + event.tokens
        self.cost += event.cost_usd
        self.count += 1
        if self.last_activity is None or event.timestamp > self.last_activity:
            self.last_activity = event.timestamp
        if event.version is not None:
            self.versions.add(event.version)

        # Synthetic entries count toward totals but never appear as a model
        if event.model is None or event.is_synthetic:
            return
        tokens, cost = self.models.get(event.model, (TokenCounts.zero(), 0.0))
        self.models[event.model] = (tokens + event.tokens, cost + event.cost_usd)

    def build(self, key: GroupKey) -> UsageAggregate:
        breakdowns = sorted(
            (ModelBreakdown(model_name=name, tokens=tokens, cost=cost)
             for name, (tokens, cost) in self.models.items()),
            key=lambda b: b.cost,
            reverse=True,
        )
        return UsageAggregate(
            key=key,
            tokens=self.tokens,
            total_cost=self.cost,
            models_used=tuple(self.models),
            model_breakdowns=tuple(breakdowns),
            event_count=self.count,
            last_activity=self.last_activity,
            versions=tuple(sorted(self.versions)),
        )


def aggregate(events: Iterable[UsageEvent], key_fn: KeyFunction) -> Dict[GroupKey, UsageAggregate]:
    """Group events by key and sum tokens and costs per group.

    Args:
        events: Deduplicated usage events
        key_fn: Maps an event to its GroupKey

    Returns:
        Mapping of group key to aggregate, in first-seen key order
    """
    groups: Dict[GroupKey, _GroupAccumulator] = {}
    for event in events:
        key = key_fn(event)
        acc = groups.get(key)
        if acc is None:
            acc = groups[key] = _GroupAccumulator()
        acc.add(event)
    return {key: acc.build(key) for key, acc in groups.items()}


def resolve_timezone(tz: Optional[str]) -> Optional[tzinfo]:
    """Resolve an IANA timezone name. None means the local timezone.

    Raises:
        ValueError: If the name is not a known timezone
    """
    if tz is None:
        return None
    try:
        return ZoneInfo(tz)
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {tz}") from e


def to_local(dt: datetime, tz: Optional[str] = None) -> datetime:
    """Convert a timestamp into the report timezone."""
    zone = resolve_timezone(tz)
    return dt.astimezone(zone) if zone is not None else dt.astimezone()


def weekday_number(start_of_week: str) -> int:
    """Map a weekday name to datetime.weekday() numbering.

    Raises:
        ValueError: If the name is not a weekday
    """
    try:
        return WEEKDAYS[start_of_week.lower()]
    except KeyError:
        raise ValueError(f"Invalid start of week: {start_of_week}") from None


def week_start(day: datetime, start_of_week: str = "sunday") -> str:
    """Return the ISO date of the first day of the week containing ``day``."""
    shift = (day.weekday() - weekday_number(start_of_week)) % 7
    return (day - timedelta(days=shift)).date().isoformat()


def event_project(event: UsageEvent) -> str:
    return event.source_project or UNKNOWN_PROJECT


def event_session(event: UsageEvent) -> str:
    """Session id of an event, falling back to the log file name."""
    if event.session_id:
        return event.session_id
    if event.source_file:
        return Path(event.source_file).stem
    return UNKNOWN_PROJECT


def daily_key(tz: Optional[str] = None) -> KeyFunction:
    resolve_timezone(tz)
    return lambda event: GroupKey(period=to_local(event.timestamp, tz).strftime("%Y-%m-%d"))


def monthly_key(tz: Optional[str] = None) -> KeyFunction:
    resolve_timezone(tz)
    return lambda event: GroupKey(period=to_local(event.timestamp, tz).strftime("%Y-%m"))


def weekly_key(start_of_week: str = "sunday", tz: Optional[str] = None) -> KeyFunction:
    resolve_timezone(tz)
    weekday_number(start_of_week)
    return lambda event: GroupKey(period=week_start(to_local(event.timestamp, tz), start_of_week))


def session_key(event: UsageEvent) -> GroupKey:
    return GroupKey(project=event_project(event), session_id=event_session(event))


def daily_project_key(tz: Optional[str] = None) -> KeyFunction:
    resolve_timezone(tz)
    return lambda event: GroupKey(
        period=to_local(event.timestamp, tz).strftime("%Y-%m-%d"),
        project=event_project(event),
    )


def monthly_project_key(tz: Optional[str] = None) -> KeyFunction:
    resolve_timezone(tz)
    return lambda event: GroupKey(
        period=to_local(event.timestamp, tz).strftime("%Y-%m"),
        project=event_project(event),
    )


def calculate_totals(aggregates: Iterable[UsageAggregate]) -> UsageTotals:
    """Sum tokens and cost across report rows."""
    tokens = TokenCounts.zero()
    cost = 0.0
    for row in aggregates:
        tokens = tokens + row.tokens
        cost += row.total_cost
    return UsageTotals(tokens=tokens, total_cost=cost)


def sort_aggregates(
    aggregates: Iterable[UsageAggregate],
    order: str = "asc",
    by_last_activity: bool = False,
) -> List[UsageAggregate]:
    """Sort report rows by key (or by last activity) in the given order.

    Raises:
        ValueError: If order is not 'asc' or 'desc'
    """
    if order not in ("asc", "desc"):
        raise ValueError(f"Invalid sort order: {order}. Must be 'asc' or 'desc'")
    if by_last_activity:
        sort_key = lambda row: (row.last_activity, row.key)  # noqa: E731
    else:
        sort_key = lambda row: row.key  # noqa: E731
    return sorted(aggregates, key=sort_key, reverse=order == "desc")


def normalize_date_bound(value: Optional[str]) -> Optional[str]:
    """Normalize a YYYYMMDD or YYYY-MM-DD bound to YYYYMMDD.

    Raises:
        ValueError: If the bound is in neither format
    """
    if value is None:
        return None
    match = _DATE_BOUND_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid date '{value}'. Use YYYYMMDD or YYYY-MM-DD")
    return "".join(match.groups())


def _row_date(row: UsageAggregate, tz: Optional[str]) -> str:
    if row.period:
        return row.period[:10].replace("-", "")
    return to_local(row.last_activity, tz).strftime("%Y%m%d")


def filter_by_date_range(
    aggregates: Iterable[UsageAggregate],
    since: Optional[str] = None,
    until: Optional[str] = None,
    tz: Optional[str] = None,
) -> List[UsageAggregate]:
    """Keep rows whose date falls within [since, until].

    Rows with a period compare by its first day; session rows compare by
    the date of their last activity. Monthly periods compare by their
    first six digits against the bound prefix.
    """
    since_bound = normalize_date_bound(since)
    until_bound = normalize_date_bound(until)
    rows = list(aggregates)
    if since_bound is None and until_bound is None:
        return rows

    result = []
    for row in rows:
        date = _row_date(row, tz)
        if since_bound is not None and date < since_bound[:len(date)]:
            continue
        if until_bound is not None and date > until_bound[:len(date)]:
            continue
        result.append(row)
    return result


def filter_events_by_date_range(
    events: Iterable[UsageEvent],
    since: Optional[str] = None,
    until: Optional[str] = None,
    tz: Optional[str] = None,
) -> List[UsageEvent]:
    """Keep events whose local date falls within [since, until].

    Period reports filter events before grouping, so a week or month that
    straddles a bound only counts the days inside it.
    """
    since_bound = normalize_date_bound(since)
    until_bound = normalize_date_bound(until)
    items = list(events)
    if since_bound is None and until_bound is None:
        return items

    result = []
    for event in items:
        day = to_local(event.timestamp, tz).strftime("%Y%m%d")
        if since_bound is not None and day < since_bound:
            continue
        if until_bound is not None and day > until_bound:
            continue
        result.append(event)
    return result
