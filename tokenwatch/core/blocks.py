"""
Session block segmentation.

Groups timestamped usage events into fixed-duration billing windows,
marks idle stretches with gap blocks and detects the active window.
Burn rate and end-of-window projection are derived from a block's entries.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from tokenwatch.core.token_counter import TokenCounts
from tokenwatch.storage.models import UsageEvent

DEFAULT_SESSION_DURATION_HOURS = 5
DEFAULT_RECENT_DAYS = 3

# Non-cache tokens per minute
BURN_RATE_MODERATE_THRESHOLD = 2000
BURN_RATE_HIGH_THRESHOLD = 5000


@dataclass(frozen=True)
class SessionBlock:
    """A billing window of fixed duration, or a gap between two windows.

    Gap blocks carry no entries and have no actual end time.
    """
    id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime]
    is_active: bool
    is_gap: bool
    entries: Tuple[UsageEvent, ...]
    token_counts: TokenCounts
    cost_usd: float
    models: Tuple[str, ...]
    usage_limit_reset_time: Optional[datetime] = None

    @property
    def total_tokens(self) -> int:
        return self.token_counts.total_tokens


@dataclass(frozen=True)
class BurnRate:
    """Consumption rate over the span of a block's entries."""
    tokens_per_minute: float
    tokens_per_minute_for_indicator: float
    cost_per_hour: float

    @property
    def level(self) -> "BurnRateLevel":
        return classify_burn_rate(self.tokens_per_minute_for_indicator)


class BurnRateLevel(Enum):
    """How heavy the current consumption is."""
    NORMAL = "normal"
    MODERATE = "moderate"
    HIGH = "high"


def classify_burn_rate(tokens_per_minute: float) -> BurnRateLevel:
    """Bucket a non-cache token rate into a burn rate level."""
    if tokens_per_minute < BURN_RATE_MODERATE_THRESHOLD:
        return BurnRateLevel.NORMAL
    if tokens_per_minute < BURN_RATE_HIGH_THRESHOLD:
        return BurnRateLevel.MODERATE
    return BurnRateLevel.HIGH


@dataclass(frozen=True)
class ProjectedUsage:
    """Usage extrapolated linearly to the end of the active block."""
    total_tokens: int
    total_cost: float
    remaining_minutes: int


def floor_to_hour(dt: datetime) -> datetime:
    """Truncate a timestamp to the start of its UTC hour."""
    return dt.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _build_block(
    start: datetime,
    entries: List[UsageEvent],
    duration: timedelta,
    now: datetime,
) -> SessionBlock:
    end = start + duration
    last = entries[-1].timestamp

    tokens = TokenCounts.zero()
    cost = 0.0
    models: List[str] = []
    reset_time: Optional[datetime] = None
    for entry in entries:
        tokens = tokens + entry.tokens
        cost += entry.cost_usd
        if entry.model is not None and not entry.is_synthetic and entry.model not in models:
            models.append(entry.model)
        if entry.usage_limit_reset_time is not None:
            if reset_time is None or entry.usage_limit_reset_time > reset_time:
                reset_time = entry.usage_limit_reset_time

    return SessionBlock(
        id=start.isoformat(),
        start_time=start,
        end_time=end,
        actual_end_time=last,
        is_active=start <= now < end and now - last < duration,
        is_gap=False,
        entries=tuple(entries),
        token_counts=tokens,
        cost_usd=cost,
        models=tuple(models),
        usage_limit_reset_time=reset_time,
    )


def _build_gap(start: datetime, end: datetime) -> SessionBlock:
    return SessionBlock(
        id=f"gap-{start.isoformat()}",
        start_time=start,
        end_time=end,
        actual_end_time=None,
        is_active=False,
        is_gap=True,
        entries=(),
        token_counts=TokenCounts.zero(),
        cost_usd=0.0,
        models=(),
    )


def identify_session_blocks(
    events: Iterable[UsageEvent],
    session_duration_hours: float = DEFAULT_SESSION_DURATION_HOURS,
    now: Optional[datetime] = None,
) -> List[SessionBlock]:
    """Segment events into ordered, non-overlapping session blocks.

    A block starts at the hour containing its first event and lasts
    ``session_duration_hours``. An event joins the open block while it falls
    before the block end and within one duration of the previous event.
    When the idle time before an event is at least one duration, a gap
    block covers the span from one duration after the previous event up to
    the start of the next block, if that span is non-empty.

    Args:
        events: Usage events in any order
        session_duration_hours: Block length in hours
        now: Reference time for active detection (defaults to current UTC time)

    Returns:
        Blocks in chronological order; empty input yields an empty list
    """
    if session_duration_hours <= 0:
        raise ValueError("session_duration_hours must be positive")

    duration = timedelta(hours=session_duration_hours)
    now = now or _utcnow()
    ordered = sorted(events, key=lambda e: e.timestamp)

    blocks: List[SessionBlock] = []
    current: List[UsageEvent] = []
    block_start: Optional[datetime] = None

    for event in ordered:
        if not current:
            block_start = floor_to_hour(event.timestamp)
            current = [event]
            continue

        block_end = block_start + duration
        last_ts = current[-1].timestamp
        if event.timestamp < block_end and event.timestamp - last_ts < duration:
            current.append(event)
            continue

        blocks.append(_build_block(block_start, current, duration, now))

        # Fractional durations can end mid-hour; never start before the previous end
        new_start = max(floor_to_hour(event.timestamp), block_end)
        idle_start = last_ts + duration
        if event.timestamp - last_ts >= duration and idle_start < new_start:
            blocks.append(_build_gap(idle_start, new_start))

        block_start = new_start
        current = [event]

    if current:
        blocks.append(_build_block(block_start, current, duration, now))

    return blocks


# Alias used by the public package surface
segment_into_blocks = identify_session_blocks


def calculate_burn_rate(block: SessionBlock) -> Optional[BurnRate]:
    """Calculate token and cost rates between a block's first and last entry.

    Returns:
        BurnRate, or None for gap blocks, empty blocks and zero-length spans
    """
    if block.is_gap or not block.entries:
        return None

    first = block.entries[0].timestamp
    last = block.entries[-1].timestamp
    minutes = (last - first).total_seconds() / 60
    if minutes <= 0:
        return None

    return BurnRate(
        tokens_per_minute=block.token_counts.total_tokens / minutes,
        tokens_per_minute_for_indicator=block.token_counts.io_tokens / minutes,
        cost_per_hour=(block.cost_usd / minutes) * 60,
    )


def project_block_usage(block: SessionBlock, now: Optional[datetime] = None) -> Optional[ProjectedUsage]:
    """Project the active block's usage to its end time at the current burn rate.

    Returns:
        ProjectedUsage, or None if the block is inactive, a gap, or has no rate
    """
    if not block.is_active or block.is_gap:
        return None

    rate = calculate_burn_rate(block)
    if rate is None:
        return None

    now = now or _utcnow()
    remaining = max(0.0, (block.end_time - now).total_seconds() / 60)

    return ProjectedUsage(
        total_tokens=round(block.token_counts.total_tokens + rate.tokens_per_minute * remaining),
        total_cost=round(block.cost_usd + (rate.cost_per_hour / 60) * remaining, 2),
        remaining_minutes=round(remaining),
    )


def filter_recent_blocks(
    blocks: Sequence[SessionBlock],
    days: int = DEFAULT_RECENT_DAYS,
    now: Optional[datetime] = None,
) -> List[SessionBlock]:
    """Keep active blocks and blocks that started within the last ``days`` days."""
    cutoff = (now or _utcnow()) - timedelta(days=days)
    return [block for block in blocks if block.is_active or block.start_time >= cutoff]


def find_active_block(blocks: Iterable[SessionBlock]) -> Optional[SessionBlock]:
    for block in blocks:
        if block.is_active:
            return block
    return None
