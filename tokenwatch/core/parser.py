"""
Usage log record parsing and validation.

Turns one raw JSONL line into a typed UsageEvent. Malformed lines raise
ParseError, which callers treat as "skip this line and keep going".
"""

import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional

import structlog

from tokenwatch.core.token_counter import TokenCounts
from tokenwatch.storage.models import UsageEvent

logger = structlog.get_logger()

USAGE_LIMIT_MARKER = "usage limit reached"
_RESET_TIME_RE = re.compile(r"\|(\d+)")

_TOKEN_FIELDS = {
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
    "cache_creation_input_tokens": "cache_creation_tokens",
    "cache_read_input_tokens": "cache_read_tokens",
}


class ParseError(ValueError):
    """Raised when a single log line is not a valid usage record.

    Recoverable: one bad line never aborts a batch.
    """


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC. Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError:
        return None


def _optional_str(record: Dict[str, Any], key: str, path: str) -> Optional[str]:
    value = record.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ParseError(f"'{path}' must be a non-empty string")
    return value


def _token_count(usage: Dict[str, Any], key: str) -> int:
    value = usage.get(key)
    if value is None:
        return 0
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"'message.usage.{key}' must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ParseError(f"'message.usage.{key}' must be finite")
    if value < 0:
        raise ParseError(f"'message.usage.{key}' cannot be negative")
    return int(value)


def extract_usage_limit_reset_time(record: Dict[str, Any]) -> Optional[datetime]:
    """Extract the quota reset time from an API error record.

    The provider reports "... usage limit reached|<epoch seconds>" inside the
    message content of records flagged with ``isApiErrorMessage``.
    """
    if record.get("isApiErrorMessage") is not True:
        return None
    message = record.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None

    for item in content:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str) or USAGE_LIMIT_MARKER not in text.lower():
            continue
        match = _RESET_TIME_RE.search(text)
        if match is None:
            return None
        try:
            seconds = int(match.group(1))
            if seconds <= 0:
                return None
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            # Beyond the platform or datetime range
            return None
    return None


def parse_record(
    record: Any,
    source_file: Optional[str] = None,
    source_project: Optional[str] = None,
) -> UsageEvent:
    """Validate a decoded JSON record and build a UsageEvent.

    Raises:
        ParseError: If the record does not match the usage record schema
    """
    if not isinstance(record, dict):
        raise ParseError("Record must be a JSON object")

    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        raise ParseError("Missing or invalid 'timestamp'")

    message = record.get("message")
    if not isinstance(message, dict):
        raise ParseError("Missing 'message' object")

    usage = message.get("usage")
    if not isinstance(usage, dict):
        raise ParseError("Missing 'message.usage' object")

    counts = {target: _token_count(usage, key) for key, target in _TOKEN_FIELDS.items()}

    cost = record.get("costUSD")
    if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float))):
        raise ParseError("'costUSD' must be a number")
    precomputed_cost: Optional[float] = None
    if cost is not None:
        try:
            precomputed_cost = float(cost)
        except OverflowError:
            raise ParseError("'costUSD' must be finite")
        if not math.isfinite(precomputed_cost):
            raise ParseError("'costUSD' must be finite")

    is_error = record.get("isApiErrorMessage")
    if is_error is not None and not isinstance(is_error, bool):
        raise ParseError("'isApiErrorMessage' must be a boolean")

    content = message.get("content")
    if content is not None and not isinstance(content, list):
        raise ParseError("'message.content' must be a list")

    return UsageEvent(
        timestamp=timestamp,
        tokens=TokenCounts(**counts),
        model=_optional_str(message, "model", "message.model"),
        session_id=_optional_str(record, "sessionId", "sessionId"),
        request_id=_optional_str(record, "requestId", "requestId"),
        message_id=_optional_str(message, "id", "message.id"),
        precomputed_cost=precomputed_cost,
        cost_usd=precomputed_cost if precomputed_cost is not None else 0.0,
        version=_optional_str(record, "version", "version"),
        usage_limit_reset_time=extract_usage_limit_reset_time(record),
        source_file=source_file,
        source_project=source_project,
    )


def parse_line(
    raw_line: str,
    source_file: Optional[str] = None,
    source_project: Optional[str] = None,
) -> UsageEvent:
    """Parse one JSONL line into a UsageEvent.

    Raises:
        ParseError: For malformed JSON or schema mismatches
    """
    try:
        record = json.loads(raw_line)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError, oversized integer literals and excessive nesting
        raise ParseError(f"Invalid JSON: {e}") from e
    return parse_record(record, source_file=source_file, source_project=source_project)


def iter_events(
    lines: Iterable[str],
    source_file: Optional[str] = None,
    source_project: Optional[str] = None,
) -> Iterator[UsageEvent]:
    """Yield events for every valid line, skipping blanks and malformed lines."""
    for line_no, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            yield parse_line(line, source_file=source_file, source_project=source_project)
        except ParseError as e:
            logger.debug("Skipping malformed usage line", file=source_file, line=line_no, error=str(e))


def compute_identity_key(event: UsageEvent) -> Optional[str]:
    """Build the deduplication key for an event.

    Returns None unless both message id and request id are present; such
    events are always treated as unique.
    """
    if event.message_id is None or event.request_id is None:
        return None
    return f"{event.message_id}:{event.request_id}"
