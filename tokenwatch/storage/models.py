"""
Data models for storage layer.

Defines the usage event record and the file handle types shared by loaders.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from tokenwatch.core.token_counter import TokenCounts

SYNTHETIC_MODEL = "<synthetic>"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one billable request read from a usage log.

    Created by parsing one log line and discarded after it is folded into an
    aggregate or a session block. ``source_file`` and ``source_project`` come
    from the file path, never from the record content.
    """
    timestamp: datetime
    tokens: TokenCounts
    model: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    message_id: Optional[str] = None
    precomputed_cost: Optional[float] = None
    cost_usd: float = 0.0
    version: Optional[str] = None
    usage_limit_reset_time: Optional[datetime] = None
    source_file: Optional[str] = None
    source_project: Optional[str] = None

    @property
    def is_synthetic(self) -> bool:
        """Whether the event belongs to the synthetic model sentinel."""
        return self.model == SYNTHETIC_MODEL


@dataclass(frozen=True)
class UsageFile:
    """A discovered usage log together with the root it was found under."""
    path: Path
    base_dir: Path
