"""
tokenwatch: usage log aggregation and monitoring.

Provides programmatic access to report aggregation, session block
segmentation, live monitoring and the shared status line cache.
"""

from tokenwatch.core.aggregation import aggregate
from tokenwatch.core.blocks import identify_session_blocks, segment_into_blocks
from tokenwatch.core.live_monitor import create_live_monitor_state, refresh_live_block
from tokenwatch.core.status import resolve_status_output

__all__ = [
    "aggregate",
    "create_live_monitor_state",
    "identify_session_blocks",
    "refresh_live_block",
    "resolve_status_output",
    "segment_into_blocks",
]
