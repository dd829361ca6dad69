"""
Deduplication of usage events.

The same request can be logged in several files (resumed sessions, copied
projects, overlapping roots). Identity keys seen so far live in a DedupIndex
owned by whichever loader or monitor is doing the reading.
"""

from typing import MutableSet, Optional, Set


def is_duplicate(key: Optional[str], seen: MutableSet[str]) -> bool:
    """Check whether an identity key was already processed."""
    if key is None:
        return False
    return key in seen


def mark_seen(key: Optional[str], seen: MutableSet[str]) -> None:
    """Record an identity key as processed. Keyless events are not recorded."""
    if key is not None:
        seen.add(key)


class DedupIndex:
    """Set of identity keys seen during one load or one monitoring session."""

    def __init__(self):
        self._seen: Set[str] = set()

    def is_duplicate(self, key: Optional[str]) -> bool:
        return is_duplicate(key, self._seen)

    def mark_seen(self, key: Optional[str]) -> None:
        mark_seen(key, self._seen)

    def check_and_mark(self, key: Optional[str]) -> bool:
        """Mark ``key`` as seen and report whether the event is new.

        Returns:
            True if the event should be kept, False if it is a duplicate
        """
        if self.is_duplicate(key):
            return False
        self.mark_seen(key)
        return True

    def update(self, keys) -> None:
        for key in keys:
            self.mark_seen(key)

    def clear(self) -> None:
        self._seen.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)
