"""
Unit tests for the incremental live monitor.

Tests incremental reads, retention, deduplication across ticks and
cancellation without partial state updates.
"""

import json
import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from tokenwatch.core.live_monitor import (
    HASH_CLEAR_THRESHOLD,
    LiveMonitorConfig,
    LiveMonitorState,
    MonitorCancelled,
    cleanup_old_entries,
    clear_live_monitor_cache,
    create_live_monitor_state,
    refresh_live_block,
    run_live_monitor,
)
from tokenwatch.core.pricing import CostMode, PricingFetcher
from tokenwatch.core.token_counter import TokenCounts
from tokenwatch.storage.files import get_earliest_timestamps, read_from_offset
from tokenwatch.storage.models import UsageEvent


def _line(ts, key, input_tokens=100):
    return json.dumps({
        "timestamp": ts.isoformat(),
        "sessionId": "s1",
        "requestId": f"req_{key}",
        "message": {
            "id": f"msg_{key}",
            "model": "claude-sonnet-4-20250514",
            "usage": {"input_tokens": input_tokens, "output_tokens": 10},
        },
        "costUSD": 0.1,
    })


class TestRefreshLiveBlock:
    """Test refresh ticks against a temporary log tree."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir) / "root"
        (self.root / "projects" / "app").mkdir(parents=True)
        self.log = self.root / "projects" / "app" / "session.jsonl"
        self.now = datetime.now(timezone.utc).replace(microsecond=0)
        self.config = LiveMonitorConfig(data_paths=[str(self.root)], cost_mode=CostMode.DISPLAY)
        self.state = create_live_monitor_state(self.config)

    def teardown_method(self):
        """Clean up test environment."""
        self.state.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, path, lines, mode="w"):
        with open(path, mode, encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")

    def test_first_tick_returns_active_block(self):
        """Verify the active block is built from fresh log data."""
        self._write(self.log, [
            _line(self.now - timedelta(minutes=30), "a"),
            _line(self.now - timedelta(minutes=10), "b"),
        ])

        block = refresh_live_block(self.state, self.config, now=self.now)

        assert block is not None
        assert block.is_active
        assert len(block.entries) == 2
        assert block.cost_usd == pytest.approx(0.2)
        assert str(self.log) in self.state.file_timestamps
        assert self.state.file_offsets[str(self.log)] == self.log.stat().st_size

    def test_no_active_block(self):
        """Verify None when nothing is active."""
        self._write(self.log, [_line(self.now - timedelta(hours=10), "a")])
        assert refresh_live_block(self.state, self.config, now=self.now) is None
        assert len(self.state.retained_entries) == 1

    def test_appended_lines_read_incrementally(self):
        """Verify appended lines are picked up without duplicating earlier entries."""
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "a")])
        refresh_live_block(self.state, self.config, now=self.now)

        self._write(self.log, [_line(self.now - timedelta(minutes=5), "b")], mode="a")
        block = refresh_live_block(self.state, self.config, now=self.now)

        assert len(block.entries) == 2
        assert len(self.state.retained_entries) == 2

    def test_unchanged_file_not_read(self):
        """Verify an unchanged file is not opened again."""
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "a")])
        refresh_live_block(self.state, self.config, now=self.now)

        with patch('tokenwatch.core.live_monitor.read_from_offset', wraps=read_from_offset) as reader:
            block = refresh_live_block(self.state, self.config, now=self.now)

        reader.assert_not_called()
        assert len(block.entries) == 1

    def test_partial_line_waits_for_newline(self):
        """Verify a half-written line is read once it is complete."""
        full = _line(self.now - timedelta(minutes=5), "b")
        with open(self.log, "w", encoding="utf-8") as f:
            f.write(_line(self.now - timedelta(minutes=30), "a") + "\n" + full[:20])
        refresh_live_block(self.state, self.config, now=self.now)
        assert len(self.state.retained_entries) == 1

        with open(self.log, "a", encoding="utf-8") as f:
            f.write(full[20:] + "\n")
        refresh_live_block(self.state, self.config, now=self.now)
        assert len(self.state.retained_entries) == 2

    def test_rewritten_file_read_in_full(self):
        """Verify a file whose earliest timestamp advanced is re-read from the start."""
        self._write(self.log, [_line(self.now - timedelta(minutes=50), "a")])
        refresh_live_block(self.state, self.config, now=self.now)

        self._write(self.log, [
            _line(self.now - timedelta(minutes=40), "b"),
            _line(self.now - timedelta(minutes=20), "c"),
        ])
        refresh_live_block(self.state, self.config, now=self.now)

        assert sorted(e.request_id for e in self.state.retained_entries) == ["req_b", "req_c"]
        assert self.state.file_timestamps[str(self.log)] == self.now - timedelta(minutes=40)

    def test_full_reread_does_not_double_count(self):
        """Verify lines kept across a rewrite are counted once, with or without identity keys."""
        keyless = json.dumps({
            "timestamp": (self.now - timedelta(minutes=15)).isoformat(),
            "sessionId": "s1",
            "message": {"usage": {"input_tokens": 7, "output_tokens": 0}},
        })
        self._write(self.log, [
            _line(self.now - timedelta(minutes=50), "a"),
            _line(self.now - timedelta(minutes=30), "b"),
            keyless,
        ])
        refresh_live_block(self.state, self.config, now=self.now)

        # Rewrite drops the first line, so the earliest timestamp advances
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "b"), keyless])
        block = refresh_live_block(self.state, self.config, now=self.now)

        assert sorted(str(e.request_id) for e in self.state.retained_entries) == ["None", "req_b"]
        assert len(block.entries) == 2
        assert block.token_counts.input_tokens == 107

    def test_unreadable_reread_keeps_previous_entries(self):
        """Verify entries survive when the full re-read of their file fails."""
        self._write(self.log, [_line(self.now - timedelta(minutes=50), "a")])
        refresh_live_block(self.state, self.config, now=self.now)

        self._write(self.log, [_line(self.now - timedelta(minutes=40), "b")])
        with patch('tokenwatch.core.live_monitor._read_plan', return_value=None):
            refresh_live_block(self.state, self.config, now=self.now)

        assert [e.request_id for e in self.state.retained_entries] == ["req_a"]

    def test_duplicates_across_files(self):
        """Verify an identity key seen in one file is skipped in another."""
        other = self.root / "projects" / "app" / "copy.jsonl"
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "a")])
        self._write(other, [_line(self.now - timedelta(minutes=30), "a")])

        block = refresh_live_block(self.state, self.config, now=self.now)

        assert len(block.entries) == 1

    def test_old_entries_skipped_and_evicted(self):
        """Verify no retained entry is ever older than the retention window."""
        self._write(self.log, [
            _line(self.now - timedelta(hours=30), "old"),
            _line(self.now - timedelta(hours=2), "a"),
        ])
        refresh_live_block(self.state, self.config, now=self.now)
        assert [e.request_id for e in self.state.retained_entries] == ["req_a"]

        later = self.now + timedelta(hours=23)
        refresh_live_block(self.state, self.config, now=later)
        cutoff = later - timedelta(hours=self.config.retention_hours)
        assert all(e.timestamp >= cutoff for e in self.state.retained_entries)
        assert self.state.retained_entries == []

    def test_cancel_before_tick(self):
        """Verify a set cancel event aborts the tick."""
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "a")])
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(MonitorCancelled):
            refresh_live_block(self.state, self.config, now=self.now, cancel_event=cancel)

        assert self.state.retained_entries == []
        assert self.state.file_timestamps == {}

    def test_cancel_mid_tick_leaves_state_consistent(self):
        """Verify cancellation during a tick commits nothing."""
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "a")])
        refresh_live_block(self.state, self.config, now=self.now)
        self._write(self.log, [_line(self.now - timedelta(minutes=5), "b")], mode="a")

        offsets_before = dict(self.state.file_offsets)
        cancel = threading.Event()

        def _timestamps_then_cancel(paths, max_workers):
            result = get_earliest_timestamps(paths, max_workers)
            cancel.set()
            return result

        with patch('tokenwatch.core.live_monitor.get_earliest_timestamps', side_effect=_timestamps_then_cancel):
            with pytest.raises(MonitorCancelled):
                refresh_live_block(self.state, self.config, now=self.now, cancel_event=cancel)

        assert [e.request_id for e in self.state.retained_entries] == ["req_a"]
        assert self.state.file_offsets == offsets_before
        assert "msg_b:req_b" not in self.state.processed_hashes

        block = refresh_live_block(self.state, self.config, now=self.now)
        assert len(block.entries) == 2

    def test_clear_cache_forces_full_read(self):
        """Verify clearing the cache drops data but keeps the pricing handle."""
        self._write(self.log, [_line(self.now - timedelta(minutes=30), "a")])
        refresh_live_block(self.state, self.config, now=self.now)
        pricing = self.state.pricing

        clear_live_monitor_cache(self.state)
        assert self.state.retained_entries == []
        assert self.state.file_offsets == {}
        assert len(self.state.processed_hashes) == 0
        assert self.state.pricing is pricing

        block = refresh_live_block(self.state, self.config, now=self.now)
        assert len(block.entries) == 1


class TestStateLifecycle:
    """Test state creation and cleanup."""

    def test_display_mode_has_no_pricing(self):
        """Verify no pricing handle is allocated for display-only costs."""
        config = LiveMonitorConfig(data_paths=[], cost_mode=CostMode.DISPLAY)
        with create_live_monitor_state(config) as state:
            assert state.pricing is None

    def test_calculate_mode_owns_pricing(self):
        """Verify the pricing handle is allocated and closed with the state."""
        config = LiveMonitorConfig(data_paths=[], cost_mode=CostMode.CALCULATE, offline=True)
        with create_live_monitor_state(config) as state:
            assert isinstance(state.pricing, PricingFetcher)
            assert state.pricing.offline
        assert state.pricing.closed

    def test_invalid_config(self):
        """Verify invalid limits are rejected."""
        with pytest.raises(ValueError):
            LiveMonitorConfig(data_paths=[], file_concurrency=0)

    def test_hash_index_cleared_after_large_eviction(self):
        """Verify the dedup index is cleared when many entries are evicted at once."""
        now = datetime(2025, 1, 10, tzinfo=timezone.utc)
        state = LiveMonitorState()
        for i in range(HASH_CLEAR_THRESHOLD + 1):
            state.retained_entries.append(UsageEvent(timestamp=now - timedelta(hours=30), tokens=TokenCounts()))
            state.processed_hashes.mark_seen(f"m{i}:r{i}")

        evicted = cleanup_old_entries(state, now - timedelta(hours=24))

        assert evicted == HASH_CLEAR_THRESHOLD + 1
        assert len(state.processed_hashes) == 0

    def test_hash_index_kept_after_small_eviction(self):
        """Verify small evictions keep the dedup index."""
        now = datetime(2025, 1, 10, tzinfo=timezone.utc)
        state = LiveMonitorState()
        state.retained_entries.append(UsageEvent(timestamp=now - timedelta(hours=30), tokens=TokenCounts()))
        state.processed_hashes.mark_seen("m:r")

        cleanup_old_entries(state, now - timedelta(hours=24))

        assert len(state.processed_hashes) == 1


class TestRunLiveMonitor:
    """Test the refresh loop."""

    def test_stops_when_event_set(self):
        """Verify the loop ends once the stop event is set."""
        stop = threading.Event()
        seen = []

        def on_block(block):
            seen.append(block)
            stop.set()

        config = LiveMonitorConfig(data_paths=[], cost_mode=CostMode.DISPLAY)
        run_live_monitor(config, on_block, refresh_interval=0.01, stop_event=stop)

        assert seen == [None]

    def test_tick_errors_do_not_stop_loop(self):
        """Verify a failing tick is reported and the loop continues."""
        stop = threading.Event()
        errors = []
        blocks = []

        def on_block(block):
            blocks.append(block)
            stop.set()

        config = LiveMonitorConfig(data_paths=[], cost_mode=CostMode.DISPLAY)
        with patch('tokenwatch.core.live_monitor.refresh_live_block', side_effect=[RuntimeError("boom"), None]):
            run_live_monitor(config, on_block, refresh_interval=0.01, stop_event=stop, on_error=errors.append)

        assert [str(e) for e in errors] == ["boom"]
        assert blocks == [None]
