"""
Tests for the undo window tracker
"""
import threading

import pytest
from hypothesis import given, strategies as st

from app.domain.services.undo_service import UndoAction, UndoWindowTracker

from tests.conftest import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock) -> UndoWindowTracker:
    return UndoWindowTracker(clock=clock)


class TestUndoWindow:
    def test_open_then_consume_once(self, tracker):
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=120)

        record = tracker.consume(1)
        assert record is not None
        assert record.executor_id == 101
        assert record.action == UndoAction.RELEASE
        assert tracker.consume(1) is None

    def test_record_expires_at_boundary(self, tracker, clock):
        tracker.open(1, executor_id=101, action=UndoAction.COMPLETE, ttl_seconds=120)

        clock.advance(119)
        assert tracker.peek(1) is not None

        clock.advance(1)
        assert tracker.peek(1) is None
        assert tracker.consume(1) is None
        assert len(tracker) == 0

    def test_reopen_replaces_previous_record(self, tracker):
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=120)
        tracker.open(1, executor_id=101, action=UndoAction.COMPLETE, ttl_seconds=120)

        assert tracker.peek(1).action == UndoAction.COMPLETE
        assert len(tracker) == 1

    def test_consume_with_mismatched_executor_keeps_record(self, tracker):
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=120)

        assert tracker.consume(1, executor_id=202) is None
        assert tracker.consume(1, action=UndoAction.COMPLETE) is None
        assert tracker.consume(1, executor_id=101, action=UndoAction.RELEASE) is not None

    def test_discard_and_purge(self, tracker, clock):
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=10)
        tracker.open(2, executor_id=102, action=UndoAction.RELEASE, ttl_seconds=100)
        tracker.open(3, executor_id=103, action=UndoAction.COMPLETE, ttl_seconds=100)

        tracker.discard(3)
        clock.advance(50)

        assert tracker.purge_expired() == 1
        assert tracker.peek(2) is not None
        assert tracker.peek(3) is None

    def test_default_ttl_comes_from_settings(self, tracker, clock):
        from app.core.config import settings

        record = tracker.open(1, executor_id=101, action=UndoAction.RELEASE)
        assert record.expires_at == clock.now + settings.UNDO_WINDOW_SECONDS

    def test_concurrent_consume_yields_single_winner(self):
        tracker = UndoWindowTracker()
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=60)
        results = []
        barrier = threading.Barrier(8)

        def _worker():
            barrier.wait()
            results.append(tracker.consume(1, executor_id=101))

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for record in results if record is not None) == 1

    def test_restore_keeps_original_expiry(self, tracker, clock):
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=120)
        record = tracker.consume(1, executor_id=101)

        clock.advance(30)
        assert tracker.restore(record) is True
        assert tracker.peek(1).expires_at == record.expires_at

        clock.advance(90)
        assert tracker.peek(1) is None

    def test_restore_skips_expired_record(self, tracker, clock):
        tracker.open(1, executor_id=101, action=UndoAction.COMPLETE, ttl_seconds=10)
        record = tracker.consume(1)

        clock.advance(10)
        assert tracker.restore(record) is False
        assert len(tracker) == 0

    def test_restore_does_not_overwrite_newer_record(self, tracker):
        tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=120)
        stale = tracker.consume(1)
        tracker.open(1, executor_id=202, action=UndoAction.COMPLETE, ttl_seconds=120)

        assert tracker.restore(stale) is False
        assert tracker.peek(1).executor_id == 202


@given(
    ttl=st.floats(min_value=0.5, max_value=3600, allow_nan=False, allow_infinity=False),
    elapsed=st.floats(min_value=0, max_value=7200, allow_nan=False, allow_infinity=False),
)
def test_record_is_live_iff_before_expiry(ttl, elapsed):
    clock = FakeClock()
    tracker = UndoWindowTracker(clock=clock)
    record = tracker.open(1, executor_id=101, action=UndoAction.RELEASE, ttl_seconds=ttl)

    clock.advance(elapsed)

    expected_live = clock.now < record.expires_at
    assert (tracker.peek(1) is not None) == expected_live
