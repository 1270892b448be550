"""Tests for sequence tracking and gap recovery planning."""
import pytest

from atstream.firehose.errors import NonMonotonicSequenceError, RetriesExhaustedError
from atstream.firehose.recovery import GapRecoveryCoordinator, ReconnectPlan, backoff_delay
from atstream.firehose.sequence import SequenceTracker


class TestSequenceTracker:
    def test_starts_without_cursor(self):
        assert SequenceTracker().current_cursor() is None

    def test_first_sequence_accepted(self):
        tracker = SequenceTracker()
        verdict = tracker.observe(100)
        assert verdict.accepted
        assert verdict.warning is None
        assert tracker.current_cursor() == 100

    def test_increasing_sequences_accepted(self):
        tracker = SequenceTracker()
        assert all(tracker.observe(s).accepted for s in (1, 2, 5, 9))
        assert tracker.current_cursor() == 9

    def test_repeat_rejected(self):
        tracker = SequenceTracker()
        tracker.observe(1)
        tracker.observe(2)
        tracker.observe(3)
        verdict = tracker.observe(2)
        assert verdict.rejected
        assert isinstance(verdict.warning, NonMonotonicSequenceError)
        assert verdict.warning.last_sequence == 3
        assert tracker.current_cursor() == 3

    def test_duplicate_of_latest_rejected(self):
        tracker = SequenceTracker()
        tracker.observe(6)
        assert tracker.observe(6).rejected
        assert tracker.current_cursor() == 6

    def test_smaller_rejected_after_long_history(self):
        tracker = SequenceTracker()
        for s in range(1, 1001):
            tracker.observe(s)
        assert tracker.observe(500).rejected
        assert tracker.observe(0).rejected
        assert tracker.current_cursor() == 1000

    def test_seeded_tracker(self):
        tracker = SequenceTracker(last_sequence=42)
        assert tracker.observe(42).rejected
        assert tracker.observe(43).accepted

    def test_reset(self):
        tracker = SequenceTracker(last_sequence=42)
        tracker.reset()
        assert tracker.current_cursor() is None
        assert tracker.observe(1).accepted


class TestBackoffDelay:
    def test_doubles(self):
        assert [backoff_delay(n, 1.0, 100.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert backoff_delay(10, 1.0, 30.0) == 30.0

    def test_zero_attempt(self):
        assert backoff_delay(0) == 0.0


class TestGapRecoveryCoordinator:
    def test_plan_resumes_from_given_cursor(self):
        coordinator = GapRecoveryCoordinator(max_retries=3, base_delay=0.5)
        plan = coordinator.recover(42)
        assert plan == ReconnectPlan(cursor=42, attempt=1, delay=0.5)

    def test_attempts_increase_delay(self):
        coordinator = GapRecoveryCoordinator(max_retries=3, base_delay=1.0, max_delay=3.0)
        delays = [coordinator.recover(7).delay for _ in range(3)]
        assert delays == [1.0, 2.0, 3.0]
        assert coordinator.attempts == 3

    def test_exhausted(self):
        coordinator = GapRecoveryCoordinator(max_retries=2)
        coordinator.recover(7)
        coordinator.recover(7)
        with pytest.raises(RetriesExhaustedError) as exc_info:
            coordinator.recover(7)
        assert exc_info.value.attempts == 2
        assert exc_info.value.last_cursor == 7

    def test_zero_retries_never_plans(self):
        with pytest.raises(RetriesExhaustedError):
            GapRecoveryCoordinator(max_retries=0).recover(1)

    def test_reset_restores_attempts(self):
        coordinator = GapRecoveryCoordinator(max_retries=1)
        coordinator.recover(1)
        coordinator.reset()
        assert coordinator.recover(2).attempt == 1

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            GapRecoveryCoordinator(max_retries=-1)

    @pytest.mark.asyncio
    async def test_wait_uses_injected_sleep(self, sleep_recorder):
        coordinator = GapRecoveryCoordinator(max_retries=2, base_delay=0.25, sleep=sleep_recorder)
        await coordinator.wait(coordinator.recover(1))
        await coordinator.wait(coordinator.recover(1))
        assert sleep_recorder.delays == [0.25, 0.5]
