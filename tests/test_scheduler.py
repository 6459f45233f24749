"""Tests for the poll scheduler."""

import threading
from unittest.mock import MagicMock

import pytest

from clientportal.notifications.scheduler import PollScheduler
from clientportal.observability.correlation import get_correlation_id


class TestTick:
    def test_tick_runs_cycle_then_housekeeping(self):
        order = []
        detector = MagicMock()
        detector.poll_once.side_effect = lambda: order.append("poll")
        scheduler = PollScheduler(
            detector, 60, housekeeping=[lambda: order.append("purge-sessions"), lambda: order.append("purge-intakes")]
        )

        scheduler.tick()

        assert order == ["poll", "purge-sessions", "purge-intakes"]

    def test_tick_survives_failures(self):
        detector = MagicMock()
        detector.poll_once.side_effect = RuntimeError("boom")
        housekeeping = MagicMock(side_effect=ValueError("bad"))
        after = MagicMock()
        scheduler = PollScheduler(detector, 60, housekeeping=[housekeeping, after])

        scheduler.tick()

        after.assert_called_once()

    def test_tick_runs_under_poll_correlation_id(self):
        seen = []
        detector = MagicMock()
        detector.poll_once.side_effect = lambda: seen.append(get_correlation_id())

        PollScheduler(detector, 60).tick()

        assert seen[0].startswith("poll-")
        assert get_correlation_id() == ""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PollScheduler(MagicMock(), 0)


class TestLoop:
    def test_start_polls_immediately_and_stop_joins(self):
        polled = threading.Event()
        detector = MagicMock()
        detector.poll_once.side_effect = lambda: polled.set()
        scheduler = PollScheduler(detector, 3600)

        scheduler.start()
        try:
            assert polled.wait(5)
            assert scheduler.running
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.running
        assert detector.poll_once.call_count == 1

    def test_start_twice_keeps_one_thread(self):
        detector = MagicMock()
        scheduler = PollScheduler(detector, 3600)

        scheduler.start()
        scheduler.start()
        scheduler.stop(timeout=5)

        assert detector.poll_once.call_count <= 1
