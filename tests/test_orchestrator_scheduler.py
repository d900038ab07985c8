"""Tests for continuum/orchestrator/scheduler.py: background continuity ticks."""

import time
from datetime import timedelta

import pytest

from continuum.orchestrator.scheduler import ContinuityScheduler


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def scheduler(continuity_loop, suppression):
    sched = ContinuityScheduler(continuity_loop, suppression, interval_seconds=0.05)
    yield sched
    sched.stop()


class TestContinuityScheduler:
    def test_tick_now(self, scheduler, now):
        result = scheduler.tick_now(now)
        assert scheduler.last_result is result
        assert result.agents_checked == 2
        assert scheduler.cycles == 0

    def test_background_cycles(self, scheduler, continuity_loop):
        scheduler.start()
        assert scheduler.is_running
        assert _wait_for(lambda: scheduler.cycles >= 2)
        scheduler.stop()
        assert not scheduler.is_running
        assert continuity_loop.get_stats()["cycles_run"] >= 2

    def test_cycle_prunes_suppression(self, scheduler, suppression, repository, now):
        suppression.check("c", "ops", "stale", now=now - timedelta(days=1))
        scheduler.start()
        assert _wait_for(lambda: scheduler.cycles >= 1)
        assert repository.list_suppression_entries() == []

    def test_start_twice_keeps_one_thread(self, scheduler):
        scheduler.start()
        thread = scheduler._thread
        scheduler.start()
        assert scheduler._thread is thread

    def test_stop_when_idle_is_noop(self, scheduler):
        scheduler.stop()
        assert not scheduler.is_running

    def test_wait(self, scheduler):
        assert scheduler.wait(timeout=0.01) is False
        scheduler.start()
        scheduler.stop()
        assert scheduler.wait(timeout=0.01) is True
