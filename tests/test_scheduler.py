"""Tests for periodic workers."""
import threading
import time

import pytest

from monitor.scheduler import PeriodicWorker, MAX_CONSECUTIVE_FAILURES


def _wait_for(predicate, timeout=3):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_requires_interval_or_time():
    with pytest.raises(ValueError):
        PeriodicWorker("nothing", lambda: None)


def test_runs_on_interval_and_stops():
    calls = []
    worker = PeriodicWorker("tick", lambda: calls.append(1), interval_seconds=0.1)
    worker.start()
    assert _wait_for(lambda: len(calls) >= 2)
    worker.stop()
    assert not worker.is_alive
    count = len(calls)
    time.sleep(0.3)
    assert len(calls) == count


def test_run_immediately():
    ran = threading.Event()
    worker = PeriodicWorker("now", ran.set, interval_seconds=60, run_immediately=True)
    worker.start()
    assert ran.wait(2)
    worker.stop()


def test_shared_stop_event():
    stop = threading.Event()
    workers = [PeriodicWorker(f"w{i}", lambda: None, interval_seconds=0.1, stop_event=stop)
               for i in range(2)]
    for w in workers:
        w.start()
    stop.set()
    for w in workers:
        w.join()
        assert not w.is_alive


def test_failures_are_counted_not_raised(caplog):
    def boom():
        raise RuntimeError("job failed")

    worker = PeriodicWorker("bad", boom, interval_seconds=1)
    for _ in range(MAX_CONSECUTIVE_FAILURES):
        worker._run_job()
    assert worker.failures == MAX_CONSECUTIVE_FAILURES
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


def test_daily_job_scheduled():
    worker = PeriodicWorker("retention", lambda: None, at="03:00")
    assert len(worker.scheduler.jobs) == 1
    assert worker.tick == 1.0
