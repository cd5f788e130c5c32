"""Tests for periodic background tasks."""

import threading

import pytest

from turnstile.scheduler import PeriodicTask


def test_runs_until_stopped():
    ran = threading.Event()
    seen = []

    def work(stop):
        seen.append(stop)
        ran.set()

    task = PeriodicTask("probe", work, interval_seconds=0.01)
    task.start()
    assert ran.wait(2)
    assert task.is_running
    task.stop()
    assert not task.is_running
    assert task.runs >= 1
    assert seen[0].is_set()


def test_errors_do_not_stop_schedule(caplog):
    calls = []

    def flaky(stop):
        calls.append(1)
        raise RuntimeError("boom")

    task = PeriodicTask("flaky", flaky, interval_seconds=60)
    task.run_once()
    task.run_once()
    assert len(calls) == 2
    assert task.runs == 2
    assert "flaky task failed" in caplog.text


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicTask("bad", lambda stop: None, interval_seconds=0)
