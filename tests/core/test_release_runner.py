from __future__ import annotations

import io
import threading
import time

import pytest

from aura_core.releases.runner import RolloutRunner, tick_all


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _release(engine, artifacts, version="4.0.0"):
    record = artifacts.put(io.BytesIO(b"runner firmware" * 32), version=version)
    return engine.create_release(record.id)


@pytest.mark.core
def test_runner_starts_pending_releases(engine, artifacts, fleet_factory):
    fleet_factory(10)
    release = _release(engine, artifacts)
    runner = RolloutRunner(engine, poll_interval_s=0.05, max_workers=2)
    runner.start()
    try:
        assert runner.running
        runner.nudge()
        assert _wait_for(lambda: engine.get_release(release.id).status == "in_progress")
    finally:
        runner.stop()
    assert not runner.running


@pytest.mark.core
def test_run_once_requires_a_started_runner(engine):
    runner = RolloutRunner(engine)
    with pytest.raises(RuntimeError):
        runner.run_once()


class SlowEngine:
    def __init__(self, engine) -> None:
        self._engine = engine
        self.gate = threading.Event()
        self.ticks: list[str] = []

    def list_active(self):
        return self._engine.list_active()

    def resume_rollbacks(self):
        return 0

    def tick(self, release_id):
        self.ticks.append(release_id)
        self.gate.wait(5)
        return self._engine.tick(release_id)


@pytest.mark.core
def test_release_is_not_ticked_twice_while_in_flight(engine, artifacts, fleet_factory):
    fleet_factory(10)
    release = _release(engine, artifacts)
    slow = SlowEngine(engine)
    runner = RolloutRunner(slow, poll_interval_s=60, max_workers=4)
    runner.start()
    try:
        assert _wait_for(lambda: slow.ticks == [release.id])
        assert runner.run_once() == []
        slow.gate.set()
        assert _wait_for(lambda: engine.get_release(release.id).status == "in_progress")
        assert _wait_for(lambda: runner.run_once() == [release.id])
    finally:
        slow.gate.set()
        runner.stop()


@pytest.mark.core
def test_tick_all_visits_every_active_release(engine, artifacts, fleet_factory):
    fleet_factory(10)
    first = _release(engine, artifacts, "4.0.0")
    second = _release(engine, artifacts, "4.0.1")
    assert sorted(tick_all(engine)) == sorted([first.id, second.id])
    assert engine.get_release(first.id).status == "in_progress"
    assert engine.get_release(second.id).status == "in_progress"
