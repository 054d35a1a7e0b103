from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor

from aura_core.logging import get_logger
from aura_core.releases.engine import RolloutEngine

logger = get_logger(__name__)


class RolloutRunner:
    """Polls active releases and ticks each one on a worker pool.

    A release is never submitted twice while a tick for it is in flight.
    ``nudge`` wakes the loop early, so operator commands are observed
    without waiting a full poll interval.
    """

    def __init__(
        self,
        engine: RolloutEngine,
        *,
        poll_interval_s: float = 10.0,
        max_workers: int = 4,
    ) -> None:
        self._engine = engine
        self._poll_interval_s = max(0.05, poll_interval_s)
        self._max_workers = max(1, max_workers)
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="aura-rollout",
        )
        self._thread = threading.Thread(
            target=self._run,
            name="aura-rollout-runner",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Rollout runner started",
            extra={
                "poll_interval_s": self._poll_interval_s,
                "max_workers": self._max_workers,
            },
        )

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Rollout runner stopped")

    def nudge(self) -> None:
        self._wake.set()

    def run_once(self) -> list[str]:
        """Submit a tick for every active release; returns the ids submitted."""
        if self._executor is None:
            raise RuntimeError("runner is not started")
        submitted: list[str] = []
        for release in self._engine.list_active():
            with self._lock:
                if release.id in self._in_flight:
                    continue
                future = self._executor.submit(self._tick, release.id)
                self._in_flight[release.id] = future
            future.add_done_callback(
                lambda _future, release_id=release.id: self._done(release_id)
            )
            submitted.append(release.id)
        return submitted

    def _run(self) -> None:
        try:
            self._engine.resume_rollbacks()
        except Exception as exc:
            logger.error(
                "Rollback recovery failed",
                extra={"error_message": str(exc)},
            )
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as exc:
                logger.error(
                    "Rollout poll failed",
                    extra={"error_message": str(exc)},
                )
            self._wake.wait(self._poll_interval_s)
            self._wake.clear()

    def _tick(self, release_id: str) -> None:
        try:
            release = self._engine.tick(release_id)
        except Exception as exc:
            logger.error(
                "Release tick failed",
                extra={
                    "release_id": release_id,
                    "error_code": getattr(exc, "code", type(exc).__name__),
                    "error_message": str(exc),
                },
            )
            return
        logger.debug(
            "Release ticked",
            extra={
                "release_id": release.id,
                "status": release.status,
                "stage": release.stage,
            },
        )

    def _done(self, release_id: str) -> None:
        with self._lock:
            self._in_flight.pop(release_id, None)


def tick_all(engine: RolloutEngine) -> list[str]:
    """Tick every active release once, synchronously."""
    ticked: list[str] = []
    for release in engine.list_active():
        engine.tick(release.id)
        ticked.append(release.id)
    return ticked
