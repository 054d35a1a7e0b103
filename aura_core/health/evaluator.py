from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from aura_core.errors import RecoverableError
from aura_core.health.feed import HealthFeed
from aura_core.health.types import (
    DEGRADED,
    FAILED,
    HEALTHY,
    OBSERVING,
    HealthPolicyParams,
    HealthReport,
    HealthSample,
)
from aura_core.logging import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def latest_by_device(
    samples: Iterable[HealthSample],
    cohort: Iterable[str],
) -> dict[str, HealthSample]:
    members = set(cohort)
    latest: dict[str, HealthSample] = {}
    for sample in samples:
        if sample.device_id not in members:
            continue
        current = latest.get(sample.device_id)
        if current is None or datetime.fromisoformat(
            sample.reported_at
        ) >= datetime.fromisoformat(current.reported_at):
            latest[sample.device_id] = sample
    return latest


class HealthEvaluator:
    """Turns a cohort's health samples into a verdict.

    ``failed`` wins as soon as any device reports it. Before the observation
    window closes only a fully healthy cohort is final; everything else is
    ``observing``. Once it closes, silence beyond ``max_silent_fraction``
    counts as failure.
    """

    def __init__(
        self,
        feed: HealthFeed,
        params: HealthPolicyParams | None = None,
        *,
        now_fn: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.feed = feed
        self.params = params or HealthPolicyParams()
        self._now = now_fn or _utc_now
        self._sleep = sleep_fn or time.sleep

    def evaluate(
        self,
        release_id: str,
        stage: str,
        cohort: Iterable[str],
        *,
        window_started_at: str,
        now: datetime | None = None,
    ) -> HealthReport:
        members = tuple(dict.fromkeys(cohort))
        current = now or self._now()
        started = datetime.fromisoformat(window_started_at)
        deadline = started + timedelta(seconds=self.params.window_s)
        window_elapsed = current >= deadline
        total = len(members)

        if total == 0:
            return self._report(HEALTHY, True, total, window_elapsed=window_elapsed, now=current)

        samples = self._read_samples(
            release_id,
            stage,
            since=window_started_at,
            deadline=deadline,
            window_elapsed=window_elapsed,
        )
        if samples is None:
            # feed unreadable: every device counts as silent
            if window_elapsed:
                return self._report(
                    FAILED,
                    True,
                    total,
                    silent=total,
                    window_elapsed=True,
                    failed_devices=members,
                    now=current,
                )
            return self._report(
                OBSERVING, False, total, silent=total, window_elapsed=False, now=current
            )

        latest = latest_by_device(samples, members)
        failed_ids = tuple(
            device_id for device_id in members
            if device_id in latest and latest[device_id].status == FAILED
        )
        healthy = sum(1 for sample in latest.values() if sample.status == HEALTHY)
        degraded = sum(1 for sample in latest.values() if sample.status == DEGRADED)
        silent_ids = tuple(device_id for device_id in members if device_id not in latest)
        counts = {
            "healthy": healthy,
            "degraded": degraded,
            "failed": len(failed_ids),
            "silent": len(silent_ids),
        }

        if failed_ids:
            return self._report(
                FAILED,
                True,
                total,
                window_elapsed=window_elapsed,
                failed_devices=failed_ids,
                now=current,
                **counts,
            )
        if not window_elapsed:
            if healthy == total:
                return self._report(HEALTHY, True, total, window_elapsed=False, now=current, **counts)
            return self._report(OBSERVING, False, total, window_elapsed=False, now=current, **counts)
        if len(silent_ids) / total > self.params.max_silent_fraction:
            return self._report(
                FAILED,
                True,
                total,
                window_elapsed=True,
                failed_devices=silent_ids,
                now=current,
                **counts,
            )
        verdict = DEGRADED if degraded else HEALTHY
        return self._report(verdict, True, total, window_elapsed=True, now=current, **counts)

    def _read_samples(
        self,
        release_id: str,
        stage: str,
        *,
        since: str,
        deadline: datetime,
        window_elapsed: bool,
    ) -> list[HealthSample] | None:
        attempts = 0
        max_attempts = max(1, self.params.read_max_attempts)
        while True:
            attempts += 1
            try:
                return self.feed.samples(release_id, since=since)
            except RecoverableError as exc:
                logger.warning(
                    "Health feed read failed",
                    extra={
                        "release_id": release_id,
                        "stage": stage,
                        "attempt_count": attempts,
                        "error_message": str(exc),
                    },
                )
                if attempts >= max_attempts:
                    return None
                delay = self.params.read_backoff_s * (2 ** (attempts - 1))
                if not window_elapsed and self._now() + timedelta(seconds=delay) >= deadline:
                    return None
                if delay > 0:
                    self._sleep(delay)

    @staticmethod
    def _report(
        verdict: str,
        final: bool,
        total: int,
        *,
        window_elapsed: bool,
        now: datetime,
        healthy: int = 0,
        degraded: int = 0,
        failed: int = 0,
        silent: int = 0,
        failed_devices: tuple[str, ...] = (),
    ) -> HealthReport:
        return HealthReport(
            verdict=verdict,
            final=final,
            total=total,
            healthy=healthy,
            degraded=degraded,
            failed=failed,
            silent=silent,
            window_elapsed=window_elapsed,
            failed_devices=failed_devices,
            evaluated_at=now.isoformat(),
        )
