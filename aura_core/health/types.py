from __future__ import annotations

from dataclasses import dataclass

HEALTHY = "healthy"
DEGRADED = "degraded"
FAILED = "failed"
OBSERVING = "observing"

SAMPLE_STATUSES = (HEALTHY, DEGRADED, FAILED)
VERDICTS = (HEALTHY, DEGRADED, FAILED, OBSERVING)

SAMPLE_KINDS = (
    "boot",
    "install",
    "crash_loop",
    "checksum_mismatch",
    "metric",
    "heartbeat",
)
HARD_FAILURE_KINDS = frozenset({"crash_loop", "checksum_mismatch"})


@dataclass(frozen=True)
class HealthSample:
    id: str
    release_id: str
    device_id: str
    status: str
    kind: str
    reported_at: str
    detail: str | None = None


@dataclass(frozen=True)
class HealthReport:
    verdict: str
    final: bool
    total: int
    healthy: int
    degraded: int
    failed: int
    silent: int
    window_elapsed: bool
    failed_devices: tuple[str, ...] = ()
    evaluated_at: str | None = None

    def __post_init__(self) -> None:
        if self.verdict not in VERDICTS:
            raise ValueError(f"unknown health verdict: {self.verdict}")


@dataclass(frozen=True)
class HealthPolicyParams:
    window_s: float = 300.0
    max_silent_fraction: float = 0.0
    read_backoff_s: float = 0.5
    read_max_attempts: int = 5

    @classmethod
    def from_config(cls, config) -> "HealthPolicyParams":
        return cls(
            window_s=config.health_window_s,
            max_silent_fraction=config.health_max_silent_fraction,
            read_backoff_s=config.health_read_backoff_s,
            read_max_attempts=config.health_read_max_attempts,
        )

