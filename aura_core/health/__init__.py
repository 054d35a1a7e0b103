from aura_core.health.evaluator import HealthEvaluator, latest_by_device
from aura_core.health.feed import (
    HealthFeed,
    InMemoryHealthFeed,
    JsonHealthFeed,
    build_sample,
)
from aura_core.health.types import (
    DEGRADED,
    FAILED,
    HEALTHY,
    OBSERVING,
    HealthPolicyParams,
    HealthReport,
    HealthSample,
)

__all__ = [
    "DEGRADED",
    "FAILED",
    "HEALTHY",
    "HealthEvaluator",
    "HealthFeed",
    "HealthPolicyParams",
    "HealthReport",
    "HealthSample",
    "InMemoryHealthFeed",
    "JsonHealthFeed",
    "OBSERVING",
    "build_sample",
    "latest_by_device",
]
