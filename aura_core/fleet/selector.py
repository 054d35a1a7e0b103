from __future__ import annotations

import hashlib
import math
from typing import Protocol, Sequence

from aura_core.errors import EmptyFleet
from aura_core.fleet.store import normalize_fleet
from aura_core.fleet.types import CohortPlan

STAGE_NAMES = ("canary", "staging", "production")
DEFAULT_STAGE_PERCENTAGES = (5, 30, 100)


class FleetSource(Protocol):
    def list_by_fleet(
        self,
        tag: str | None,
        *,
        provisioned_only: bool = True,
    ) -> set[str]:
        ...


def _normalize_percentages(values: Sequence[int] | None) -> tuple[int, ...]:
    if not values:
        return DEFAULT_STAGE_PERCENTAGES
    cleaned = [max(1, min(100, int(pct))) for pct in values]
    if len(cleaned) != len(STAGE_NAMES):
        raise ValueError(
            f"expected {len(STAGE_NAMES)} stage percentages, got {len(cleaned)}"
        )
    if any(later < earlier for earlier, later in zip(cleaned, cleaned[1:])):
        raise ValueError("stage percentages must be non-decreasing")
    cleaned[-1] = 100
    return tuple(cleaned)


def cohort_order_key(release_id: str, device_id: str) -> str:
    return hashlib.sha256(f"{release_id}:{device_id}".encode("utf-8")).hexdigest()


def partition(
    device_ids: Sequence[str],
    *,
    release_id: str,
    stage_percentages: Sequence[int] | None = None,
) -> tuple[tuple[str, tuple[str, ...]], ...]:
    """Split devices into disjoint cumulative cohorts, one per stage."""
    ordered = sorted(set(device_ids), key=lambda item: cohort_order_key(release_id, item))
    total = len(ordered)
    percentages = _normalize_percentages(stage_percentages)

    cohorts: list[tuple[str, tuple[str, ...]]] = []
    prior_count = 0
    for stage, percent in zip(STAGE_NAMES, percentages):
        target = math.ceil(percent * total / 100)
        target = max(min(target, total), prior_count)
        cohorts.append((stage, tuple(ordered[prior_count:target])))
        prior_count = target
    return tuple(cohorts)


class FleetSelector:
    def __init__(
        self,
        registry: FleetSource,
        stage_percentages: Sequence[int] | None = None,
    ) -> None:
        self._registry = registry
        self._percentages = _normalize_percentages(stage_percentages)

    @property
    def stage_percentages(self) -> tuple[int, ...]:
        return self._percentages

    def candidates(self, fleet_tag: str | None) -> set[str]:
        return self._registry.list_by_fleet(fleet_tag, provisioned_only=True)

    def plan(self, fleet_tag: str | None, release_id: str) -> CohortPlan:
        fleet = normalize_fleet(fleet_tag)
        device_ids = self.candidates(fleet)
        if not device_ids:
            raise EmptyFleet(f"fleet '{fleet}' has no provisioned devices")
        return CohortPlan(
            release_id=release_id,
            fleet=fleet,
            total_devices=len(device_ids),
            cohorts=partition(
                sorted(device_ids),
                release_id=release_id,
                stage_percentages=self._percentages,
            ),
        )

    def resolve(
        self,
        fleet_tag: str | None,
        stage: str,
        release_id: str,
    ) -> tuple[str, ...]:
        if stage not in STAGE_NAMES:
            raise ValueError(f"stage {stage} has no cohort")
        return self.plan(fleet_tag, release_id).cohort(stage)
