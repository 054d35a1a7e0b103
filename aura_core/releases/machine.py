from __future__ import annotations

from aura_core.errors import IllegalTransition
from aura_core.releases.types import (
    AUTO_ROLLBACK,
    CANARY,
    COMPLETED,
    HEALTH_FAILED,
    IN_PROGRESS,
    MANUAL_ABORT,
    PENDING,
    PRODUCTION,
    ROLLBACK,
    ROLLED_BACK,
    ROLLOUT_EVENTS,
    ROLLOUT_STAGES,
    STAGE_COMPLETED,
    STAGE_PASSED,
    STAGING,
    START,
)

_TRANSITIONS: dict[tuple[str, str, str], tuple[str, str]] = {
    (PENDING, CANARY, START): (IN_PROGRESS, CANARY),
    (IN_PROGRESS, CANARY, STAGE_PASSED): (IN_PROGRESS, STAGING),
    (IN_PROGRESS, STAGING, STAGE_PASSED): (IN_PROGRESS, PRODUCTION),
    (IN_PROGRESS, PRODUCTION, STAGE_PASSED): (COMPLETED, STAGE_COMPLETED),
}


def next_state(
    status: str,
    stage: str,
    event: str,
    *,
    health_policy: str = AUTO_ROLLBACK,
) -> tuple[str, str]:
    """Return the (status, stage) a release moves to, or raise IllegalTransition."""
    if event not in ROLLOUT_EVENTS:
        raise IllegalTransition(f"unknown rollout event: {event}")
    if status == IN_PROGRESS and stage in ROLLOUT_STAGES:
        if event == MANUAL_ABORT:
            return ROLLED_BACK, ROLLBACK
        if event == HEALTH_FAILED:
            if health_policy != AUTO_ROLLBACK:
                raise IllegalTransition(
                    "health failures only roll back auto-rollback releases"
                )
            return ROLLED_BACK, ROLLBACK
    target = _TRANSITIONS.get((status, stage, event))
    if target is None:
        raise IllegalTransition(
            f"cannot apply {event} to a release in ({status}, {stage})"
        )
    return target


def next_stage(stage: str) -> str:
    if stage not in ROLLOUT_STAGES:
        raise IllegalTransition(f"stage {stage} has no successor")
    index = ROLLOUT_STAGES.index(stage)
    if index + 1 < len(ROLLOUT_STAGES):
        return ROLLOUT_STAGES[index + 1]
    return STAGE_COMPLETED


def is_final_stage(stage: str) -> bool:
    return stage == ROLLOUT_STAGES[-1]
