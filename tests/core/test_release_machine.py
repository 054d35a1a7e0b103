import pytest

from aura_core.errors import IllegalTransition
from aura_core.releases.history import (
    COHORT_RESOLVED,
    DELIVERED,
    HEALTH_EVALUATED,
    REVERTED,
    handled_devices,
    rebuild_progress,
    reverted_devices,
    touched_devices,
)
from aura_core.releases.machine import is_final_stage, next_stage, next_state
from aura_core.releases.types import ReleaseEvent


@pytest.mark.core
@pytest.mark.parametrize(
    ("status", "stage", "event", "expected"),
    [
        ("pending", "canary", "start", ("in_progress", "canary")),
        ("in_progress", "canary", "stage_passed", ("in_progress", "staging")),
        ("in_progress", "staging", "stage_passed", ("in_progress", "production")),
        ("in_progress", "production", "stage_passed", ("completed", "completed")),
        ("in_progress", "canary", "health_failed", ("rolled_back", "rollback")),
        ("in_progress", "production", "health_failed", ("rolled_back", "rollback")),
        ("in_progress", "staging", "manual_abort", ("rolled_back", "rollback")),
    ],
)
def test_legal_transitions(status, stage, event, expected):
    assert next_state(status, stage, event) == expected


@pytest.mark.core
@pytest.mark.parametrize(
    ("status", "stage", "event"),
    [
        ("pending", "canary", "stage_passed"),
        ("pending", "canary", "manual_abort"),
        ("in_progress", "canary", "start"),
        ("completed", "completed", "manual_abort"),
        ("completed", "completed", "stage_passed"),
        ("rolled_back", "rollback", "start"),
        ("rolled_back", "rollback", "health_failed"),
        ("in_progress", "canary", "warp"),
    ],
)
def test_illegal_transitions(status, stage, event):
    with pytest.raises(IllegalTransition):
        next_state(status, stage, event)


@pytest.mark.core
def test_health_failure_never_rolls_back_manual_releases():
    with pytest.raises(IllegalTransition):
        next_state("in_progress", "canary", "health_failed", health_policy="manual")
    assert next_state(
        "in_progress", "canary", "manual_abort", health_policy="manual"
    ) == ("rolled_back", "rollback")


@pytest.mark.core
def test_stage_order():
    assert next_stage("canary") == "staging"
    assert next_stage("production") == "completed"
    assert is_final_stage("production")
    assert not is_final_stage("staging")
    with pytest.raises(IllegalTransition):
        next_stage("rollback")


def _event(seq, kind, *, stage="canary", device_ids=(), detail=None):
    return ReleaseEvent(
        id=f"evt-{seq}",
        release_id="rel-1",
        seq=seq,
        kind=kind,
        created_at=f"2026-03-01T12:00:{seq:02d}+00:00",
        stage=stage,
        device_ids=tuple(device_ids),
        detail=detail,
    )


@pytest.mark.core
def test_first_delivery_keeps_the_pre_release_firmware():
    events = [
        _event(1, DELIVERED, device_ids=["d1", "d2"], detail={"previous": {"d1": "fw-0"}}),
        _event(2, DELIVERED, device_ids=["d1"], detail={"previous": {"d1": "fw-new"}}),
        _event(3, DELIVERED, device_ids=[], detail={"skipped": ["d3"]}),
    ]
    assert touched_devices(events) == {"d1": "fw-0", "d2": None}
    assert handled_devices(events) == {"d1", "d2", "d3"}
    assert reverted_devices(events + [_event(4, REVERTED, device_ids=["d2"])]) == {"d2"}


@pytest.mark.core
def test_progress_is_rebuilt_from_history():
    events = [
        _event(1, COHORT_RESOLVED, device_ids=["a"], detail={"started_at": "t0"}),
        _event(2, DELIVERED, device_ids=["a"]),
        _event(3, COHORT_RESOLVED, stage="staging", device_ids=["b", "c", "d"], detail={"started_at": "t1"}),
        _event(4, DELIVERED, stage="staging", device_ids=["b", "c"], detail={"skipped": ["d"]}),
        _event(
            5,
            HEALTH_EVALUATED,
            stage="staging",
            detail={"verdict": "observing", "healthy": 1, "silent": 2},
        ),
    ]
    progress = rebuild_progress(events)
    assert progress is not None
    assert progress.stage == "staging"
    assert progress.device_ids == ("b", "c", "d")
    assert progress.started_at == "t1"
    assert (progress.updated, progress.skipped) == (2, 1)
    assert (progress.healthy, progress.silent, progress.verdict) == (1, 2, "observing")
    assert rebuild_progress([]) is None
