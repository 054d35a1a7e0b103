from __future__ import annotations

import io
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from aura_core.errors import EmptyFleet, IllegalTransition, NotFound, ValidationError
from aura_core.fleet.selector import FleetSelector
from aura_core.health.evaluator import HealthEvaluator
from aura_core.health.types import HealthPolicyParams
from aura_core.releases.delivery import RecordingDelivery, RegistryDelivery
from aura_core.releases.engine import RolloutEngine
from aura_core.stores.json_store import JsonReleaseHistory, JsonReleaseStore


def _firmware(artifacts, version="2.0.0"):
    return artifacts.put(io.BytesIO(f"image {version}".encode() * 64), version=version)


def _kinds(engine, release_id, kind):
    return [event for event in engine.events(release_id) if event.kind == kind]


def _report_all(engine, release, status="healthy"):
    for device_id in release.progress.device_ids:
        engine.report_health(device_id, release_id=release.id, status=status, kind="install")


def _restarted(engine, data_root, clock, *, delivery=None):
    return RolloutEngine(
        artifacts=engine.artifacts,
        registry=engine.registry,
        selector=FleetSelector(engine.registry, (5, 30, 100)),
        evaluator=HealthEvaluator(
            engine.evaluator.feed,
            HealthPolicyParams(window_s=300, read_backoff_s=0),
            now_fn=clock,
            sleep_fn=lambda _seconds: None,
        ),
        releases=JsonReleaseStore(data_root),
        history=JsonReleaseHistory(data_root),
        delivery=delivery or RegistryDelivery(engine.registry),
        download_base_url="https://fleet.example.test",
        now_fn=clock,
    )


@pytest.mark.core
def test_canary_passes_and_staging_failure_rolls_back_touched_devices(
    engine, artifacts, registry, delivery, fleet_factory
):
    fleet = fleet_factory(100, fleet_tags=["lab"])
    firmware = _firmware(artifacts)
    release = engine.create_release(firmware.id, "Lab", actor="ops@example.test")
    assert (release.status, release.stage, release.target_fleet) == ("pending", "canary", "lab")

    release = engine.tick(release.id)
    assert (release.status, release.stage) == ("in_progress", "canary")
    canary = release.progress.device_ids
    assert len(canary) == 5
    assert sorted(delivery.updated_devices()) == sorted(canary)
    assert registry.get(canary[0]).assigned_firmware_id == firmware.id

    _report_all(engine, release)
    release = engine.tick(release.id)
    assert (release.status, release.stage) == ("in_progress", "staging")
    staging = release.progress.device_ids
    assert len(staging) == 25
    assert not set(staging) & set(canary)

    engine.report_health(staging[3], release_id=release.id, status="failed", kind="boot")
    release = engine.tick(release.id)
    assert (release.status, release.stage) == ("rolled_back", "rollback")
    assert engine.get_release(release.id).status == "rolled_back"

    reverted = delivery.rolled_back_devices()
    assert len(reverted) == 30
    assert set(reverted) == set(canary) | set(staging)
    untouched = set(fleet) - set(reverted)
    assert len(untouched) == 70
    assert all(registry.get(device_id).assigned_firmware_id is None for device_id in fleet)

    # further ticks do not revert again
    engine.tick(release.id)
    assert len(delivery.rolled_back_devices()) == 30
    assert len(_kinds(engine, release.id, "reverted")) == 1


@pytest.mark.core
def test_full_rollout_completes_with_each_device_updated_once(
    engine, artifacts, delivery, fleet_factory, clock
):
    fleet = fleet_factory(40)
    release = engine.create_release(_firmware(artifacts).id)
    release = engine.tick(release.id)
    for expected in ("staging", "production", "completed"):
        _report_all(engine, release)
        clock.advance(5)
        release = engine.tick(release.id)
        assert release.stage == expected
    assert release.status == "completed"
    assert [item.id for item in engine.list_releases(status="completed")] == [release.id]
    assert sorted(delivery.updated_devices()) == sorted(fleet)
    assert delivery.rolled_back_devices() == []
    assert engine.list_active() == []


@pytest.mark.core
def test_stage_waits_while_reports_are_missing_then_fails_on_silence(
    engine, artifacts, fleet_factory, clock
):
    fleet_factory(20)
    release = engine.tick(engine.create_release(_firmware(artifacts).id).id)
    assert len(release.progress.device_ids) == 1

    clock.advance(100)
    release = engine.tick(release.id)
    assert (release.status, release.progress.verdict) == ("in_progress", "observing")
    assert engine.release_health(release.id).verdict == "observing"

    clock.advance(201)
    release = engine.tick(release.id)
    assert release.status == "rolled_back"
    evaluated = _kinds(engine, release.id, "health_evaluated")
    assert evaluated[-1].detail["verdict"] == "failed"
    assert evaluated[-1].detail["silent"] == 1


@pytest.mark.core
def test_manual_policy_holds_on_degraded_and_waits_for_operator(
    engine, artifacts, fleet_factory, clock
):
    fleet_factory(100)
    release = engine.create_release(_firmware(artifacts).id, health_policy="manual")
    release = engine.tick(release.id)
    canary = release.progress.device_ids
    engine.report_health(canary[0], release_id=release.id, status="degraded", kind="metric")
    for device_id in canary[1:]:
        engine.report_health(device_id, release_id=release.id, status="healthy")

    clock.advance(301)
    for _ in range(3):
        release = engine.tick(release.id)
    assert (release.status, release.stage) == ("in_progress", "canary")
    assert release.held_reason == "canary verdict degraded; awaiting operator"
    assert len(_kinds(engine, release.id, "held")) == 1

    release = engine.command(release.id, "in_progress", stage="staging", actor="ops")
    assert (release.status, release.stage, release.held_reason) == ("in_progress", "staging", None)
    transitions = _kinds(engine, release.id, "transition")
    assert transitions[-1].actor == "ops"


@pytest.mark.core
def test_manual_policy_never_rolls_back_on_failure(engine, artifacts, fleet_factory):
    fleet_factory(20)
    release = engine.create_release(_firmware(artifacts).id, health_policy="manual")
    release = engine.tick(release.id)
    engine.report_health(
        release.progress.device_ids[0],
        release_id=release.id,
        status="healthy",
        kind="crash_loop",
    )
    release = engine.tick(release.id)
    assert release.status == "in_progress"
    assert release.progress.verdict == "failed"
    assert release.held_reason.startswith("canary verdict failed")


@pytest.mark.core
def test_operator_commands_validate_status_and_stage(engine, artifacts, fleet_factory):
    fleet_factory(100)
    release = engine.create_release(_firmware(artifacts).id)

    with pytest.raises(ValidationError):
        engine.command(release.id, "paused")
    with pytest.raises(ValidationError):
        engine.command(release.id, "in_progress", stage="everywhere")
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "rolled_back")
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "in_progress", stage="staging")
    with pytest.raises(NotFound):
        engine.command("missing", "in_progress")

    release = engine.command(release.id, "in_progress", actor="ops")
    assert (release.status, release.stage) == ("in_progress", "canary")
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "completed")
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "in_progress", stage="production")

    engine.report_health(
        release.progress.device_ids[0], release_id=release.id, status="failed"
    )
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "in_progress")


@pytest.mark.core
def test_auto_rollback_refuses_advance_past_a_silent_canary(
    engine, artifacts, fleet_factory, clock
):
    fleet_factory(20)
    release = engine.command(engine.create_release(_firmware(artifacts).id).id, "in_progress")
    assert len(release.progress.device_ids) == 1

    clock.advance(301)
    report = engine.release_health(release.id)
    assert (report.verdict, report.failed, report.silent) == ("failed", 0, 1)
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "in_progress", actor="ops")
    assert engine.get_release(release.id).stage == "canary"


@pytest.mark.core
def test_auto_rollback_refuses_advance_past_a_degraded_canary(
    engine, artifacts, fleet_factory, clock
):
    fleet_factory(100)
    release = engine.command(engine.create_release(_firmware(artifacts).id).id, "in_progress")
    _report_all(engine, release, status="degraded")

    clock.advance(301)
    assert engine.release_health(release.id).verdict == "degraded"
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "in_progress", stage="staging", actor="ops")
    assert engine.get_release(release.id).stage == "canary"


@pytest.mark.core
def test_operator_can_force_stages_through_to_completion(engine, artifacts, fleet_factory):
    fleet_factory(10)
    release = engine.command(engine.create_release(_firmware(artifacts).id).id, "in_progress")
    release = engine.command(release.id, "in_progress")
    assert release.stage == "staging"
    release = engine.command(release.id, "in_progress", stage="production")
    assert release.stage == "production"
    release = engine.command(release.id, "completed", actor="ops")
    assert (release.status, release.stage) == ("completed", "completed")
    with pytest.raises(IllegalTransition):
        engine.command(release.id, "rolled_back")


@pytest.mark.core
def test_abort_reverts_to_previous_firmware(engine, artifacts, registry, fleet_factory):
    old = _firmware(artifacts, "1.0.0")
    fleet_factory(20, firmware_id=old.id)
    new = _firmware(artifacts, "1.1.0")
    release = engine.tick(engine.create_release(new.id).id)
    device_id = release.progress.device_ids[0]

    assignment = engine.assignment_for(device_id)
    assert assignment["action"] == "install"
    assert assignment["firmware_id"] == new.id
    assert assignment["checksum"] == new.checksum
    assert assignment["firmware_url"] == f"https://fleet.example.test/firmware/{new.id}/download"

    release = engine.command(release.id, "rolled_back", actor="ops")
    assert release.status == "rolled_back"
    device = registry.get(device_id)
    assert device.assigned_firmware_id == old.id
    assert device.assigned_release_id is None
    assert engine.assignment_for(device_id)["action"] == "rollback"
    assert _kinds(engine, release.id, "reverted")[0].detail["previous"] == {device_id: old.id}


@pytest.mark.core
def test_devices_already_on_the_firmware_are_skipped(
    engine, artifacts, delivery, fleet_factory
):
    firmware = _firmware(artifacts)
    fleet_factory(30, firmware_id=firmware.id)
    release = engine.create_release(firmware.id)
    for expected in ("canary", "staging", "production", "completed"):
        release = engine.tick(release.id)
        assert release.stage == expected
    assert release.status == "completed"
    assert delivery.updates == []
    skipped = {
        device_id
        for event in _kinds(engine, release.id, "delivered")
        for device_id in event.detail["skipped"]
    }
    assert len(skipped) == 30


@pytest.mark.core
def test_cohort_snapshot_is_stable_and_late_devices_join_production(
    engine, artifacts, delivery, fleet_factory, clock
):
    fleet_factory(20)
    release = engine.tick(engine.create_release(_firmware(artifacts).id).id)
    canary = release.progress.device_ids

    late = fleet_factory(5)
    release = engine.tick(release.id)
    assert release.progress.device_ids == canary

    for _ in range(2):
        _report_all(engine, release)
        clock.advance(5)
        release = engine.tick(release.id)
    assert release.stage == "production"
    assert set(late) <= set(delivery.updated_devices())
    updated = delivery.updated_devices()
    assert len(updated) == len(set(updated)) == 25


@pytest.mark.core
def test_corrupt_artifact_blocks_start(engine, artifacts, data_root, fleet_factory):
    fleet_factory(10)
    firmware = _firmware(artifacts)
    blob = (
        Path(data_root) / "artifacts" / "sha256" / firmware.checksum[:2]
        / f"{firmware.checksum}.bin"
    )
    blob.write_bytes(b"tampered")
    release = engine.create_release(firmware.id)
    for _ in range(2):
        release = engine.tick(release.id)
    assert release.status == "pending"
    assert release.held_reason.startswith("artifact_corrupt")
    assert len(_kinds(engine, release.id, "start_blocked")) == 1


@pytest.mark.core
def test_empty_fleet_keeps_release_pending_until_devices_arrive(
    engine, artifacts, fleet_factory
):
    release = engine.create_release(_firmware(artifacts).id, "ghost")
    release = engine.tick(release.id)
    assert release.status == "pending"
    assert release.held_reason.startswith("empty_fleet")
    with pytest.raises(EmptyFleet):
        engine.command(release.id, "in_progress")

    fleet_factory(3, fleet_tags=["ghost"])
    release = engine.tick(release.id)
    assert (release.status, release.held_reason) == ("in_progress", None)


@pytest.mark.core
def test_create_release_validation(engine, artifacts):
    firmware = _firmware(artifacts)
    with pytest.raises(NotFound):
        engine.create_release("missing")
    with pytest.raises(ValidationError):
        engine.create_release(firmware.id, health_policy="yolo")
    release = engine.create_release(firmware.id, None)
    assert release.target_fleet == "all"
    assert [event.kind for event in engine.events(release.id)] == ["created"]


@pytest.mark.core
def test_new_engine_instance_continues_from_persisted_state(
    engine, artifacts, data_root, clock, fleet_factory
):
    fleet_factory(40)
    release = engine.tick(engine.create_release(_firmware(artifacts).id).id)
    canary = release.progress.device_ids
    _report_all(engine, release)

    # progress lost from the registry file; history still has it
    engine.releases.put_release(replace(release, progress=None))
    delivery = RecordingDelivery(RegistryDelivery(engine.registry))
    restarted = _restarted(engine, data_root, clock, delivery=delivery)
    release = restarted.tick(release.id)
    assert release.stage == "staging"
    assert not set(delivery.updated_devices()) & set(canary)


@pytest.mark.core
def test_interrupted_delivery_does_not_lose_pre_release_firmware(
    engine, artifacts, registry, data_root, clock, fleet_factory
):
    old = _firmware(artifacts, "1.0.0")
    fleet_factory(20, firmware_id=old.id)
    new = _firmware(artifacts, "1.1.0")
    release = engine.create_release(new.id)
    plan = engine.selector.plan(release.target_fleet, release.id)
    device_id = plan.cohort("canary")[0]
    # pointer written before the crash, no delivered event recorded
    registry.assign_firmware(device_id, firmware_id=new.id, release_id=release.id)

    release = engine.tick(release.id)
    delivered = _kinds(engine, release.id, "delivered")[0]
    assert delivered.detail["previous"] == {device_id: old.id}

    engine.command(release.id, "rolled_back")
    assert registry.get(device_id).assigned_firmware_id == old.id


class FailingRollbacks(RecordingDelivery):
    def send_rollback(self, device_id, command):
        raise RuntimeError("delivery channel down")


@pytest.mark.core
def test_rollback_interrupted_by_crash_is_resumed(
    engine, artifacts, registry, data_root, clock, fleet_factory
):
    fleet_factory(20)
    release = engine.tick(engine.create_release(_firmware(artifacts).id).id)
    canary = release.progress.device_ids
    broken = _restarted(
        engine, data_root, clock, delivery=FailingRollbacks(RegistryDelivery(registry))
    )
    with pytest.raises(RuntimeError):
        broken.command(release.id, "rolled_back")
    assert engine.get_release(release.id).status == "rolled_back"
    assert registry.get(canary[0]).assigned_release_id == release.id

    restarted = _restarted(engine, data_root, clock)
    assert restarted.resume_rollbacks() == len(canary)
    assert registry.get(canary[0]).assigned_release_id is None
    assert restarted.resume_rollbacks() == 0


@pytest.mark.core
def test_newer_release_is_not_reverted_by_older_rollback(
    engine, artifacts, registry, delivery, fleet_factory
):
    fleet_factory(20)
    first = engine.tick(engine.create_release(_firmware(artifacts, "2.0.0").id).id)
    device_id = first.progress.device_ids[0]
    second_fw = _firmware(artifacts, "3.0.0")
    registry.assign_firmware(device_id, firmware_id=second_fw.id, release_id="newer")

    engine.command(first.id, "rolled_back")
    device = registry.get(device_id)
    assert device.assigned_firmware_id == second_fw.id
    reverted = _kinds(engine, first.id, "reverted")[0]
    assert reverted.detail["superseded"] == [device_id]


@pytest.mark.core
def test_report_health_records_install_and_rejects_unknowns(
    engine, artifacts, registry, fleet_factory
):
    fleet_factory(20)
    firmware = _firmware(artifacts)
    release = engine.tick(engine.create_release(firmware.id).id)
    device_id = release.progress.device_ids[0]

    engine.report_health(device_id, release_id=release.id, status="healthy", kind="install")
    device = registry.get(device_id)
    assert device.firmware_id == firmware.id
    assert device.last_seen_at is not None

    with pytest.raises(NotFound):
        engine.report_health(device_id, release_id="missing", status="healthy")
    with pytest.raises(NotFound):
        engine.report_health("missing", release_id=release.id, status="healthy")
    with pytest.raises(ValidationError):
        engine.report_health(device_id, release_id=release.id, status="meh")


@pytest.mark.core
def test_history_rejects_unknown_event_kinds(data_root):
    history = JsonReleaseHistory(data_root)
    with pytest.raises(ValidationError):
        history.append("rel-1", "paused", status="in_progress")
    assert history.events("rel-1") == []
    event = history.append("rel-1", "created", status="pending", actor="ops")
    assert (event.seq, event.kind) == (1, "created")


@pytest.mark.core
def test_release_health_waits_for_an_in_flight_tick(engine, artifacts, fleet_factory):
    fleet_factory(20)
    release = engine.tick(engine.create_release(_firmware(artifacts).id).id)
    results = []
    reader = threading.Thread(target=lambda: results.append(engine.release_health(release.id)))

    with engine._lock_for(release.id):
        reader.start()
        reader.join(timeout=0.2)
        assert reader.is_alive()
        assert results == []
    reader.join(timeout=5)
    assert not reader.is_alive()
    assert results[0].verdict == "observing"
