from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from aura_core.artifacts.store import ArtifactStore
from aura_core.errors import (
    AuraError,
    Corrupt,
    EmptyFleet,
    IllegalTransition,
    NotFound,
    ValidationError,
)
from aura_core.fleet.selector import FleetSelector, cohort_order_key
from aura_core.fleet.store import DeviceRegistry, normalize_fleet
from aura_core.health.evaluator import HealthEvaluator
from aura_core.health.feed import build_sample
from aura_core.health.types import (
    DEGRADED,
    FAILED,
    HEALTHY,
    HealthReport,
    HealthSample,
)
from aura_core.logging import get_logger
from aura_core.releases import history as hist
from aura_core.releases.delivery import (
    RollbackCommand,
    UpdateDelivery,
    build_update_command,
)
from aura_core.releases.machine import is_final_stage, next_stage, next_state
from aura_core.releases.types import (
    AUTO_ROLLBACK,
    CANARY,
    COMPLETED,
    HEALTH_FAILED,
    HEALTH_POLICIES,
    IN_PROGRESS,
    MANUAL_ABORT,
    PENDING,
    RELEASE_STAGES,
    RELEASE_STATUSES,
    ROLLED_BACK,
    STAGE_COMPLETED,
    STAGE_PASSED,
    START,
    Release,
    ReleaseEvent,
    StageProgress,
)
from aura_core.stores.interfaces import ReleaseHistoryStore, ReleaseStore

logger = get_logger(__name__)

ORCHESTRATOR = "orchestrator"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RolloutEngine:
    """Drives releases through canary, staging and production.

    Every mutation of a release (a tick from the runner or an operator
    command) runs under that release's lock, so transitions are serialized
    per release and history is written in order.
    """

    def __init__(
        self,
        *,
        artifacts: ArtifactStore,
        registry: DeviceRegistry,
        selector: FleetSelector,
        evaluator: HealthEvaluator,
        releases: ReleaseStore,
        history: ReleaseHistoryStore,
        delivery: UpdateDelivery,
        download_base_url: str | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.artifacts = artifacts
        self.registry = registry
        self.selector = selector
        self.evaluator = evaluator
        self.releases = releases
        self.history = history
        self.delivery = delivery
        self._download_base_url = download_base_url
        self._now = now_fn or _utc_now
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._reports: dict[str, HealthReport] = {}

    # queries

    def get_release(self, release_id: str) -> Release:
        return self.releases.get_release(release_id)

    def list_releases(self, *, status: str | None = None) -> list[Release]:
        releases = self.releases.load_releases()
        if status:
            releases = [release for release in releases if release.status == status]
        return sorted(releases, key=lambda release: release.created_at, reverse=True)

    def list_active(self) -> list[Release]:
        return self.releases.list_active()

    def events(self, release_id: str) -> list[ReleaseEvent]:
        self.releases.get_release(release_id)
        return self.history.events(release_id)

    def release_health(self, release_id: str) -> HealthReport | None:
        with self._lock_for(release_id):
            release = self.releases.get_release(release_id)
            if release.status == IN_PROGRESS and release.progress is not None:
                return self._evaluate(release, release.progress)
            return self._reports.get(release_id)

    # operations

    def create_release(
        self,
        firmware_id: str,
        target_fleet: str | None = None,
        health_policy: str = AUTO_ROLLBACK,
        *,
        actor: str | None = None,
    ) -> Release:
        policy = (health_policy or AUTO_ROLLBACK).strip().lower()
        if policy not in HEALTH_POLICIES:
            raise ValidationError(
                f"health_policy must be one of: {', '.join(HEALTH_POLICIES)}"
            )
        if not firmware_id:
            raise ValidationError("firmware_id is required")
        self.artifacts.get_record(firmware_id)
        now = self._now_iso()
        release = Release(
            id=str(uuid.uuid4()),
            firmware_id=firmware_id,
            target_fleet=normalize_fleet(target_fleet),
            health_policy=policy,
            status=PENDING,
            stage=CANARY,
            created_at=now,
            updated_at=now,
            created_by=actor,
        )
        self.releases.put_release(release)
        self.history.append(
            release.id,
            hist.CREATED,
            status=PENDING,
            stage=CANARY,
            detail={
                "firmware_id": firmware_id,
                "target_fleet": release.target_fleet,
                "health_policy": policy,
            },
            actor=actor,
        )
        logger.info(
            "Release created",
            extra={
                "release_id": release.id,
                "firmware_id": firmware_id,
                "fleet": release.target_fleet,
                "policy": policy,
                "actor": actor,
            },
        )
        return release

    def tick(self, release_id: str) -> Release:
        """Run one evaluation step for a release."""
        with self._lock_for(release_id):
            release = self.releases.get_release(release_id)
            if release.status == PENDING:
                try:
                    return self._start(release, actor=ORCHESTRATOR)
                except (Corrupt, NotFound, EmptyFleet) as exc:
                    return self._block_start(release, exc)
            if release.status == IN_PROGRESS:
                return self._advance_if_ready(release)
            if release.status == ROLLED_BACK:
                self._revert_touched(release, actor=ORCHESTRATOR)
            return release

    def command(
        self,
        release_id: str,
        status: str,
        *,
        stage: str | None = None,
        actor: str | None = None,
    ) -> Release:
        """Apply an operator-requested status change."""
        status = (status or "").strip().lower()
        if status not in RELEASE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(RELEASE_STATUSES)}")
        if stage is not None and stage not in RELEASE_STAGES:
            raise ValidationError(f"stage must be one of: {', '.join(RELEASE_STAGES)}")
        with self._lock_for(release_id):
            release = self.releases.get_release(release_id)
            if status == ROLLED_BACK:
                return self._rollback(release, MANUAL_ABORT, actor=actor)
            if status == IN_PROGRESS and release.status == PENDING:
                if stage not in (None, CANARY):
                    raise IllegalTransition("a release always starts at canary")
                try:
                    return self._start(release, actor=actor)
                except (Corrupt, NotFound, EmptyFleet) as exc:
                    self._block_start(release, exc)
                    raise
            if status in (IN_PROGRESS, COMPLETED) and release.status == IN_PROGRESS:
                target = next_stage(release.stage)
                if stage is not None and stage != target:
                    raise IllegalTransition(
                        f"next stage after {release.stage} is {target}, not {stage}"
                    )
                if status == COMPLETED and target != STAGE_COMPLETED:
                    raise IllegalTransition(
                        f"release is at {release.stage}; it cannot complete yet"
                    )
                if release.health_policy == AUTO_ROLLBACK and release.progress:
                    report = self._evaluate(release, release.progress)
                    if report.failed or (
                        report.final and report.verdict in (FAILED, DEGRADED)
                    ):
                        raise IllegalTransition(
                            f"{release.stage} cohort health is {report.verdict}; "
                            "an auto-rollback release cannot be advanced past it"
                        )
                return self._advance(release, actor=actor)
            raise IllegalTransition(
                f"cannot move a {release.status} release to {status}"
            )

    def report_health(
        self,
        device_id: str,
        *,
        release_id: str,
        status: str,
        kind: str = "heartbeat",
        detail: str | None = None,
    ) -> HealthSample:
        release = self.releases.get_release(release_id)
        self.registry.get(device_id)
        sample = build_sample(
            release_id=release.id,
            device_id=device_id,
            status=status,
            kind=kind,
            detail=detail,
            reported_at=self._now_iso(),
        )
        self.evaluator.feed.ingest(sample)
        if sample.kind == "install" and sample.status == HEALTHY:
            self.registry.record_installed(device_id, release.firmware_id)
        else:
            self.registry.touch(device_id)
        if sample.status == FAILED:
            logger.warning(
                "Device reported failure",
                extra={
                    "release_id": release.id,
                    "device_id": device_id,
                    "event": sample.kind,
                },
            )
        return sample

    def assignment_for(self, device_id: str) -> dict[str, object] | None:
        device = self.registry.get(device_id)
        if device.deregistered_at:
            raise NotFound(f"device {device_id} not found")
        if not device.assigned_firmware_id:
            return None
        record = self.artifacts.get_record(device.assigned_firmware_id)
        command = build_update_command(
            device_id,
            release_id=device.assigned_release_id or "",
            record=record,
            download_base_url=self._download_base_url,
        )
        return {
            "device_id": device_id,
            "release_id": device.assigned_release_id,
            "firmware_id": command.firmware_id,
            "version": command.version,
            "checksum": command.checksum,
            "firmware_url": command.firmware_url,
            "action": "install" if device.assigned_release_id else "rollback",
        }

    def resume_rollbacks(self) -> int:
        """Finish reverts a crash interrupted; returns devices reverted."""
        count = 0
        for release in self.releases.load_releases():
            if release.status != ROLLED_BACK:
                continue
            with self._lock_for(release.id):
                count += self._revert_touched(release, actor=ORCHESTRATOR)
        return count

    # internals

    def _lock_for(self, release_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(release_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[release_id] = lock
            return lock

    def _now_iso(self) -> str:
        return self._now().isoformat()

    def _start(self, release: Release, *, actor: str | None) -> Release:
        self.artifacts.verify(release.firmware_id)
        cohort = self.selector.resolve(release.target_fleet, CANARY, release.id)
        release = self._transition(release, START, actor=actor)
        return self._begin_stage(release, CANARY, cohort=cohort, actor=actor)

    def _block_start(self, release: Release, exc: AuraError) -> Release:
        reason = f"{exc.code}: {exc}"
        logger.warning(
            "Release start blocked",
            extra={
                "release_id": release.id,
                "firmware_id": release.firmware_id,
                "error_code": exc.code,
                "error_message": str(exc),
            },
        )
        if release.held_reason == reason:
            return release
        self.history.append(
            release.id,
            hist.START_BLOCKED,
            status=release.status,
            stage=release.stage,
            detail={"error_code": exc.code, "error_message": str(exc)},
            actor=ORCHESTRATOR,
        )
        release = replace(release, held_reason=reason, updated_at=self._now_iso())
        return self.releases.put_release(release)

    def _transition(
        self,
        release: Release,
        event: str,
        *,
        actor: str | None,
        detail: dict[str, object] | None = None,
    ) -> Release:
        status, stage = next_state(
            release.status,
            release.stage,
            event,
            health_policy=release.health_policy,
        )
        payload = {"event": event, "from_status": release.status, "from_stage": release.stage}
        payload.update(detail or {})
        self.history.append(
            release.id,
            hist.TRANSITION,
            status=status,
            stage=stage,
            detail=payload,
            actor=actor,
        )
        logger.info(
            "Release transition",
            extra={
                "release_id": release.id,
                "event": event,
                "status": status,
                "stage": stage,
                "actor": actor,
            },
        )
        return replace(
            release,
            status=status,
            stage=stage,
            held_reason=None,
            updated_at=self._now_iso(),
        )

    def _begin_stage(
        self,
        release: Release,
        stage: str,
        *,
        actor: str | None,
        cohort: Iterable[str] | None = None,
    ) -> Release:
        if cohort is None:
            try:
                cohort = self.selector.resolve(release.target_fleet, stage, release.id)
            except EmptyFleet:
                cohort = ()
        events = self.history.events(release.id)
        handled = hist.handled_devices(events)
        device_ids = [device_id for device_id in cohort if device_id not in handled]
        if is_final_stage(stage):
            # sweep in fleet members that joined after earlier stages resolved
            chosen = set(device_ids)
            extras = [
                device_id
                for device_id in self.selector.candidates(release.target_fleet)
                if device_id not in handled and device_id not in chosen
            ]
            device_ids.extend(
                sorted(extras, key=lambda item: cohort_order_key(release.id, item))
            )
        started_at = self._now_iso()
        progress = StageProgress(
            stage=stage,
            device_ids=tuple(device_ids),
            started_at=started_at,
        )
        self.history.append(
            release.id,
            hist.COHORT_RESOLVED,
            status=release.status,
            stage=stage,
            device_ids=progress.device_ids,
            detail={"started_at": started_at},
            actor=actor,
        )
        release = replace(release, stage=stage, progress=progress, updated_at=started_at)
        self.releases.put_release(release)
        logger.info(
            "Stage started",
            extra={
                "release_id": release.id,
                "stage": stage,
                "count": len(device_ids),
            },
        )
        return self._deliver_pending(release, actor=actor)

    def _deliver_pending(self, release: Release, *, actor: str | None) -> Release:
        progress = release.progress
        if progress is None:
            return release
        handled = hist.handled_devices(self.history.events(release.id))
        pending = [device_id for device_id in progress.device_ids if device_id not in handled]
        if not pending:
            return release
        record = self.artifacts.get_record(release.firmware_id)
        delivered: list[str] = []
        skipped: list[str] = []
        previous: dict[str, str | None] = {}
        for device_id in pending:
            try:
                device = self.registry.get(device_id)
            except NotFound:
                skipped.append(device_id)
                continue
            if device.deregistered_at:
                skipped.append(device_id)
                continue
            if device.assigned_release_id == release.id:
                # assigned before an interrupted pass could record it
                previous[device_id] = device.previous_firmware_id
                delivered.append(device_id)
                continue
            if device.firmware_id == record.id:
                skipped.append(device_id)
                continue
            command = build_update_command(
                device_id,
                release_id=release.id,
                record=record,
                download_base_url=self._download_base_url,
            )
            previous[device_id] = self.delivery.send_update(device_id, command)
            delivered.append(device_id)

        self.history.append(
            release.id,
            hist.DELIVERED,
            status=release.status,
            stage=progress.stage,
            device_ids=delivered,
            detail={
                "firmware_id": record.id,
                "previous": previous,
                "skipped": skipped,
            },
            actor=actor,
        )
        logger.info(
            "Firmware delivered",
            extra={
                "release_id": release.id,
                "firmware_id": record.id,
                "stage": progress.stage,
                "count": len(delivered),
                "skipped": len(skipped),
            },
        )
        progress = replace(
            progress,
            updated=progress.updated + len(delivered),
            skipped=progress.skipped + len(skipped),
        )
        release = replace(release, progress=progress, updated_at=self._now_iso())
        return self.releases.put_release(release)

    def _health_cohort(self, release: Release, progress: StageProgress) -> tuple[str, ...]:
        skipped = hist.skipped_devices(self.history.events(release.id))
        return tuple(
            device_id for device_id in progress.device_ids if device_id not in skipped
        )

    def _evaluate(self, release: Release, progress: StageProgress) -> HealthReport:
        report = self.evaluator.evaluate(
            release.id,
            progress.stage,
            self._health_cohort(release, progress),
            window_started_at=progress.started_at,
            now=self._now(),
        )
        self._reports[release.id] = report
        return report

    def _advance_if_ready(self, release: Release) -> Release:
        progress = release.progress
        if progress is None:
            progress = hist.rebuild_progress(self.history.events(release.id))
            if progress is None or progress.stage != release.stage:
                return self._begin_stage(release, release.stage, actor=ORCHESTRATOR)
            release = replace(release, progress=progress)
        release = self._deliver_pending(release, actor=ORCHESTRATOR)
        progress = release.progress or progress

        observed = progress
        report = self._evaluate(release, progress)
        previous_verdict = progress.verdict
        progress = replace(
            progress,
            healthy=report.healthy,
            degraded=report.degraded,
            failed=report.failed,
            silent=report.silent,
            verdict=report.verdict,
        )
        release = replace(release, progress=progress)
        if report.final and report.verdict != previous_verdict:
            self.history.append(
                release.id,
                hist.HEALTH_EVALUATED,
                status=release.status,
                stage=progress.stage,
                device_ids=report.failed_devices,
                detail={
                    "verdict": report.verdict,
                    "healthy": report.healthy,
                    "degraded": report.degraded,
                    "failed": report.failed,
                    "silent": report.silent,
                    "window_elapsed": report.window_elapsed,
                },
                actor=ORCHESTRATOR,
            )
            logger.info(
                "Stage health evaluated",
                extra={
                    "release_id": release.id,
                    "stage": progress.stage,
                    "verdict": report.verdict,
                    "count": report.total,
                },
            )
        if not report.final:
            if progress == observed:
                return release
            return self.releases.put_release(release)

        if release.health_policy != AUTO_ROLLBACK:
            return self._hold(release, report)
        if report.verdict == HEALTHY:
            return self._advance(release, actor=ORCHESTRATOR)
        return self._rollback(
            release,
            HEALTH_FAILED,
            actor=ORCHESTRATOR,
            detail={"verdict": report.verdict, "failed_devices": list(report.failed_devices)},
        )

    def _hold(self, release: Release, report: HealthReport) -> Release:
        reason = f"{release.stage} verdict {report.verdict}; awaiting operator"
        if release.held_reason != reason:
            self.history.append(
                release.id,
                hist.HELD,
                status=release.status,
                stage=release.stage,
                detail={"verdict": report.verdict, "reason": reason},
                actor=ORCHESTRATOR,
            )
            logger.info(
                "Release held for operator",
                extra={
                    "release_id": release.id,
                    "stage": release.stage,
                    "verdict": report.verdict,
                },
            )
        release = replace(release, held_reason=reason, updated_at=self._now_iso())
        return self.releases.put_release(release)

    def _advance(self, release: Release, *, actor: str | None) -> Release:
        release = self._transition(release, STAGE_PASSED, actor=actor)
        if release.status == COMPLETED:
            self.releases.put_release(release)
            logger.info(
                "Release completed",
                extra={"release_id": release.id, "firmware_id": release.firmware_id},
            )
            return release
        return self._begin_stage(release, release.stage, actor=actor)

    def _rollback(
        self,
        release: Release,
        event: str,
        *,
        actor: str | None,
        detail: dict[str, object] | None = None,
    ) -> Release:
        release = self._transition(release, event, actor=actor, detail=detail)
        self.releases.put_release(release)
        self._revert_touched(release, actor=actor)
        return release

    def _revert_touched(self, release: Release, *, actor: str | None) -> int:
        events = self.history.events(release.id)
        touched = hist.touched_devices(events)
        already = hist.reverted_devices(events)
        pending = {
            device_id: previous
            for device_id, previous in touched.items()
            if device_id not in already
        }
        if not pending:
            return 0
        superseded: list[str] = []
        for device_id, previous in pending.items():
            command = RollbackCommand(
                device_id=device_id,
                release_id=release.id,
                firmware_id=previous,
            )
            if not self.delivery.send_rollback(device_id, command):
                superseded.append(device_id)
        self.history.append(
            release.id,
            hist.REVERTED,
            status=release.status,
            stage=release.stage,
            device_ids=tuple(pending),
            detail={"previous": pending, "superseded": superseded},
            actor=actor,
        )
        logger.warning(
            "Release rolled back",
            extra={
                "release_id": release.id,
                "firmware_id": release.firmware_id,
                "count": len(pending),
                "skipped": len(superseded),
                "actor": actor,
            },
        )
        return len(pending)
