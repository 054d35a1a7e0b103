from __future__ import annotations

from dataclasses import dataclass

# release status
PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
ROLLED_BACK = "rolled_back"
RELEASE_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, ROLLED_BACK)
TERMINAL_STATUSES = frozenset({COMPLETED, ROLLED_BACK})

# release stage
CANARY = "canary"
STAGING = "staging"
PRODUCTION = "production"
STAGE_COMPLETED = "completed"
ROLLBACK = "rollback"
RELEASE_STAGES = (CANARY, STAGING, PRODUCTION, STAGE_COMPLETED, ROLLBACK)
ROLLOUT_STAGES = (CANARY, STAGING, PRODUCTION)

# health policy
AUTO_ROLLBACK = "auto-rollback"
MANUAL = "manual"
HEALTH_POLICIES = (AUTO_ROLLBACK, MANUAL)

# rollout events
START = "start"
STAGE_PASSED = "stage_passed"
HEALTH_FAILED = "health_failed"
MANUAL_ABORT = "manual_abort"
ROLLOUT_EVENTS = (START, STAGE_PASSED, HEALTH_FAILED, MANUAL_ABORT)


@dataclass(frozen=True)
class StageProgress:
    stage: str
    device_ids: tuple[str, ...]
    started_at: str
    updated: int = 0
    skipped: int = 0
    healthy: int = 0
    degraded: int = 0
    failed: int = 0
    silent: int = 0
    verdict: str | None = None


@dataclass(frozen=True)
class Release:
    id: str
    firmware_id: str
    target_fleet: str
    health_policy: str
    status: str
    stage: str
    created_at: str
    updated_at: str
    progress: StageProgress | None = None
    held_reason: str | None = None
    created_by: str | None = None

    @property
    def active(self) -> bool:
        return self.status not in TERMINAL_STATUSES


@dataclass(frozen=True)
class ReleaseEvent:
    id: str
    release_id: str
    seq: int
    kind: str
    created_at: str
    status: str | None = None
    stage: str | None = None
    device_ids: tuple[str, ...] = ()
    detail: dict[str, object] | None = None
    actor: str | None = None


def progress_to_dict(progress: StageProgress | None) -> dict[str, object] | None:
    if progress is None:
        return None
    return {
        "stage": progress.stage,
        "device_ids": list(progress.device_ids),
        "started_at": progress.started_at,
        "updated": progress.updated,
        "skipped": progress.skipped,
        "healthy": progress.healthy,
        "degraded": progress.degraded,
        "failed": progress.failed,
        "silent": progress.silent,
        "verdict": progress.verdict,
    }


def progress_from_dict(payload: object) -> StageProgress | None:
    if not isinstance(payload, dict):
        return None
    verdict = payload.get("verdict")
    return StageProgress(
        stage=str(payload.get("stage", CANARY)),
        device_ids=tuple(str(item) for item in payload.get("device_ids", []) or []),
        started_at=str(payload.get("started_at", "")),
        updated=int(payload.get("updated", 0) or 0),
        skipped=int(payload.get("skipped", 0) or 0),
        healthy=int(payload.get("healthy", 0) or 0),
        degraded=int(payload.get("degraded", 0) or 0),
        failed=int(payload.get("failed", 0) or 0),
        silent=int(payload.get("silent", 0) or 0),
        verdict=str(verdict) if verdict else None,
    )


def release_to_dict(release: Release) -> dict[str, object]:
    return {
        "id": release.id,
        "firmware_id": release.firmware_id,
        "target_fleet": release.target_fleet,
        "health_policy": release.health_policy,
        "status": release.status,
        "stage": release.stage,
        "created_at": release.created_at,
        "updated_at": release.updated_at,
        "progress": progress_to_dict(release.progress),
        "held_reason": release.held_reason,
        "created_by": release.created_by,
    }


def release_from_dict(payload: dict[str, object]) -> Release:
    held_reason = payload.get("held_reason")
    created_by = payload.get("created_by")
    return Release(
        id=str(payload.get("id")),
        firmware_id=str(payload.get("firmware_id", "")),
        target_fleet=str(payload.get("target_fleet", "all")),
        health_policy=str(payload.get("health_policy", AUTO_ROLLBACK)),
        status=str(payload.get("status", PENDING)),
        stage=str(payload.get("stage", CANARY)),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
        progress=progress_from_dict(payload.get("progress")),
        held_reason=str(held_reason) if held_reason else None,
        created_by=str(created_by) if created_by else None,
    )


def event_to_dict(event: ReleaseEvent) -> dict[str, object]:
    return {
        "id": event.id,
        "release_id": event.release_id,
        "seq": event.seq,
        "kind": event.kind,
        "created_at": event.created_at,
        "status": event.status,
        "stage": event.stage,
        "device_ids": list(event.device_ids),
        "detail": event.detail,
        "actor": event.actor,
    }


def event_from_dict(payload: dict[str, object]) -> ReleaseEvent:
    detail = payload.get("detail")
    actor = payload.get("actor")
    status = payload.get("status")
    stage = payload.get("stage")
    return ReleaseEvent(
        id=str(payload.get("id")),
        release_id=str(payload.get("release_id", "")),
        seq=int(payload.get("seq", 0) or 0),
        kind=str(payload.get("kind", "")),
        created_at=str(payload.get("created_at", "")),
        status=str(status) if status else None,
        stage=str(stage) if stage else None,
        device_ids=tuple(str(item) for item in payload.get("device_ids", []) or []),
        detail=detail if isinstance(detail, dict) else None,
        actor=str(actor) if actor else None,
    )
