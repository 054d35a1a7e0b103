from __future__ import annotations

from typing import Iterable

from aura_core.releases.types import (
    ROLLOUT_STAGES,
    ReleaseEvent,
    StageProgress,
)

CREATED = "created"
TRANSITION = "transition"
COHORT_RESOLVED = "cohort_resolved"
DELIVERED = "delivered"
HEALTH_EVALUATED = "health_evaluated"
HELD = "held"
REVERTED = "reverted"
START_BLOCKED = "start_blocked"
EVENT_KINDS = (
    CREATED,
    TRANSITION,
    COHORT_RESOLVED,
    DELIVERED,
    HEALTH_EVALUATED,
    HELD,
    REVERTED,
    START_BLOCKED,
)


def touched_devices(events: Iterable[ReleaseEvent]) -> dict[str, str | None]:
    """Map every device the release updated to the firmware it ran before.

    The first delivery recorded for a device wins, so a redelivery after a
    restart cannot overwrite the pre-release firmware with the new one.
    """
    touched: dict[str, str | None] = {}
    for event in sorted(events, key=lambda item: item.seq):
        if event.kind != DELIVERED:
            continue
        previous = (event.detail or {}).get("previous") or {}
        for device_id in event.device_ids:
            if device_id in touched:
                continue
            value = previous.get(device_id) if isinstance(previous, dict) else None
            touched[device_id] = str(value) if value else None
    return touched


def skipped_devices(events: Iterable[ReleaseEvent]) -> set[str]:
    skipped: set[str] = set()
    for event in events:
        if event.kind == DELIVERED:
            skipped.update(str(item) for item in (event.detail or {}).get("skipped") or [])
    return skipped


def handled_devices(events: Iterable[ReleaseEvent]) -> set[str]:
    """Devices a delivery pass already dealt with, updated or skipped."""
    events = list(events)
    return set(touched_devices(events)) | skipped_devices(events)


def reverted_devices(events: Iterable[ReleaseEvent]) -> set[str]:
    reverted: set[str] = set()
    for event in events:
        if event.kind == REVERTED:
            reverted.update(event.device_ids)
    return reverted


def last_event(events: Iterable[ReleaseEvent], kind: str) -> ReleaseEvent | None:
    found: ReleaseEvent | None = None
    for event in events:
        if event.kind == kind and (found is None or event.seq > found.seq):
            found = event
    return found


def rebuild_progress(events: Iterable[ReleaseEvent]) -> StageProgress | None:
    """Reconstruct the active stage's progress from history alone."""
    ordered = sorted(events, key=lambda item: item.seq)
    resolved = last_event(ordered, COHORT_RESOLVED)
    if resolved is None or resolved.stage not in ROLLOUT_STAGES:
        return None
    stage = resolved.stage
    updated = 0
    skipped = 0
    for event in ordered:
        if event.seq < resolved.seq or event.stage != stage:
            continue
        if event.kind == DELIVERED:
            updated += len(event.device_ids)
            skipped += len((event.detail or {}).get("skipped") or [])
    health = None
    for event in ordered:
        if event.seq > resolved.seq and event.kind == HEALTH_EVALUATED and event.stage == stage:
            health = event
    counts = (health.detail or {}) if health else {}
    started_at = (resolved.detail or {}).get("started_at") or resolved.created_at
    return StageProgress(
        stage=stage,
        device_ids=resolved.device_ids,
        started_at=str(started_at),
        updated=updated,
        skipped=skipped,
        healthy=int(counts.get("healthy", 0) or 0),
        degraded=int(counts.get("degraded", 0) or 0),
        failed=int(counts.get("failed", 0) or 0),
        silent=int(counts.get("silent", 0) or 0),
        verdict=str(counts["verdict"]) if counts.get("verdict") else None,
    )
