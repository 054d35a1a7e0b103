from __future__ import annotations

import threading
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Protocol

from aura_core.errors import RecoverableError, ValidationError
from aura_core.health.types import (
    FAILED,
    HARD_FAILURE_KINDS,
    SAMPLE_KINDS,
    SAMPLE_STATUSES,
    HealthSample,
)
from aura_core.storage.json_files import append_jsonl, read_jsonl
from aura_core.storage.paths import join_uri


class HealthFeed(Protocol):
    def ingest(self, sample: HealthSample) -> HealthSample:
        ...

    def samples(
        self,
        release_id: str,
        *,
        since: str | None = None,
    ) -> list[HealthSample]:
        ...


def build_sample(
    *,
    release_id: str,
    device_id: str,
    status: str,
    kind: str = "heartbeat",
    detail: str | None = None,
    reported_at: str | None = None,
) -> HealthSample:
    status = (status or "").strip().lower()
    kind = (kind or "").strip().lower()
    if status not in SAMPLE_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(SAMPLE_STATUSES)}")
    if kind not in SAMPLE_KINDS:
        raise ValidationError(f"kind must be one of: {', '.join(SAMPLE_KINDS)}")
    if not release_id:
        raise ValidationError("release_id is required")
    if kind in HARD_FAILURE_KINDS:
        status = FAILED
    return HealthSample(
        id=str(uuid.uuid4()),
        release_id=release_id,
        device_id=device_id,
        status=status,
        kind=kind,
        detail=detail,
        reported_at=reported_at or datetime.now(timezone.utc).isoformat(),
    )


def health_log_uri(base_uri: str, release_id: str) -> str:
    return join_uri(base_uri, "health", f"{release_id}.jsonl")


def _at_or_after(sample: HealthSample, since: str | None) -> bool:
    if since is None:
        return True
    return datetime.fromisoformat(sample.reported_at) >= datetime.fromisoformat(since)


class JsonHealthFeed:
    """Health samples appended to one JSONL log per release."""

    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = threading.Lock()

    def ingest(self, sample: HealthSample) -> HealthSample:
        try:
            with self._lock:
                append_jsonl(health_log_uri(self._base_uri, sample.release_id), [asdict(sample)])
        except OSError as exc:
            raise RecoverableError(f"Health sample write failed: {exc}") from exc
        return sample

    def samples(
        self,
        release_id: str,
        *,
        since: str | None = None,
    ) -> list[HealthSample]:
        try:
            rows = read_jsonl(health_log_uri(self._base_uri, release_id))
        except OSError as exc:
            raise RecoverableError(f"Health feed read failed: {exc}") from exc
        samples = [_sample_from_dict(row) for row in rows]
        return [sample for sample in samples if _at_or_after(sample, since)]


class InMemoryHealthFeed:
    def __init__(self) -> None:
        self._samples: list[HealthSample] = []
        self._lock = threading.Lock()

    def ingest(self, sample: HealthSample) -> HealthSample:
        with self._lock:
            self._samples.append(sample)
        return sample

    def samples(
        self,
        release_id: str,
        *,
        since: str | None = None,
    ) -> list[HealthSample]:
        with self._lock:
            snapshot = list(self._samples)
        return [
            sample
            for sample in snapshot
            if sample.release_id == release_id and _at_or_after(sample, since)
        ]


def _sample_from_dict(payload: dict[str, object]) -> HealthSample:
    detail = payload.get("detail")
    return HealthSample(
        id=str(payload.get("id")),
        release_id=str(payload.get("release_id", "")),
        device_id=str(payload.get("device_id", "")),
        status=str(payload.get("status", FAILED)),
        kind=str(payload.get("kind", "heartbeat")),
        detail=str(detail) if detail is not None else None,
        reported_at=str(payload.get("reported_at", "")),
    )
