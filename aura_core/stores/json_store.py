from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Iterable

from aura_core.errors import NotFound, RecoverableError, ValidationError
from aura_core.releases import store as release_store
from aura_core.releases.history import EVENT_KINDS
from aura_core.releases.types import Release, ReleaseEvent
from aura_core.stores.interfaces import ReleaseHistoryStore, ReleaseStore


class JsonReleaseStore(ReleaseStore):
    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = threading.Lock()

    def load_releases(self) -> list[Release]:
        try:
            return release_store.load_releases(self._base_uri)
        except OSError as exc:
            raise RecoverableError(f"Release registry read failed: {exc}") from exc

    def save_releases(self, releases: Iterable[Release]) -> str:
        return release_store.save_releases(self._base_uri, releases)

    def get_release(self, release_id: str) -> Release:
        for release in self.load_releases():
            if release.id == release_id:
                return release
        raise NotFound(f"release {release_id} not found")

    def put_release(self, release: Release) -> Release:
        with self._lock:
            releases = self.load_releases()
            updated = [item for item in releases if item.id != release.id]
            updated.append(release)
            updated.sort(key=lambda item: item.created_at)
            self.save_releases(updated)
        return release

    def list_active(self) -> list[Release]:
        return [release for release in self.load_releases() if release.active]


class JsonReleaseHistory(ReleaseHistoryStore):
    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = threading.Lock()

    def append(
        self,
        release_id: str,
        kind: str,
        *,
        status: str | None = None,
        stage: str | None = None,
        device_ids: Iterable[str] = (),
        detail: dict[str, object] | None = None,
        actor: str | None = None,
    ) -> ReleaseEvent:
        if kind not in EVENT_KINDS:
            raise ValidationError(f"unknown release event kind: {kind}")
        with self._lock:
            existing = release_store.load_release_events(self._base_uri, release_id)
            seq = existing[-1].seq + 1 if existing else 1
            event = ReleaseEvent(
                id=str(uuid.uuid4()),
                release_id=release_id,
                seq=seq,
                kind=kind,
                created_at=datetime.now(timezone.utc).isoformat(),
                status=status,
                stage=stage,
                device_ids=tuple(device_ids),
                detail=detail,
                actor=actor,
            )
            release_store.append_release_events(self._base_uri, release_id, [event])
        return event

    def events(self, release_id: str) -> list[ReleaseEvent]:
        return release_store.load_release_events(self._base_uri, release_id)
