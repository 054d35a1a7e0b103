from __future__ import annotations

from typing import Iterable, Protocol

from aura_core.releases.types import Release, ReleaseEvent


class ReleaseStore(Protocol):
    def load_releases(self) -> list[Release]:
        ...

    def save_releases(self, releases: Iterable[Release]) -> str:
        ...

    def get_release(self, release_id: str) -> Release:
        ...

    def put_release(self, release: Release) -> Release:
        ...

    def list_active(self) -> list[Release]:
        ...


class ReleaseHistoryStore(Protocol):
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
        ...

    def events(self, release_id: str) -> list[ReleaseEvent]:
        ...
