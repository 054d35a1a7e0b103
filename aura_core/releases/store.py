from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from aura_core.releases.types import (
    Release,
    ReleaseEvent,
    event_from_dict,
    event_to_dict,
    release_from_dict,
    release_to_dict,
)
from aura_core.storage.json_files import append_jsonl, read_json, read_jsonl, write_json
from aura_core.storage.paths import join_uri


def release_registry_uri(base_uri: str) -> str:
    return join_uri(base_uri, "control", "releases.json")


def release_events_uri(base_uri: str, release_id: str) -> str:
    return join_uri(base_uri, "control", "release_events", f"{release_id}.jsonl")


def load_releases(base_uri: str) -> list[Release]:
    payload = read_json(release_registry_uri(base_uri))
    items = payload.get("releases", []) if isinstance(payload, dict) else []
    return [release_from_dict(item) for item in items if isinstance(item, dict)]


def save_releases(base_uri: str, releases: Iterable[Release]) -> str:
    payload = {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "releases": [release_to_dict(release) for release in releases],
    }
    return write_json(release_registry_uri(base_uri), payload)


def load_release_events(base_uri: str, release_id: str) -> list[ReleaseEvent]:
    rows = read_jsonl(release_events_uri(base_uri, release_id))
    events = [event_from_dict(row) for row in rows]
    return sorted(events, key=lambda event: event.seq)


def append_release_events(
    base_uri: str,
    release_id: str,
    events: Iterable[ReleaseEvent],
) -> str:
    return append_jsonl(
        release_events_uri(base_uri, release_id),
        [event_to_dict(event) for event in events],
    )
