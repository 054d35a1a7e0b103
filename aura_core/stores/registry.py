from __future__ import annotations

import os
from dataclasses import dataclass

from aura_core.health.feed import HealthFeed, JsonHealthFeed
from aura_core.stores.interfaces import ReleaseHistoryStore, ReleaseStore
from aura_core.stores.json_store import JsonReleaseHistory, JsonReleaseStore


@dataclass(frozen=True)
class StoreBundle:
    releases: ReleaseStore
    history: ReleaseHistoryStore
    health: HealthFeed


def get_store_bundle(base_uri: str) -> StoreBundle:
    backend = os.getenv("CONTROL_PLANE_STORE", "json").strip().lower()
    if backend != "json":
        raise ValueError(f"Unsupported control-plane store backend: {backend}")
    return StoreBundle(
        releases=JsonReleaseStore(base_uri),
        history=JsonReleaseHistory(base_uri),
        health=JsonHealthFeed(base_uri),
    )
