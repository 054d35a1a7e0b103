from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from aura_core.artifacts.store import ArtifactStore
from aura_core.config import get_config
from aura_core.fleet.selector import FleetSelector
from aura_core.fleet.store import DeviceRegistry
from aura_core.health.evaluator import HealthEvaluator
from aura_core.health.feed import InMemoryHealthFeed
from aura_core.health.types import HealthPolicyParams
from aura_core.releases.delivery import RecordingDelivery, RegistryDelivery
from aura_core.releases.engine import RolloutEngine
from aura_core.stores.json_store import JsonReleaseHistory, JsonReleaseStore


class FakeClock:
    def __init__(self) -> None:
        self.current = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _default_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_DATA_ROOT", str(tmp_path / "aura_data"))
    monkeypatch.setenv("ROLLOUT_RUNNER", "0")
    monkeypatch.setenv("PKI_CA_KEY_BITS", "2048")
    monkeypatch.delenv("FLEET_API_KEY", raising=False)
    monkeypatch.delenv("DEVICE_DB_PATH", raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def data_root(tmp_path: Path) -> str:
    root = tmp_path / "aura_data"
    root.mkdir(parents=True, exist_ok=True)
    return str(root)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(data_root: str) -> DeviceRegistry:
    return DeviceRegistry(str(Path(data_root) / "control" / "devices.db"))


@pytest.fixture
def artifacts(data_root: str) -> ArtifactStore:
    return ArtifactStore(data_root, max_bytes=1024 * 1024)


@pytest.fixture
def health_feed() -> InMemoryHealthFeed:
    return InMemoryHealthFeed()


@pytest.fixture
def delivery(registry: DeviceRegistry) -> RecordingDelivery:
    return RecordingDelivery(RegistryDelivery(registry))


@pytest.fixture
def engine(
    data_root: str,
    registry: DeviceRegistry,
    artifacts: ArtifactStore,
    health_feed: InMemoryHealthFeed,
    delivery: RecordingDelivery,
    clock: FakeClock,
) -> RolloutEngine:
    evaluator = HealthEvaluator(
        health_feed,
        HealthPolicyParams(window_s=300, max_silent_fraction=0.0, read_backoff_s=0),
        now_fn=clock,
        sleep_fn=lambda _seconds: None,
    )
    return RolloutEngine(
        artifacts=artifacts,
        registry=registry,
        selector=FleetSelector(registry, (5, 30, 100)),
        evaluator=evaluator,
        releases=JsonReleaseStore(data_root),
        history=JsonReleaseHistory(data_root),
        delivery=delivery,
        download_base_url="https://fleet.example.test",
        now_fn=clock,
    )


def provision_devices(
    registry: DeviceRegistry,
    count: int,
    *,
    fleet_tags: list[str] | None = None,
    firmware_id: str | None = None,
) -> list[str]:
    device_ids: list[str] = []
    for idx in range(count):
        registered = registry.register(
            name=f"device-{idx}",
            fleet_tags=fleet_tags,
            firmware_id=firmware_id,
        )
        registry.claim(registered.bootstrap_token)
        registry.mark_provisioned(registered.device.id)
        device_ids.append(registered.device.id)
    return device_ids


@pytest.fixture
def fleet_factory(registry: DeviceRegistry):
    def _factory(count: int, **kwargs) -> list[str]:
        return provision_devices(registry, count, **kwargs)

    return _factory
