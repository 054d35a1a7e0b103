from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from aura_core.artifacts.store import ArtifactStore
from aura_core.config import Config
from aura_core.fleet.pki import CertificateAuthority
from aura_core.fleet.provisioning import DeviceProvisioner
from aura_core.fleet.selector import FleetSelector
from aura_core.fleet.store import DeviceRegistry
from aura_core.health.evaluator import HealthEvaluator
from aura_core.health.types import HealthPolicyParams
from aura_core.logging import get_logger
from aura_core.releases.delivery import RegistryDelivery, UpdateDelivery
from aura_core.releases.engine import RolloutEngine
from aura_core.releases.runner import RolloutRunner
from aura_core.stores.registry import StoreBundle, get_store_bundle

logger = get_logger(__name__)


@dataclass
class FleetServices:
    """Everything a process needs to serve the fleet API or run rollouts."""

    config: Config
    registry: DeviceRegistry
    authority: CertificateAuthority
    provisioner: DeviceProvisioner
    artifacts: ArtifactStore
    stores: StoreBundle
    engine: RolloutEngine
    runner: RolloutRunner

    def start(self) -> None:
        if self.config.rollout_runner_enabled:
            self.runner.start()

    def stop(self) -> None:
        self.runner.stop()


def build_services(
    config: Config,
    *,
    delivery: UpdateDelivery | None = None,
    now_fn: Callable[[], datetime] | None = None,
    sleep_fn: Callable[[float], None] | None = None,
) -> FleetServices:
    base_uri = config.data_root_uri()
    registry = DeviceRegistry(config.registry_db_path())
    authority = CertificateAuthority(
        base_uri,
        validity_days=config.device_cert_validity_days,
        ca_key_bits=config.pki_ca_key_bits,
    )
    artifacts = ArtifactStore(base_uri, max_bytes=config.firmware_max_bytes)
    stores = get_store_bundle(base_uri)
    evaluator = HealthEvaluator(
        stores.health,
        HealthPolicyParams.from_config(config),
        now_fn=now_fn,
        sleep_fn=sleep_fn,
    )
    engine = RolloutEngine(
        artifacts=artifacts,
        registry=registry,
        selector=FleetSelector(registry, config.stage_percentages),
        evaluator=evaluator,
        releases=stores.releases,
        history=stores.history,
        delivery=delivery or RegistryDelivery(registry),
        download_base_url=config.firmware_download_base_url,
        now_fn=now_fn,
    )
    runner = RolloutRunner(
        engine,
        poll_interval_s=config.rollout_poll_interval_s,
        max_workers=config.rollout_max_workers,
    )
    logger.info(
        "Fleet services ready",
        extra={"env": config.env, "max_workers": config.rollout_max_workers},
    )
    return FleetServices(
        config=config,
        registry=registry,
        authority=authority,
        provisioner=DeviceProvisioner(registry, authority),
        artifacts=artifacts,
        stores=stores,
        engine=engine,
        runner=runner,
    )
