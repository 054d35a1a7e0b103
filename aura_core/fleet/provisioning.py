from __future__ import annotations

from dataclasses import dataclass

from aura_core.errors import NotClaimed, NotFound
from aura_core.fleet.pki import CertificateAuthority, IssuedCertificate
from aura_core.fleet.store import DeviceRegistry
from aura_core.fleet.types import DeviceRecord
from aura_core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProvisionResult:
    device: DeviceRecord
    credentials: IssuedCertificate | None = None


class DeviceProvisioner:
    """Issues a device's client certificate and marks it provisioned.

    Credentials are returned exactly once. Repeating the call for a provisioned
    device returns the record without new key material.
    """

    def __init__(self, registry: DeviceRegistry, authority: CertificateAuthority) -> None:
        self.registry = registry
        self.authority = authority

    def provision(self, device_id: str) -> ProvisionResult:
        device = self.registry.get(device_id)
        if device.deregistered_at:
            raise NotFound(f"device {device_id} not found")
        if not device.claimed_at:
            raise NotClaimed(f"device {device_id} has not been claimed")
        if device.provisioned_at:
            return ProvisionResult(device=device)

        issued = self.authority.issue(device_id)
        device = self.registry.mark_provisioned(
            device_id, certificate_serial=issued.serial
        )
        if device.certificate_serial != issued.serial:
            # a concurrent call provisioned the device first; its certificate stands
            logger.warning(
                "Discarding certificate from a concurrent provision",
                extra={"device_id": device_id},
            )
            return ProvisionResult(device=device)
        return ProvisionResult(device=device, credentials=issued)
