from aura_core.fleet.pki import CertificateAuthority, IssuedCertificate
from aura_core.fleet.provisioning import DeviceProvisioner, ProvisionResult
from aura_core.fleet.selector import (
    DEFAULT_STAGE_PERCENTAGES,
    STAGE_NAMES,
    FleetSelector,
    partition,
)
from aura_core.fleet.store import ALL_FLEETS, DeviceRegistry, normalize_tags
from aura_core.fleet.tokens import generate_bootstrap_token, token_hash, verify_token
from aura_core.fleet.types import CohortPlan, DeviceRecord, RegisteredDevice

__all__ = [
    "ALL_FLEETS",
    "CertificateAuthority",
    "CohortPlan",
    "DEFAULT_STAGE_PERCENTAGES",
    "DeviceRecord",
    "DeviceProvisioner",
    "DeviceRegistry",
    "FleetSelector",
    "IssuedCertificate",
    "ProvisionResult",
    "RegisteredDevice",
    "STAGE_NAMES",
    "generate_bootstrap_token",
    "normalize_tags",
    "partition",
    "token_hash",
    "verify_token",
]
