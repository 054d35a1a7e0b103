from aura_core.artifacts.store import (
    ArtifactStore,
    firmware_registry_uri,
    normalize_checksum,
)
from aura_core.artifacts.types import FirmwareRecord

__all__ = [
    "ArtifactStore",
    "FirmwareRecord",
    "firmware_registry_uri",
    "normalize_checksum",
]
