from aura_core.releases.delivery import (
    RecordingDelivery,
    RegistryDelivery,
    RollbackCommand,
    UpdateCommand,
    UpdateDelivery,
)
from aura_core.releases.machine import next_stage, next_state
from aura_core.releases.types import (
    AUTO_ROLLBACK,
    MANUAL,
    Release,
    ReleaseEvent,
    StageProgress,
)

__all__ = [
    "AUTO_ROLLBACK",
    "MANUAL",
    "RecordingDelivery",
    "RegistryDelivery",
    "Release",
    "ReleaseEvent",
    "RollbackCommand",
    "StageProgress",
    "UpdateCommand",
    "UpdateDelivery",
    "next_stage",
    "next_state",
]
