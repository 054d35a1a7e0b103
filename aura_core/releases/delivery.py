from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol

from aura_core.artifacts.types import FirmwareRecord
from aura_core.fleet.store import DeviceRegistry


@dataclass(frozen=True)
class UpdateCommand:
    device_id: str
    release_id: str
    firmware_id: str
    version: str
    checksum: str
    firmware_url: str


@dataclass(frozen=True)
class RollbackCommand:
    device_id: str
    release_id: str
    firmware_id: str | None


class UpdateDelivery(Protocol):
    def send_update(self, device_id: str, command: UpdateCommand) -> str | None:
        ...

    def send_rollback(self, device_id: str, command: RollbackCommand) -> bool:
        ...


def firmware_url(record: FirmwareRecord, download_base_url: str | None = None) -> str:
    if download_base_url:
        return f"{download_base_url.rstrip('/')}/firmware/{record.id}/download"
    return record.storage_uri


def build_update_command(
    device_id: str,
    *,
    release_id: str,
    record: FirmwareRecord,
    download_base_url: str | None = None,
) -> UpdateCommand:
    return UpdateCommand(
        device_id=device_id,
        release_id=release_id,
        firmware_id=record.id,
        version=record.version,
        checksum=record.checksum,
        firmware_url=firmware_url(record, download_base_url),
    )


class RegistryDelivery:
    """Publishes assignments through the device registry's firmware pointer.

    Devices poll their assignment; writing the pointer is the whole delivery.
    """

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    def send_update(self, device_id: str, command: UpdateCommand) -> str | None:
        return self._registry.assign_firmware(
            device_id,
            firmware_id=command.firmware_id,
            release_id=command.release_id,
        )

    def send_rollback(self, device_id: str, command: RollbackCommand) -> bool:
        return self._registry.revert_firmware(
            device_id,
            release_id=command.release_id,
            firmware_id=command.firmware_id,
        )


class RecordingDelivery:
    """Keeps every command in memory and optionally forwards to another delivery."""

    def __init__(self, inner: UpdateDelivery | None = None) -> None:
        self._inner = inner
        self._lock = threading.Lock()
        self.updates: list[UpdateCommand] = []
        self.rollbacks: list[RollbackCommand] = []

    def send_update(self, device_id: str, command: UpdateCommand) -> str | None:
        with self._lock:
            self.updates.append(command)
        if self._inner is not None:
            return self._inner.send_update(device_id, command)
        return None

    def send_rollback(self, device_id: str, command: RollbackCommand) -> bool:
        with self._lock:
            self.rollbacks.append(command)
        if self._inner is not None:
            return self._inner.send_rollback(device_id, command)
        return True

    def updated_devices(self) -> list[str]:
        with self._lock:
            return [command.device_id for command in self.updates]

    def rolled_back_devices(self) -> list[str]:
        with self._lock:
            return [command.device_id for command in self.rollbacks]
