from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceRecord:
    id: str
    name: str | None
    fleet_tags: tuple[str, ...]
    created_at: str
    updated_at: str
    claimed_at: str | None = None
    provisioned_at: str | None = None
    deregistered_at: str | None = None
    firmware_id: str | None = None
    assigned_firmware_id: str | None = None
    assigned_release_id: str | None = None
    previous_firmware_id: str | None = None
    certificate_serial: str | None = None
    last_seen_at: str | None = None

    @property
    def state(self) -> str:
        if self.deregistered_at:
            return "deregistered"
        if self.provisioned_at:
            return "provisioned"
        if self.claimed_at:
            return "claimed"
        return "unclaimed"


@dataclass(frozen=True)
class RegisteredDevice:
    device: DeviceRecord
    bootstrap_token: str


@dataclass(frozen=True)
class CohortPlan:
    release_id: str
    fleet: str
    total_devices: int
    cohorts: tuple[tuple[str, tuple[str, ...]], ...]

    def cohort(self, stage: str) -> tuple[str, ...]:
        for name, device_ids in self.cohorts:
            if name == stage:
                return device_ids
        raise KeyError(stage)
