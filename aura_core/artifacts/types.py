from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FirmwareRecord:
    id: str
    version: str
    description: str | None
    size: int
    checksum: str
    storage_uri: str
    created_at: str
