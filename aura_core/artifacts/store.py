from __future__ import annotations

import hashlib
import re
import threading
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import BinaryIO, Iterable, Iterator, Union

from aura_core.artifacts.types import FirmwareRecord
from aura_core.errors import (
    ChecksumMismatch,
    Corrupt,
    DuplicateVersion,
    NotFound,
    PayloadTooLarge,
    SizeMismatch,
    ValidationError,
)
from aura_core.logging import get_logger
from aura_core.storage.json_files import read_json, write_json
from aura_core.storage.object_store import ObjectStore
from aura_core.storage.paths import join_uri

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024
_VERSION_RE = re.compile(r"^v?\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

ByteSource = Union[BinaryIO, Iterable[bytes], bytes]


def firmware_registry_uri(base_uri: str) -> str:
    return join_uri(base_uri, "control", "firmware.json")


def normalize_checksum(value: str) -> str:
    cleaned = value.strip().lower()
    if cleaned.startswith("sha256:"):
        cleaned = cleaned[len("sha256:") :]
    if not re.fullmatch(r"[0-9a-f]{64}", cleaned):
        raise ValidationError("checksum must be a hex-encoded SHA-256 digest")
    return cleaned


def _iter_chunks(source: ByteSource) -> Iterator[bytes]:
    if isinstance(source, (bytes, bytearray)):
        for offset in range(0, len(source), CHUNK_SIZE):
            yield bytes(source[offset : offset + CHUNK_SIZE])
        return
    read = getattr(source, "read", None)
    if callable(read):
        while True:
            chunk = read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
        return
    for chunk in source:
        if chunk:
            yield bytes(chunk)


class ArtifactStore:
    """Content-addressed firmware storage.

    Blobs live under ``artifacts/sha256/<aa>/<checksum>.bin`` and are only
    referenced by a firmware record after they were fully written and moved
    into place, so ``get`` never observes a partial artifact.
    """

    def __init__(self, base_uri: str, *, max_bytes: int | None = None) -> None:
        self._base_uri = base_uri
        self._objects = ObjectStore.from_base_uri(base_uri)
        self._max_bytes = max_bytes
        self._lock = threading.Lock()

    def put(
        self,
        source: ByteSource,
        *,
        version: str,
        description: str | None = None,
        expected_checksum: str | None = None,
        expected_size: int | None = None,
    ) -> FirmwareRecord:
        version = (version or "").strip()
        if not version:
            raise ValidationError("version is required")
        if not _VERSION_RE.match(version):
            raise ValidationError(f"version is not a semantic version: {version}")
        declared_checksum = (
            normalize_checksum(expected_checksum) if expected_checksum else None
        )
        if expected_size is not None and expected_size < 0:
            raise ValidationError("size must be non-negative")
        if self._find_by_version(version) is not None:
            raise DuplicateVersion(f"firmware version {version} already exists")

        tmp_path = self._objects.join("artifacts", "tmp", f"{uuid.uuid4()}.part")
        self._objects.makedirs(self._objects.join("artifacts", "tmp"))
        digest = hashlib.sha256()
        size = 0
        try:
            with self._objects.open(tmp_path, "wb") as handle:
                for chunk in _iter_chunks(source):
                    size += len(chunk)
                    if self._max_bytes is not None and size > self._max_bytes:
                        raise PayloadTooLarge(
                            f"firmware exceeds {self._max_bytes} bytes"
                        )
                    digest.update(chunk)
                    handle.write(chunk)
            if size == 0:
                raise ValidationError("firmware payload is empty")
            checksum = digest.hexdigest()
            if expected_size is not None and expected_size != size:
                raise SizeMismatch(
                    f"declared size {expected_size} does not match received {size}"
                )
            if declared_checksum is not None and declared_checksum != checksum:
                raise ChecksumMismatch(
                    "declared checksum does not match uploaded bytes"
                )
        except BaseException:
            self._objects.remove(tmp_path)
            raise

        blob_path = self._blob_path(checksum)
        if self._objects.exists(blob_path):
            self._objects.remove(tmp_path)
        else:
            self._objects.promote(tmp_path, blob_path)

        record = FirmwareRecord(
            id=str(uuid.uuid4()),
            version=version,
            description=(description or "").strip() or None,
            size=size,
            checksum=checksum,
            storage_uri=self._blob_uri(checksum),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            records = self._load()
            if any(existing.version == version for existing in records):
                raise DuplicateVersion(f"firmware version {version} already exists")
            records.append(record)
            self._save(records)
        logger.info(
            "Firmware stored",
            extra={
                "firmware_id": record.id,
                "checksum": checksum,
                "size": size,
            },
        )
        return record

    def get(self, firmware_id: str) -> tuple[bytes, str]:
        record = self.get_record(firmware_id)
        path = self._blob_path(record.checksum)
        if not self._objects.exists(path):
            raise NotFound(f"artifact for firmware {firmware_id} is missing")
        with self._objects.open(path, "rb") as handle:
            payload = handle.read()
        actual = hashlib.sha256(payload).hexdigest()
        if actual != record.checksum or len(payload) != record.size:
            self._report_corrupt(record, actual)
        return payload, record.checksum

    def verify(self, firmware_id: str) -> FirmwareRecord:
        record = self.get_record(firmware_id)
        path = self._blob_path(record.checksum)
        if not self._objects.exists(path):
            raise NotFound(f"artifact for firmware {firmware_id} is missing")
        digest = hashlib.sha256()
        size = 0
        with self._objects.open(path, "rb") as handle:
            for chunk in _iter_chunks(handle):
                size += len(chunk)
                digest.update(chunk)
        actual = digest.hexdigest()
        if actual != record.checksum or size != record.size:
            self._report_corrupt(record, actual)
        return record

    def get_record(self, firmware_id: str) -> FirmwareRecord:
        for record in self._load():
            if record.id == firmware_id:
                return record
        raise NotFound(f"firmware {firmware_id} not found")

    def list_firmware(self) -> list[FirmwareRecord]:
        return sorted(self._load(), key=lambda record: record.created_at, reverse=True)

    def _find_by_version(self, version: str) -> FirmwareRecord | None:
        return next(
            (record for record in self._load() if record.version == version),
            None,
        )

    def _report_corrupt(self, record: FirmwareRecord, actual: str) -> None:
        logger.error(
            "Firmware artifact failed verification",
            extra={
                "firmware_id": record.id,
                "checksum": record.checksum,
                "error_code": Corrupt.code,
                "error_message": f"computed {actual}",
            },
        )
        raise Corrupt(f"artifact for firmware {record.id} failed checksum verification")

    def _blob_path(self, checksum: str) -> str:
        return self._objects.join("artifacts", "sha256", checksum[:2], f"{checksum}.bin")

    def _blob_uri(self, checksum: str) -> str:
        return join_uri(self._base_uri, "artifacts", "sha256", checksum[:2], f"{checksum}.bin")

    def _load(self) -> list[FirmwareRecord]:
        payload = read_json(firmware_registry_uri(self._base_uri))
        items = payload.get("firmware", []) if isinstance(payload, dict) else []
        return [_firmware_from_dict(item) for item in items if isinstance(item, dict)]

    def _save(self, records: Iterable[FirmwareRecord]) -> str:
        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "firmware": [asdict(record) for record in records],
        }
        return write_json(firmware_registry_uri(self._base_uri), payload)


def _firmware_from_dict(payload: dict[str, object]) -> FirmwareRecord:
    description = payload.get("description")
    return FirmwareRecord(
        id=str(payload.get("id")),
        version=str(payload.get("version", "")),
        description=str(description) if description else None,
        size=int(payload.get("size", 0) or 0),
        checksum=str(payload.get("checksum", "")),
        storage_uri=str(payload.get("storage_uri", "")),
        created_at=str(payload.get("created_at", "")),
    )
