from __future__ import annotations

import hashlib
import io
import uuid
from pathlib import Path

import pytest

from aura_core.artifacts.store import ArtifactStore, normalize_checksum
from aura_core.errors import (
    ChecksumMismatch,
    Corrupt,
    DuplicateVersion,
    NotFound,
    PayloadTooLarge,
    SizeMismatch,
    ValidationError,
)

PAYLOAD = b"\x7fELF firmware image " * 1000


def _tmp_parts(root: str) -> list[Path]:
    tmp_dir = Path(root) / "artifacts" / "tmp"
    if not tmp_dir.exists():
        return []
    return list(tmp_dir.iterdir())


@pytest.mark.core
def test_put_computes_checksum_and_get_returns_bytes(artifacts, data_root):
    record = artifacts.put(io.BytesIO(PAYLOAD), version="1.2.0", description="  first ")

    assert record.checksum == hashlib.sha256(PAYLOAD).hexdigest()
    assert record.size == len(PAYLOAD)
    assert record.description == "first"
    blob = Path(data_root) / "artifacts" / "sha256" / record.checksum[:2] / f"{record.checksum}.bin"
    assert blob.read_bytes() == PAYLOAD

    payload, checksum = artifacts.get(record.id)
    assert payload == PAYLOAD
    assert checksum == record.checksum
    assert artifacts.verify(record.id) == record
    assert _tmp_parts(data_root) == []


@pytest.mark.core
def test_put_accepts_chunk_iterables_and_declared_values(artifacts):
    chunks = [PAYLOAD[:100], PAYLOAD[100:5000], PAYLOAD[5000:]]
    digest = hashlib.sha256(PAYLOAD).hexdigest()
    record = artifacts.put(
        iter(chunks),
        version="v2.0.0-rc.1",
        expected_checksum=f"SHA256:{digest.upper()}",
        expected_size=len(PAYLOAD),
    )
    assert record.checksum == digest


@pytest.mark.core
def test_checksum_mismatch_leaves_no_record_or_temp(artifacts, data_root):
    with pytest.raises(ChecksumMismatch):
        artifacts.put(PAYLOAD, version="1.0.0", expected_checksum="0" * 64)

    assert artifacts.list_firmware() == []
    assert _tmp_parts(data_root) == []
    assert not (Path(data_root) / "artifacts" / "sha256").exists()


@pytest.mark.core
def test_size_mismatch_is_rejected(artifacts, data_root):
    with pytest.raises(SizeMismatch):
        artifacts.put(PAYLOAD, version="1.0.0", expected_size=len(PAYLOAD) + 1)
    assert artifacts.list_firmware() == []
    assert _tmp_parts(data_root) == []


@pytest.mark.core
def test_payload_limits_and_validation(data_root):
    store = ArtifactStore(data_root, max_bytes=1024)
    with pytest.raises(PayloadTooLarge):
        store.put(b"x" * 2048, version="1.0.0")
    with pytest.raises(ValidationError):
        store.put(b"", version="1.0.0")
    with pytest.raises(ValidationError):
        store.put(b"abc", version="latest")
    with pytest.raises(ValidationError):
        store.put(b"abc", version="1.0.0", expected_checksum="not-a-digest")
    assert store.list_firmware() == []
    assert _tmp_parts(data_root) == []


@pytest.mark.core
def test_duplicate_version_is_rejected(artifacts):
    artifacts.put(b"build-a", version="1.0.0")
    with pytest.raises(DuplicateVersion):
        artifacts.put(b"build-b", version="1.0.0")
    assert len(artifacts.list_firmware()) == 1


@pytest.mark.core
def test_identical_bytes_share_one_blob(artifacts, data_root):
    first = artifacts.put(b"same-bytes", version="1.0.0")
    second = artifacts.put(b"same-bytes", version="1.0.1")
    assert first.storage_uri == second.storage_uri
    blobs = list((Path(data_root) / "artifacts" / "sha256").rglob("*.bin"))
    assert len(blobs) == 1
    assert [record.version for record in artifacts.list_firmware()] == ["1.0.1", "1.0.0"]


@pytest.mark.core
def test_tampered_blob_is_reported_corrupt(artifacts, data_root):
    record = artifacts.put(PAYLOAD, version="3.0.0")
    blob = Path(data_root) / "artifacts" / "sha256" / record.checksum[:2] / f"{record.checksum}.bin"
    blob.write_bytes(PAYLOAD[:-1] + b"!")

    with pytest.raises(Corrupt):
        artifacts.get(record.id)
    with pytest.raises(Corrupt):
        artifacts.verify(record.id)


@pytest.mark.core
def test_unknown_or_missing_artifacts(artifacts, data_root):
    with pytest.raises(NotFound):
        artifacts.get("missing")
    record = artifacts.put(PAYLOAD, version="4.0.0")
    blob = Path(data_root) / "artifacts" / "sha256" / record.checksum[:2] / f"{record.checksum}.bin"
    blob.unlink()
    with pytest.raises(NotFound):
        artifacts.get(record.id)


@pytest.mark.core
def test_memory_backend_round_trip():
    store = ArtifactStore(f"memory://aura-{uuid.uuid4().hex}")
    record = store.put(PAYLOAD, version="1.0.0")
    payload, checksum = store.get(record.id)
    assert payload == PAYLOAD
    assert checksum == record.checksum
    assert store.get_record(record.id).version == "1.0.0"


@pytest.mark.core
def test_normalize_checksum():
    digest = hashlib.sha256(b"x").hexdigest()
    assert normalize_checksum(f"sha256:{digest.upper()}") == digest
    with pytest.raises(ValidationError):
        normalize_checksum("abc")
