from __future__ import annotations

import json
from typing import Any, Iterable

import fsspec
from fsspec.implementations.local import LocalFileSystem

from aura_core.storage.object_store import atomic_write_bytes
from aura_core.storage.paths import parent_path


def read_json(uri: str) -> Any:
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        return None
    with fs.open(path, "rb") as handle:
        return json.loads(handle.read().decode("utf-8"))


def write_json(uri: str, payload: Any) -> str:
    data = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    fs, path = fsspec.core.url_to_fs(uri)
    if isinstance(fs, LocalFileSystem):
        atomic_write_bytes(path, data)
        return uri
    fs.makedirs(parent_path(path), exist_ok=True)
    with fs.open(path, "wb") as handle:
        handle.write(data)
    return uri


def append_jsonl(uri: str, records: Iterable[dict[str, Any]]) -> str:
    fs, path = fsspec.core.url_to_fs(uri)
    fs.makedirs(parent_path(path), exist_ok=True)
    lines = b"".join(
        (json.dumps(record, ensure_ascii=True) + "\n").encode("utf-8")
        for record in records
    )
    mode = "ab" if fs.exists(path) else "wb"
    with fs.open(path, mode) as handle:
        handle.write(lines)
    return uri


def read_jsonl(uri: str) -> list[dict[str, Any]]:
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        return []
    results: list[dict[str, Any]] = []
    with fs.open(path, "rb") as handle:
        for raw in handle.read().decode("utf-8").splitlines():
            line = raw.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                # torn trailing line from an interrupted append
                continue
            if isinstance(item, dict):
                results.append(item)
    return results
